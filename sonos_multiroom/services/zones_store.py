from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional


log = logging.getLogger("sonos_multiroom")


@dataclass(frozen=True)
class ZoneConfig:
    name: str
    priorities: tuple[str, ...] = field(default_factory=tuple)
    is_night_mode_enabled: bool = False
    is_speech_enhancement_enabled: bool = False
    is_auto_play_disabled: bool = False


def _flag(raw: dict, *keys: str) -> bool:
    for key in keys:
        if key not in raw:
            continue
        value = raw.get(key)
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes"}
        return bool(value)
    return False


def _normalize_name(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    name = value.strip()
    return name or None


def parse_zone_config(raw: Any) -> Optional[ZoneConfig]:
    if not isinstance(raw, dict):
        return None
    name = _normalize_name(raw.get("name"))
    if not name:
        return None
    priorities_raw = raw.get("priorities")
    priorities: list[str] = []
    if isinstance(priorities_raw, list):
        for item in priorities_raw:
            priority = _normalize_name(item)
            if priority and priority not in priorities:
                priorities.append(priority)
    # Accept the camelCase keys of older config files as well.
    return ZoneConfig(
        name=name,
        priorities=tuple(priorities),
        is_night_mode_enabled=_flag(raw, "night_mode_enabled", "isNightModeEnabled"),
        is_speech_enhancement_enabled=_flag(raw, "speech_enhancement_enabled", "isSpeechEnhancementEnabled"),
        is_auto_play_disabled=_flag(raw, "auto_play_disabled", "isAutoPlayDisabled"),
    )


def load_zone_configs(path: Path) -> Dict[str, ZoneConfig]:
    if not path.exists():
        log.warning("Zone configuration %s not found; no zones will be exposed", path)
        return {}
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError:
        log.warning("%s is invalid; ignoring", path.name)
        return {}
    if isinstance(data, dict):
        data = data.get("zones") or []
    if not isinstance(data, list):
        return {}
    result: Dict[str, ZoneConfig] = {}
    for raw in data:
        config = parse_zone_config(raw)
        if config is None:
            log.warning("Skipping invalid zone entry: %r", raw)
            continue
        if config.name in result:
            log.warning("Duplicate zone entry %s; keeping the first one", config.name)
            continue
        result[config.name] = config
    return result
