from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional


log = logging.getLogger("sonos_multiroom")

OUTLET = "outlet"
NIGHT_MODE = "night-mode"
SPEECH_ENHANCEMENT = "speech-enhancement"
SWITCH_KINDS = (OUTLET, NIGHT_MODE, SPEECH_ENHANCEMENT)
SAVE_DELAY = 2.0


class Characteristic:
    """An exposed on/off value with a user `set` handler.

    `set` is the user-initiated path: the handler runs first and sees the old
    value, then the new value is stored. `update_value` is the push path used
    by the engine and never calls the handler.
    """

    def __init__(
        self,
        name: str,
        value: bool = False,
        *,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.name = name
        self.value = bool(value)
        self._on_change = on_change
        self._set_handler: Optional[Callable[[bool], None]] = None

    def __repr__(self) -> str:
        return f"Characteristic({self.name!r}, value={self.value})"

    def on_set(self, handler: Callable[[bool], None]) -> None:
        self._set_handler = handler

    def set(self, value: bool) -> None:
        value = bool(value)
        if self._set_handler is not None:
            self._set_handler(value)
        self._store(value)

    def update_value(self, value: bool) -> None:
        self._store(bool(value))

    def _store(self, value: bool) -> None:
        changed = value != self.value
        self.value = value
        if changed and self._on_change is not None:
            self._on_change()


@dataclass
class ZoneAccessories:
    zone_name: str
    outlet: Characteristic
    night_mode: Optional[Characteristic] = None
    speech_enhancement: Optional[Characteristic] = None

    def characteristics(self) -> Dict[str, Characteristic]:
        result = {OUTLET: self.outlet}
        if self.night_mode is not None:
            result[NIGHT_MODE] = self.night_mode
        if self.speech_enhancement is not None:
            result[SPEECH_ENHANCEMENT] = self.speech_enhancement
        return result

    def to_json(self) -> dict:
        return {kind: c.value for kind, c in self.characteristics().items()}


class AccessoryStore:
    """Exposed switches per zone, cached on disk across restarts."""

    def __init__(self, path: Optional[Path], *, save_delay: float = SAVE_DELAY) -> None:
        self._path = path
        self._save_delay = float(save_delay)
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._cache: Dict[str, dict] = {}
        self._accessories: Dict[str, ZoneAccessories] = {}

    def load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
        except json.JSONDecodeError:
            log.warning("%s is invalid; ignoring cached accessories", self._path.name)
            return
        if not isinstance(data, dict):
            return
        for zone_name, values in data.items():
            if isinstance(zone_name, str) and isinstance(values, dict):
                self._cache[zone_name] = {k: bool(v) for k, v in values.items() if k in SWITCH_KINDS}

    def save(self) -> None:
        if self._path is None:
            return
        payload = {name: acc.to_json() for name, acc in sorted(self._accessories.items())}
        for name, values in self._cache.items():
            payload.setdefault(name, values)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2))

    def schedule_save(self) -> None:
        """Write the cache once a burst of switch changes has settled."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if self._save_handle is None:
            self._save_handle = loop.call_later(self._save_delay, self.flush)

    def flush(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        self.save()

    def ensure_zone(self, zone_name: str, *, night_mode: bool, speech_enhancement: bool) -> ZoneAccessories:
        cached = self._cache.get(zone_name)
        if cached is None:
            log.info("Adding new accessory with zone name %s.", zone_name)
            cached = {}

        def _characteristic(kind: str) -> Characteristic:
            return Characteristic(f"{zone_name} {kind}", bool(cached.get(kind, False)), on_change=self.schedule_save)

        accessories = ZoneAccessories(
            zone_name=zone_name,
            outlet=_characteristic(OUTLET),
            night_mode=_characteristic(NIGHT_MODE) if night_mode else None,
            speech_enhancement=_characteristic(SPEECH_ENHANCEMENT) if speech_enhancement else None,
        )
        self._accessories[zone_name] = accessories
        self._cache[zone_name] = accessories.to_json()
        return accessories

    def remove_unused(self, zone_names: set[str]) -> list[str]:
        removed = [name for name in self._cache if name not in zone_names]
        for name in removed:
            log.info("Removing unused accessory with zone name %s.", name)
            self._cache.pop(name, None)
            self._accessories.pop(name, None)
        if removed:
            self.save()
        return removed

    def get(self, zone_name: str) -> Optional[ZoneAccessories]:
        return self._accessories.get(zone_name)

    def all(self) -> Dict[str, ZoneAccessories]:
        return dict(self._accessories)
