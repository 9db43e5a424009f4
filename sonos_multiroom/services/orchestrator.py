from __future__ import annotations

import logging
from typing import Dict, Optional

from .accessories import AccessoryStore
from .events import EventSubscriptions
from .registry import Device, ZoneRegistry
from .topology import GroupTopologyResolver
from .zones import DEFAULT_REVERT_DELAY, Zone
from .zones_store import ZoneConfig


log = logging.getLogger("sonos_multiroom")


class ZoneOrchestrator:
    def __init__(
        self,
        *,
        registry: ZoneRegistry,
        accessories: AccessoryStore,
        subscriptions: Optional[EventSubscriptions] = None,
        revert_delay: float = DEFAULT_REVERT_DELAY,
    ) -> None:
        self.registry = registry
        self.accessories = accessories
        self.subscriptions = subscriptions
        self.resolver = GroupTopologyResolver(registry)
        self._revert_delay = revert_delay

    def build_zones(self, devices: list[Device], configs: Dict[str, ZoneConfig]) -> list[Zone]:
        """Create one zone per configured zone-master device."""

        for device in devices:
            self.registry.add_device(device)

        zones: list[Zone] = []
        for device in devices:
            if not device.is_zone_master:
                continue
            config = configs.get(device.zone_name)
            if config is None:
                log.info("No configuration provided for zone %s at %s.", device.zone_name, device.host)
                continue
            if self.registry.get_zone(config.name) is not None:
                log.warning("Zone %s already exists; ignoring device at %s", config.name, device.host)
                continue
            accessories = self.accessories.ensure_zone(
                config.name,
                night_mode=device.has_ht_control and config.is_night_mode_enabled,
                speech_enhancement=device.has_ht_control and config.is_speech_enhancement_enabled,
            )
            zone = Zone(
                master=device,
                config=config,
                accessories=accessories,
                registry=self.registry,
                resolver=self.resolver,
                revert_delay=self._revert_delay,
            )
            zone.bind()
            self.registry.add_zone(zone)
            zones.append(zone)

        for name in configs:
            if self.registry.get_zone(name) is None:
                log.warning("Configured zone %s was not found on the network", name)
        self.accessories.remove_unused(set(self.registry.zone_names()))
        log.info("All zones created: %s", ", ".join(z.name for z in zones) or "none")
        return zones

    async def start(self) -> None:
        if self.subscriptions is None:
            return
        for zone in self.registry.zones():
            await self.subscriptions.subscribe(zone.driver)
        self.subscriptions.start()
        for zone in self.registry.zones():
            zone.request_refresh()

    async def stop(self) -> None:
        if self.subscriptions is not None:
            await self.subscriptions.stop()
        for zone in self.registry.zones():
            await zone.close()
        self.accessories.flush()
