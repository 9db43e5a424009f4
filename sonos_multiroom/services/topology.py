from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import DeviceCommandError, TopologyUnavailable
from .registry import Device, ZoneRegistry

if TYPE_CHECKING:
    from .zones import Zone


log = logging.getLogger("sonos_multiroom")


@dataclass(frozen=True)
class GroupTopology:
    coordinator: Device
    member_zone_names: frozenset[str]


class GroupTopologyResolver:
    """Resolves the playback group of a zone from the live topology.

    Nothing is cached: group membership changes outside this process at any
    time, so every call reads the topology from the zone's master device.
    """

    def __init__(self, registry: ZoneRegistry) -> None:
        self._registry = registry

    async def resolve_group(self, zone: "Zone") -> GroupTopology:
        driver = self._registry.driver_for(zone.master)
        try:
            groups = await driver.get_zone_groups()
        except DeviceCommandError as exc:
            raise TopologyUnavailable(zone.name, f"Reading zone groups for {zone.name} failed: {exc}") from exc

        for group in groups:
            if not group.contains_zone(zone.name):
                continue
            member = group.coordinator
            if member is None or not member.host:
                raise TopologyUnavailable(zone.name, f"Group of {zone.name} has no reachable coordinator")
            coordinator = self._registry.device_for_host(member.host)
            if coordinator is None:
                coordinator = Device(
                    host=member.host,
                    zone_name=member.zone_name,
                    is_zone_master=True,
                    uuid=member.uuid or None,
                )
            return GroupTopology(coordinator=coordinator, member_zone_names=group.zone_names)
        raise TopologyUnavailable(zone.name, f"No group contains zone {zone.name}", ungrouped=True)

    async def resolve_coordinator(self, zone: "Zone") -> Device:
        group = await self.resolve_group(zone)
        return group.coordinator

    async def resolve_group_state(self, zone: "Zone") -> tuple[GroupTopology, str]:
        """Return the group of `zone` together with its coordinator's transport state."""

        group = await self.resolve_group(zone)
        coordinator = group.coordinator
        try:
            state = await self._registry.driver_for(coordinator).get_transport_state()
        except DeviceCommandError as exc:
            raise TopologyUnavailable(
                zone.name,
                f"Reading transport state of {zone.name} from coordinator {coordinator.host} failed: {exc}",
            ) from exc
        return group, state

    async def resolve_group_play_state(self, zone: "Zone") -> str:
        _, state = await self.resolve_group_state(zone)
        return state
