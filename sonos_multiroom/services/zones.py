from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Coroutine, Optional

from .accessories import Characteristic, ZoneAccessories
from .errors import DeviceCommandError, TopologyUnavailable
from .registry import Device, ZoneRegistry
from .sonos import SonosDevice
from .topology import GroupTopologyResolver
from .zones_store import ZoneConfig


log = logging.getLogger("sonos_multiroom")

DEFAULT_REVERT_DELAY = 1.0


def _on_off(value: bool) -> str:
    return "ON" if value else "OFF"


@dataclass
class StateRevert:
    """Rollback of a provisional switch value, applied after `delay` seconds."""

    characteristic: Characteristic
    value: bool
    delay: float
    reason: str
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def start(self) -> "StateRevert":
        self.task = asyncio.create_task(self._run())
        return self

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        log.info("%s - Reverting to %s (%s)", self.characteristic.name, _on_off(self.value), self.reason)
        self.characteristic.update_value(self.value)

    @property
    def pending(self) -> bool:
        return self.task is not None and not self.task.done()

    def cancel(self) -> None:
        if self.task and not self.task.done():
            self.task.cancel()

    async def wait(self) -> None:
        if self.task is None:
            return
        try:
            await self.task
        except asyncio.CancelledError:
            pass


class Zone:
    """A configured Sonos zone and its exposed switches.

    Turning the outlet on joins the first playing zone from the configured
    priorities (or plays locally); turning it off leaves the group. Device
    events trigger a fresh read of the group play state which then drives the
    outlet value.
    """

    def __init__(
        self,
        *,
        master: Device,
        config: ZoneConfig,
        accessories: ZoneAccessories,
        registry: ZoneRegistry,
        resolver: GroupTopologyResolver,
        revert_delay: float = DEFAULT_REVERT_DELAY,
    ) -> None:
        self.name = config.name
        self.master = master
        self.config = config
        self.accessories = accessories
        self._registry = registry
        self._resolver = resolver
        self._revert_delay = float(revert_delay)
        self._tasks: set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_requested = False
        self.pending_revert: Optional[StateRevert] = None

    def __repr__(self) -> str:
        return f"Zone({self.name!r}, host={self.master.host!r})"

    @property
    def driver(self) -> SonosDevice:
        return self._registry.driver_for(self.master)

    @property
    def outlet(self) -> Characteristic:
        return self.accessories.outlet

    @property
    def night_mode(self) -> Optional[Characteristic]:
        return self.accessories.night_mode

    @property
    def speech_enhancement(self) -> Optional[Characteristic]:
        return self.accessories.speech_enhancement

    @property
    def is_on(self) -> bool:
        return bool(self.outlet.value)

    def bind(self) -> None:
        self.outlet.on_set(self._handle_outlet_set)
        if self.night_mode is not None:
            self.night_mode.on_set(self._handle_night_mode_set)
        if self.speech_enhancement is not None:
            self.speech_enhancement.on_set(self._handle_speech_enhancement_set)

        driver = self.driver
        driver.on("AVTransport", self._handle_transport_event)
        driver.on("PlayState", self._handle_transport_event)
        driver.on("PlaybackStopped", self._handle_transport_event)
        driver.on("RenderingControl", self._handle_rendering_event)

    def unbind(self) -> None:
        driver = self.driver
        driver.off("AVTransport", self._handle_transport_event)
        driver.off("PlayState", self._handle_transport_event)
        driver.off("PlaybackStopped", self._handle_transport_event)
        driver.off("RenderingControl", self._handle_rendering_event)

    async def close(self) -> None:
        self.unbind()
        if self.pending_revert:
            self.pending_revert.cancel()
        tasks = list(self._tasks)
        if self._refresh_task:
            tasks.append(self._refresh_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Switch requests

    def _handle_outlet_set(self, value: bool) -> None:
        log.info("%s - Set outlet state: %s", self.name, _on_off(value))
        if value:
            self.request_on()
        else:
            self.request_off()

    def request_on(self) -> Optional[asyncio.Task]:
        """Start turning the zone on; returns None when it already is on."""

        if self.is_on:
            log.debug("%s - Already on, nothing to do", self.name)
            return None
        return self._spawn(self._join_or_play())

    def request_off(self) -> asyncio.Task:
        return self._spawn(self._leave())

    async def _join_or_play(self) -> None:
        for priority in self.config.priorities:
            priority_zone = self._registry.get_zone(priority)
            if priority_zone is None or priority_zone is self:
                continue
            if not priority_zone.is_on:
                continue
            log.info("%s - Joining group of %s", self.name, priority_zone.name)
            try:
                await self.driver.join_group(priority_zone.name)
            except DeviceCommandError as exc:
                log.warning("%s - Error while joining group %s: %s", self.name, priority_zone.name, exc)
            return

        if self.config.is_auto_play_disabled:
            log.info("%s - No priority zone is playing and auto play is disabled", self.name)
            self.schedule_revert(self.outlet, False, reason="no playing priority zone")
            return

        try:
            await self.driver.play()
        except DeviceCommandError as exc:
            log.warning("%s - Error while trying to play: %s", self.name, exc)

    async def _leave(self) -> None:
        if self.master.has_ht_control:
            try:
                track = await self.driver.current_track()
            except DeviceCommandError as exc:
                log.warning("%s - Error while reading current track, leaving group anyway: %s", self.name, exc)
                track = None
            if track is not None and track.is_line_in:
                log.info("%s - TV input is active, not switching off", self.name)
                self.schedule_revert(self.outlet, True, reason="TV input active")
                return

        try:
            await self.driver.leave_group()
        except DeviceCommandError as exc:
            log.warning("%s - Error while leaving group: %s", self.name, exc)

    def schedule_revert(self, characteristic: Characteristic, value: bool, *, reason: str) -> StateRevert:
        if self.pending_revert:
            self.pending_revert.cancel()
        self.pending_revert = StateRevert(characteristic, value, self._revert_delay, reason).start()
        return self.pending_revert

    def _handle_night_mode_set(self, value: bool) -> None:
        log.info("%s - Set night mode: %s", self.name, _on_off(value))
        self._spawn(self._set_eq("NightMode", value))

    def _handle_speech_enhancement_set(self, value: bool) -> None:
        log.info("%s - Set speech enhancement: %s", self.name, _on_off(value))
        self._spawn(self._set_eq("DialogLevel", value))

    async def _set_eq(self, eq_type: str, value: bool) -> None:
        try:
            await self.driver.set_eq(eq_type=eq_type, value="1" if value else "0")
        except DeviceCommandError as exc:
            log.warning("%s - Error switching %s to %s: %s", self.name, eq_type, _on_off(value), exc)

    # Reconciliation

    def _handle_transport_event(self, *_: Any) -> None:
        self.request_refresh()

    def _handle_rendering_event(self, payload: Optional[dict] = None) -> None:
        if isinstance(payload, dict):
            self.mirror_rendering_state(payload)
        self.request_refresh()

    def mirror_rendering_state(self, payload: dict) -> None:
        night_mode = payload.get("NightMode")
        if self.night_mode is not None and night_mode is not None:
            value = str(night_mode) == "1"
            log.info("%s - Updating night mode: %s", self.name, _on_off(value))
            self.night_mode.update_value(value)
        dialog_level = payload.get("DialogLevel")
        if self.speech_enhancement is not None and dialog_level is not None:
            value = str(dialog_level) == "1"
            log.info("%s - Updating speech enhancement: %s", self.name, _on_off(value))
            self.speech_enhancement.update_value(value)

    def request_refresh(self) -> asyncio.Task:
        """Schedule a recompute; events arriving meanwhile fold into one more run."""

        self._refresh_requested = True
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
        return self._refresh_task

    async def _refresh_loop(self) -> None:
        while self._refresh_requested:
            self._refresh_requested = False
            await self.refresh()

    async def refresh(self) -> None:
        members: frozenset[str] = frozenset({self.name})
        try:
            group, state = await self._resolver.resolve_group_state(self)
            members = group.member_zone_names
        except TopologyUnavailable as exc:
            if not exc.ungrouped:
                log.warning("%s - Could not read group play state: %s", self.name, exc)
                return
            state = "stopped"
        is_on = state == "playing"
        if self.outlet.value != is_on:
            log.info(
                "%s - Updating outlet state: %s (group: %s)",
                self.name,
                _on_off(is_on),
                ", ".join(sorted(members)),
            )
        self.outlet.update_value(is_on)
