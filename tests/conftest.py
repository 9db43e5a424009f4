"""Shared fakes: an in-memory Sonos network and drivers that record calls."""

from __future__ import annotations

from typing import Optional

import pytest

from sonos_multiroom.services.accessories import AccessoryStore
from sonos_multiroom.services.errors import DeviceCommandError
from sonos_multiroom.services.orchestrator import ZoneOrchestrator
from sonos_multiroom.services.registry import Device, ZoneRegistry
from sonos_multiroom.services.sonos import SonosDevice, Track, ZoneGroup, ZoneGroupMember
from sonos_multiroom.services.zones_store import ZoneConfig


class FakeNetwork:
    def __init__(self) -> None:
        self.drivers: dict[str, "FakeDriver"] = {}
        self.groups: list[ZoneGroup] = []
        self.topology_error: Optional[str] = None

    def driver(self, host: str) -> "FakeDriver":
        if host not in self.drivers:
            self.drivers[host] = FakeDriver(host, self)
        return self.drivers[host]

    def set_groups(self, *groups: list[tuple[str, str]]) -> None:
        """Each group is a list of (host, zone name); the first entry coordinates."""

        self.groups = [
            ZoneGroup(
                coordinator_uuid=f"RINCON_{members[0][0]}",
                members=tuple(ZoneGroupMember(f"RINCON_{host}", host, name) for host, name in members),
            )
            for members in groups
        ]


class FakeDriver(SonosDevice):
    def __init__(self, host: str, network: FakeNetwork) -> None:
        super().__init__(host)
        self.network = network
        self.calls: list[tuple] = []
        self.failing: set[str] = set()
        self.volume = 20
        self.muted = False
        self.led_state = "On"
        self.transport_state = "stopped"
        self.track: Optional[Track] = None
        self.favorites: list[dict] = []
        self.description: Optional[dict] = None

    def commands(self) -> list[str]:
        return [call[0] for call in self.calls]

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.failing:
            raise DeviceCommandError(f"{name} failed", host=self.host, action=name)

    async def play(self) -> None:
        self._record("play")
        self.transport_state = "playing"

    async def pause(self) -> None:
        self._record("pause")
        self.transport_state = "paused"

    async def stop(self) -> None:
        self._record("stop")
        self.transport_state = "stopped"

    async def next(self) -> None:
        self._record("next")

    async def previous(self) -> None:
        self._record("previous")

    async def join_group(self, zone_name: str) -> None:
        self._record("join_group", zone_name)

    async def leave_group(self) -> None:
        self._record("leave_group")

    async def set_av_transport_uri(self, uri: str, metadata: str = "") -> None:
        self._record("set_av_transport_uri", uri)

    async def get_transport_state(self) -> str:
        self._record("get_transport_state")
        return self.transport_state

    async def current_track(self) -> Optional[Track]:
        self._record("current_track")
        return self.track

    async def get_zone_groups(self) -> list[ZoneGroup]:
        self._record("get_zone_groups")
        if self.network.topology_error:
            raise DeviceCommandError(self.network.topology_error, host=self.host, action="GetZoneGroupState")
        return list(self.network.groups)

    async def get_volume(self) -> int:
        self._record("get_volume")
        return self.volume

    async def set_volume(self, percent: int) -> None:
        self._record("set_volume", percent)
        self.volume = percent

    async def adjust_volume(self, adjustment: int) -> int:
        self._record("adjust_volume", adjustment)
        self.volume = max(0, min(100, self.volume + adjustment))
        return self.volume

    async def get_muted(self) -> bool:
        self._record("get_muted")
        return self.muted

    async def set_muted(self, muted: bool) -> None:
        self._record("set_muted", muted)
        self.muted = muted

    async def get_led_state(self) -> str:
        self._record("get_led_state")
        return self.led_state

    async def set_led_state(self, state: str) -> None:
        self._record("set_led_state", state)
        self.led_state = state

    async def set_eq(self, *, eq_type: str, value: str) -> None:
        self._record("set_eq", eq_type, value)

    async def get_favorites(self) -> list[dict]:
        self._record("get_favorites")
        return list(self.favorites)

    async def fetch_description(self, *, timeout: Optional[float] = None) -> Optional[dict]:
        self._record("fetch_description")
        return self.description


class FakeSubscriptions:
    def __init__(self) -> None:
        self.subscribed: list[str] = []
        self.started = False
        self.stopped = False

    async def subscribe(self, device: SonosDevice) -> None:
        self.subscribed.append(device.host)

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


def make_device(host: str, zone_name: str, *, master: bool = True, ht: bool = False) -> Device:
    return Device(
        host=host,
        zone_name=zone_name,
        is_zone_master=master,
        model_name="Beam" if ht else "One",
        has_audio_in=ht,
        has_ht_control=ht,
    )


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def subscriptions_stub() -> FakeSubscriptions:
    return FakeSubscriptions()


@pytest.fixture
def registry(network: FakeNetwork) -> ZoneRegistry:
    return ZoneRegistry(driver_factory=network.driver)


@pytest.fixture
def orchestrator(registry: ZoneRegistry) -> ZoneOrchestrator:
    return ZoneOrchestrator(registry=registry, accessories=AccessoryStore(None), revert_delay=0)


@pytest.fixture
def house(orchestrator: ZoneOrchestrator, network: FakeNetwork):
    """Kitchen, Living Room (home theater) and Office; Office has a slave speaker."""

    devices = [
        make_device("10.0.0.1", "Kitchen"),
        make_device("10.0.0.2", "Living Room", ht=True),
        make_device("10.0.0.3", "Office"),
        make_device("10.0.0.4", "Office", master=False),
        make_device("10.0.0.5", "Garage"),
    ]
    configs = {
        "Kitchen": ZoneConfig(name="Kitchen", priorities=("Living Room", "Office")),
        "Living Room": ZoneConfig(
            name="Living Room",
            is_night_mode_enabled=True,
            is_speech_enhancement_enabled=True,
        ),
        "Office": ZoneConfig(name="Office", priorities=("Kitchen",), is_auto_play_disabled=True),
    }
    network.set_groups(
        [("10.0.0.1", "Kitchen")],
        [("10.0.0.2", "Living Room")],
        [("10.0.0.3", "Office"), ("10.0.0.4", "Office")],
        [("10.0.0.5", "Garage")],
    )
    orchestrator.build_zones(devices, configs)
    return orchestrator.registry
