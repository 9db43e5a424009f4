from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from .sonos import SonosDevice

if TYPE_CHECKING:
    from .zones import Zone


@dataclass
class Device:
    host: str
    zone_name: str
    is_zone_master: bool
    manufacturer: str = "Sonos"
    model_name: str = ""
    serial_number: str = ""
    software_version: str = ""
    hardware_version: str = ""
    has_audio_in: bool = False
    has_ht_control: bool = False
    uuid: Optional[str] = None

    def to_json(self) -> dict:
        return {
            "host": self.host,
            "zone_name": self.zone_name,
            "is_zone_master": self.is_zone_master,
            "manufacturer": self.manufacturer,
            "model_name": self.model_name,
            "serial_number": self.serial_number,
            "software_version": self.software_version,
            "hardware_version": self.hardware_version,
            "has_audio_in": self.has_audio_in,
            "has_ht_control": self.has_ht_control,
        }


class ZoneRegistry:
    """Devices discovered on the network and the zones built from them.

    Drivers are created lazily per host, so a group coordinator that was not
    part of discovery can still be queried.
    """

    def __init__(self, *, driver_factory: Callable[[str], SonosDevice]) -> None:
        self._driver_factory = driver_factory
        self._devices: dict[str, Device] = {}
        self._drivers: dict[str, SonosDevice] = {}
        self._zones: dict[str, "Zone"] = {}

    def add_device(self, device: Device) -> None:
        self._devices[device.host] = device

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    def device_for_host(self, host: Optional[str]) -> Optional[Device]:
        if not host:
            return None
        return self._devices.get(host)

    def devices_in_zone(self, zone_name: str) -> list[Device]:
        return [d for d in self._devices.values() if d.zone_name == zone_name]

    def zone_masters(self) -> list[Device]:
        return [d for d in self._devices.values() if d.is_zone_master]

    def any_zone_master(self) -> Optional[Device]:
        for zone in self._zones.values():
            return zone.master
        masters = self.zone_masters()
        return masters[0] if masters else None

    def driver(self, host: str) -> SonosDevice:
        driver = self._drivers.get(host)
        if driver is None:
            driver = self._driver_factory(host)
            self._drivers[host] = driver
        return driver

    def driver_for(self, device: Device) -> SonosDevice:
        return self.driver(device.host)

    def add_zone(self, zone: "Zone") -> None:
        self._zones[zone.name] = zone

    def get_zone(self, name: Optional[str]) -> Optional["Zone"]:
        if not name:
            return None
        return self._zones.get(name)

    def zones(self) -> list["Zone"]:
        return list(self._zones.values())

    def zone_names(self) -> list[str]:
        return list(self._zones.keys())
