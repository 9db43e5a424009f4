from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional
from urllib.parse import urlparse

from .errors import DeviceCommandError
from .registry import Device
from .sonos import SonosDevice


log = logging.getLogger("sonos_multiroom")

SONOS_DEVICE_TYPE = "urn:schemas-upnp-org:device:ZonePlayer:1"
SSDP_ADDR = ("239.255.255.250", 1900)


async def ssdp_discover(*, timeout: float, device_type: str = SONOS_DEVICE_TYPE) -> list[str]:
    """Return the hosts answering an SSDP M-SEARCH for Sonos zone players."""

    message = (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDR[0]}:{SSDP_ADDR[1]}\r\n"
        'MAN: "ssdp:discover"\r\n'
        "MX: 1\r\n"
        f"ST: {device_type}\r\n"
        "\r\n"
    ).encode("utf-8")
    loop = asyncio.get_running_loop()
    found: dict[str, str] = {}

    class _Proto(asyncio.DatagramProtocol):
        def connection_made(self, transport):
            self.transport = transport
            try:
                self.transport.sendto(message, SSDP_ADDR)
            except OSError as exc:
                log.warning("SSDP M-SEARCH send failed: %s", exc)

        def datagram_received(self, data, addr):
            text = data.decode("utf-8", errors="ignore")
            lines = [line.strip() for line in text.split("\r\n") if line.strip()]
            headers = {}
            for line in lines[1:]:
                if ":" not in line:
                    continue
                k, v = line.split(":", 1)
                headers[k.strip().lower()] = v.strip()
            location = headers.get("location")
            if not location:
                return
            ip = addr[0]
            try:
                parsed = urlparse(location)
                if parsed.hostname:
                    ip = parsed.hostname
            except ValueError:
                pass
            if ip:
                found[ip] = location

    transport = None
    try:
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _Proto(),
            local_addr=("0.0.0.0", 0),
        )
        await asyncio.sleep(max(0.2, timeout))
    finally:
        if transport:
            transport.close()
    return sorted(found)


async def describe_devices(hosts: list[str], *, driver_for_host: Callable[[str], SonosDevice]) -> list[Device]:
    """Build device descriptors for `hosts`.

    Zone-master flags come from the group topology reported by the first
    reachable device: visible group members are masters, stereo-pair slaves
    (invisible members) and home theater satellites are not.
    """

    descriptions: dict[str, dict] = {}

    async def _describe(host: str) -> None:
        desc = await driver_for_host(host).fetch_description()
        if desc:
            descriptions[host] = desc
        else:
            log.warning("Sonos device at %s did not return a description; skipping", host)

    await asyncio.gather(*(_describe(host) for host in hosts))

    masters: Optional[set[str]] = None
    for host in sorted(descriptions):
        try:
            groups = await driver_for_host(host).get_zone_groups()
        except DeviceCommandError as exc:
            log.warning("Reading zone groups from %s failed: %s", host, exc)
            continue
        masters = {
            member.host
            for group in groups
            for member in group.members
            if member.host and not member.invisible
        }
        break
    if masters is None:
        log.warning("No Sonos device reported a zone group topology; treating every device as zone master")
        masters = set(descriptions)

    devices: list[Device] = []
    for host in sorted(descriptions):
        desc = descriptions[host]
        zone_name = desc.get("room_name") or desc.get("friendly_name") or host
        device = Device(
            host=host,
            zone_name=zone_name,
            is_zone_master=host in masters,
            manufacturer=desc.get("manufacturer") or "Sonos",
            model_name=desc.get("model_name") or "",
            serial_number=desc.get("serial_number") or "",
            software_version=desc.get("software_version") or "",
            hardware_version=desc.get("hardware_version") or "",
            has_audio_in=bool(desc.get("has_audio_in")),
            has_ht_control=bool(desc.get("has_ht_control")),
            uuid=desc.get("uuid") or None,
        )
        log.info(
            "Found device at %s with zone name %s (%s).",
            host,
            zone_name,
            "master" if device.is_zone_master else "slave",
        )
        devices.append(device)
    return devices


async def discover_devices(
    *,
    static_hosts: list[str],
    timeout: float,
    driver_for_host: Callable[[str], SonosDevice],
) -> list[Device]:
    hosts = list(static_hosts)
    if not hosts:
        try:
            hosts = await ssdp_discover(timeout=timeout)
        except OSError as exc:
            log.warning("Sonos SSDP discovery failed: %s", exc)
            hosts = []
    if not hosts:
        log.warning("No Sonos devices found")
        return []
    return await describe_devices(hosts, driver_for_host=driver_for_host)
