import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlparse
from xml.etree import ElementTree
from xml.sax.saxutils import escape as xml_escape

import httpx

from .errors import DeviceCommandError


log = logging.getLogger("sonos_multiroom")

SONOS_PORT = 1400
LINE_IN_SUFFIX = ":spdif"
LINE_IN_LABEL = "TV"

AVTRANSPORT_CONTROL = "/MediaRenderer/AVTransport/Control"
RENDERING_CONTROL = "/MediaRenderer/RenderingControl/Control"
DEVICE_PROPERTIES_CONTROL = "/DeviceProperties/Control"
ZONE_GROUP_TOPOLOGY_CONTROL = "/ZoneGroupTopology/Control"
CONTENT_DIRECTORY_CONTROL = "/MediaServer/ContentDirectory/Control"

FAVORITES_OBJECT_ID = "FV:2"

TRANSPORT_STATES = {
    "PLAYING": "playing",
    "PAUSED_PLAYBACK": "paused",
    "STOPPED": "stopped",
    "NO_MEDIA_PRESENT": "stopped",
    "TRANSITIONING": "transitioning",
}


def normalize_transport_state(raw: Optional[str]) -> str:
    if not raw:
        return "stopped"
    value = raw.strip().upper()
    return TRANSPORT_STATES.get(value, value.lower())


@dataclass(frozen=True)
class Track:
    uri: Optional[str]
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None

    @property
    def is_line_in(self) -> bool:
        return bool(self.uri) and self.uri.endswith(LINE_IN_SUFFIX)

    def field(self, name: str) -> Optional[str]:
        """Return uri/title/artist/album, masking line-in sources as 'TV'."""

        if self.is_line_in:
            return LINE_IN_LABEL
        return getattr(self, name)


@dataclass(frozen=True)
class ZoneGroupMember:
    uuid: str
    host: Optional[str]
    zone_name: str
    invisible: bool = False


@dataclass(frozen=True)
class ZoneGroup:
    coordinator_uuid: str
    members: tuple[ZoneGroupMember, ...]

    @property
    def coordinator(self) -> Optional[ZoneGroupMember]:
        for member in self.members:
            if member.uuid == self.coordinator_uuid:
                return member
        return None

    @property
    def zone_names(self) -> frozenset[str]:
        return frozenset(m.zone_name for m in self.members if m.zone_name)

    def contains_zone(self, zone_name: str) -> bool:
        needle = zone_name.strip().lower()
        return any(m.zone_name.strip().lower() == needle for m in self.members if m.zone_name)


def _host_from_location(location: Optional[str]) -> Optional[str]:
    if not location:
        return None
    try:
        return urlparse(location).hostname
    except ValueError:
        return None


def parse_zone_group_state(xml_text: str) -> list[ZoneGroup]:
    """Parse the ZoneGroupState document into groups of visible members.

    Satellites (surrounds, subs) are nested below their master and are not
    listed as members.
    """

    if not xml_text:
        return []
    root = ElementTree.fromstring(xml_text)
    groups: list[ZoneGroup] = []
    for group_el in root.iter():
        if not group_el.tag.endswith("ZoneGroup"):
            continue
        members: list[ZoneGroupMember] = []
        for member_el in group_el:
            if not member_el.tag.endswith("ZoneGroupMember"):
                continue
            members.append(
                ZoneGroupMember(
                    uuid=member_el.get("UUID") or "",
                    host=_host_from_location(member_el.get("Location")),
                    zone_name=member_el.get("ZoneName") or "",
                    invisible=member_el.get("Invisible") == "1",
                )
            )
        groups.append(ZoneGroup(coordinator_uuid=group_el.get("Coordinator") or "", members=tuple(members)))
    return groups


def _parse_didl_items(didl: Optional[str]) -> list[dict]:
    if not didl or didl == "NOT_IMPLEMENTED":
        return []
    try:
        root = ElementTree.fromstring(didl)
    except ElementTree.ParseError as exc:
        log.debug("DIDL-Lite parse failed: %s", exc)
        return []
    items: list[dict] = []
    for item in root:
        if not (item.tag.endswith("item") or item.tag.endswith("container")):
            continue

        def _text(path: str) -> Optional[str]:
            value = item.findtext(path)
            if value is None:
                return None
            value = value.strip()
            return value or None

        items.append(
            {
                "title": _text("{*}title"),
                "artist": _text("{*}creator") or _text("{*}artist"),
                "album": _text("{*}album"),
                "uri": _text("{*}res"),
            }
        )
    return items


class SonosDevice:
    """Driver for a single Sonos speaker, talking UPnP/SOAP on port 1400.

    Besides the control actions it carries a small event emitter; the event
    subscription manager feeds NOTIFY payloads into it and zones listen on it.
    """

    def __init__(
        self,
        host: str,
        *,
        http_user_agent: str = "SonosMultiroom",
        control_timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.host = host
        self._http_user_agent = http_user_agent
        self._control_timeout = float(control_timeout)
        self._transport = transport
        self._handlers: dict[str, list[Callable[..., None]]] = {}

    def __repr__(self) -> str:
        return f"SonosDevice({self.host!r})"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{SONOS_PORT}"

    def client(self, *, timeout: Optional[float] = None) -> httpx.AsyncClient:
        effective_timeout = self._control_timeout if timeout is None else float(timeout)
        return httpx.AsyncClient(timeout=effective_timeout, transport=self._transport)

    # Events

    def on(self, event: str, handler: Callable[..., None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable[..., None]) -> None:
        handlers = self._handlers.get(event) or []
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event) or []):
            try:
                handler(*args)
            except Exception:
                log.exception("Event handler for %s on %s failed", event, self.host)

    # SOAP

    async def soap_action_text(
        self,
        *,
        service: str,
        action: str,
        control_path: str,
        arguments: dict[str, str],
        timeout: Optional[float] = None,
    ) -> str:
        target = f"{self.base_url}{control_path}"
        ns = f"urn:schemas-upnp-org:service:{service}:1"
        body_parts = [f"<{k}>{xml_escape(str(v))}</{k}>" for k, v in arguments.items()]
        envelope = (
            "<?xml version=\"1.0\" encoding=\"utf-8\"?>"
            "<s:Envelope xmlns:s=\"http://schemas.xmlsoap.org/soap/envelope/\" "
            "s:encodingStyle=\"http://schemas.xmlsoap.org/soap/encoding/\">"
            "<s:Body>"
            f"<u:{action} xmlns:u=\"{ns}\">"
            + "".join(body_parts)
            + f"</u:{action}>"
            "</s:Body>"
            "</s:Envelope>"
        )
        headers = {
            "Content-Type": "text/xml; charset=\"utf-8\"",
            "SOAPACTION": f'\"{ns}#{action}\"',
            "User-Agent": self._http_user_agent,
            "Connection": "close",
        }
        try:
            async with self.client(timeout=timeout) as client:
                resp = await client.post(target, content=envelope.encode("utf-8"), headers=headers)
        except httpx.TimeoutException as exc:
            raise DeviceCommandError(
                f"Sonos SOAP {service}.{action} timed out: {exc}", host=self.host, action=action
            ) from exc
        except httpx.RequestError as exc:
            raise DeviceCommandError(
                f"Sonos SOAP {service}.{action} failed: {exc}", host=self.host, action=action
            ) from exc

        def _parse_upnp_fault(xml_text: str) -> Optional[str]:
            try:
                root = ElementTree.fromstring(xml_text)
            except ElementTree.ParseError:
                return None
            fault = root.find(".//{*}Fault")
            if fault is None:
                return None
            error_code = root.findtext(".//{*}errorCode")
            error_desc = root.findtext(".//{*}errorDescription")
            if error_code or error_desc:
                code = (error_code or "").strip()
                desc = (error_desc or "").strip()
                if code and desc:
                    return f"UPnPError {code}: {desc}"
                return f"UPnPError {code or desc}".strip()
            fault_string = root.findtext(".//{*}faultstring")
            if fault_string:
                return fault_string.strip()
            return "UPnPError (unknown SOAP fault)"

        fault_msg = _parse_upnp_fault(resp.text or "")
        if resp.status_code >= 400 or fault_msg:
            detail = fault_msg or (resp.text or "").strip() or f"HTTP {resp.status_code}"
            raise DeviceCommandError(
                f"Sonos SOAP {service}.{action} failed: {detail}", host=self.host, action=action
            )
        return resp.text

    async def soap_action(self, **kwargs: Any) -> None:
        await self.soap_action_text(**kwargs)

    async def soap_value(self, name: str, **kwargs: Any) -> Optional[str]:
        """Run an action and return one named output argument."""

        xml_text = await self.soap_action_text(**kwargs)
        try:
            root = ElementTree.fromstring(xml_text)
        except ElementTree.ParseError as exc:
            raise DeviceCommandError(
                f"Sonos {kwargs.get('action')} response could not be parsed: {exc}",
                host=self.host,
                action=kwargs.get("action"),
            ) from exc
        value = root.findtext(f".//{{*}}{name}")
        return value.strip() if value is not None else None

    async def _transport_action(self, action: str, **extra: str) -> None:
        await self.soap_action(
            service="AVTransport",
            action=action,
            control_path=AVTRANSPORT_CONTROL,
            arguments={"InstanceID": "0", **extra},
        )

    # Transport

    async def play(self) -> None:
        await self._transport_action("Play", Speed="1")

    async def pause(self) -> None:
        await self._transport_action("Pause")

    async def stop(self) -> None:
        await self._transport_action("Stop")

    async def next(self) -> None:
        await self._transport_action("Next")

    async def previous(self) -> None:
        await self._transport_action("Previous")

    async def set_av_transport_uri(self, uri: str, metadata: str = "") -> None:
        await self._transport_action("SetAVTransportURI", CurrentURI=uri, CurrentURIMetaData=metadata or "")

    async def get_transport_state(self) -> str:
        raw = await self.soap_value(
            "CurrentTransportState",
            service="AVTransport",
            action="GetTransportInfo",
            control_path=AVTRANSPORT_CONTROL,
            arguments={"InstanceID": "0"},
        )
        return normalize_transport_state(raw)

    async def current_track(self) -> Optional[Track]:
        xml_text = await self.soap_action_text(
            service="AVTransport",
            action="GetPositionInfo",
            control_path=AVTRANSPORT_CONTROL,
            arguments={"InstanceID": "0"},
        )
        try:
            root = ElementTree.fromstring(xml_text)
        except ElementTree.ParseError as exc:
            raise DeviceCommandError(
                f"Sonos GetPositionInfo response could not be parsed: {exc}", host=self.host, action="GetPositionInfo"
            ) from exc
        uri = (root.findtext(".//{*}TrackURI") or "").strip()
        items = _parse_didl_items(root.findtext(".//{*}TrackMetaData"))
        meta = items[0] if items else {}
        if not uri and not meta:
            return None
        return Track(uri=uri or None, title=meta.get("title"), artist=meta.get("artist"), album=meta.get("album"))

    # Grouping

    async def get_zone_groups(self) -> list[ZoneGroup]:
        state = await self.soap_value(
            "ZoneGroupState",
            service="ZoneGroupTopology",
            action="GetZoneGroupState",
            control_path=ZONE_GROUP_TOPOLOGY_CONTROL,
            arguments={},
        )
        try:
            return parse_zone_group_state(state or "")
        except ElementTree.ParseError as exc:
            raise DeviceCommandError(
                f"Sonos ZoneGroupState could not be parsed: {exc}", host=self.host, action="GetZoneGroupState"
            ) from exc

    async def join_group(self, zone_name: str) -> None:
        """Join the group that currently contains the zone named `zone_name`."""

        groups = await self.get_zone_groups()
        for group in groups:
            if group.contains_zone(zone_name):
                await self.set_av_transport_uri(f"x-rincon:{group.coordinator_uuid}")
                return
        raise DeviceCommandError(f"No Sonos group contains zone {zone_name}", host=self.host, action="JoinGroup")

    async def leave_group(self) -> None:
        await self._transport_action("BecomeCoordinatorOfStandaloneGroup")

    # Rendering

    async def get_volume(self) -> int:
        raw = await self.soap_value(
            "CurrentVolume",
            service="RenderingControl",
            action="GetVolume",
            control_path=RENDERING_CONTROL,
            arguments={"InstanceID": "0", "Channel": "Master"},
        )
        try:
            return int(raw or 0)
        except ValueError as exc:
            raise DeviceCommandError(f"Invalid volume {raw!r}", host=self.host, action="GetVolume") from exc

    async def set_volume(self, percent: int) -> None:
        await self.soap_action(
            service="RenderingControl",
            action="SetVolume",
            control_path=RENDERING_CONTROL,
            arguments={
                "InstanceID": "0",
                "Channel": "Master",
                "DesiredVolume": str(max(0, min(100, int(percent)))),
            },
        )

    async def adjust_volume(self, adjustment: int) -> int:
        raw = await self.soap_value(
            "NewVolume",
            service="RenderingControl",
            action="SetRelativeVolume",
            control_path=RENDERING_CONTROL,
            arguments={"InstanceID": "0", "Channel": "Master", "Adjustment": str(int(adjustment))},
        )
        try:
            return int(raw or 0)
        except ValueError:
            return 0

    async def get_muted(self) -> bool:
        raw = await self.soap_value(
            "CurrentMute",
            service="RenderingControl",
            action="GetMute",
            control_path=RENDERING_CONTROL,
            arguments={"InstanceID": "0", "Channel": "Master"},
        )
        return raw == "1"

    async def set_muted(self, muted: bool) -> None:
        await self.soap_action(
            service="RenderingControl",
            action="SetMute",
            control_path=RENDERING_CONTROL,
            arguments={
                "InstanceID": "0",
                "Channel": "Master",
                "DesiredMute": "1" if muted else "0",
            },
        )

    async def set_eq(self, *, eq_type: str, value: str) -> None:
        await self.soap_action(
            service="RenderingControl",
            action="SetEQ",
            control_path=RENDERING_CONTROL,
            arguments={
                "InstanceID": "0",
                "EQType": str(eq_type),
                "DesiredValue": str(value),
            },
        )

    # Device properties

    async def get_led_state(self) -> str:
        raw = await self.soap_value(
            "CurrentLEDState",
            service="DeviceProperties",
            action="GetLEDState",
            control_path=DEVICE_PROPERTIES_CONTROL,
            arguments={},
        )
        return raw or "Off"

    async def set_led_state(self, state: str) -> None:
        await self.soap_action(
            service="DeviceProperties",
            action="SetLEDState",
            control_path=DEVICE_PROPERTIES_CONTROL,
            arguments={"DesiredLEDState": state},
        )

    # Content

    async def get_favorites(self) -> list[dict]:
        result = await self.soap_value(
            "Result",
            service="ContentDirectory",
            action="Browse",
            control_path=CONTENT_DIRECTORY_CONTROL,
            arguments={
                "ObjectID": FAVORITES_OBJECT_ID,
                "BrowseFlag": "BrowseDirectChildren",
                "Filter": "dc:title,res,dc:creator,upnp:artist,upnp:album",
                "StartingIndex": "0",
                "RequestedCount": "100",
                "SortCriterion": "",
            },
        )
        return _parse_didl_items(result)

    async def fetch_description(self, *, timeout: Optional[float] = None) -> Optional[dict]:
        url = f"{self.base_url}/xml/device_description.xml"
        headers = {"User-Agent": self._http_user_agent}
        try:
            async with self.client(timeout=timeout) as client:
                resp = await client.get(url, headers=headers)
            if resp.status_code != 200:
                return None
            root = ElementTree.fromstring(resp.text)
        except (httpx.HTTPError, ElementTree.ParseError) as exc:
            log.debug("Sonos description fetch failed (ip=%s): %s", self.host, exc)
            return None

        device_el = root.find("{*}device")
        if device_el is None:
            device_el = root.find("device")
        if device_el is None:
            return None

        def _find_text(name: str) -> Optional[str]:
            value = device_el.findtext(f"{{*}}{name}")
            if value is None:
                value = device_el.findtext(name)
            if value is None:
                return None
            value = value.strip()
            return value or None

        service_ids = {
            (el.text or "").strip().rsplit(":", 1)[-1]
            for el in root.iter()
            if el.tag.endswith("serviceId")
        }
        udn = _find_text("UDN") or ""
        return {
            "room_name": _find_text("roomName"),
            "friendly_name": _find_text("friendlyName"),
            "manufacturer": _find_text("manufacturer") or "Sonos",
            "model_name": _find_text("modelName"),
            "serial_number": _find_text("serialNum"),
            "software_version": _find_text("softwareVersion"),
            "hardware_version": _find_text("hardwareVersion"),
            "uuid": udn[5:] if udn.lower().startswith("uuid:") else udn,
            "has_audio_in": "AudioIn" in service_ids,
            "has_ht_control": "HTControl" in service_ids,
        }


async def gather_all(*operations: Any) -> list[Any]:
    """Await every operation and re-raise the first failure afterwards."""

    results = await asyncio.gather(*operations, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
