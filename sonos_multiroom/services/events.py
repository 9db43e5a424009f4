from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from xml.etree import ElementTree

import httpx

from .sonos import SonosDevice, normalize_transport_state


log = logging.getLogger("sonos_multiroom")

EVENT_SERVICES = {
    "AVTransport": "/MediaRenderer/AVTransport/Event",
    "RenderingControl": "/MediaRenderer/RenderingControl/Event",
}
NOTIFY_PATH_PREFIX = "/upnp/notify/"


def parse_property_set(xml_text: str) -> Dict[str, str]:
    """Return the variables of a GENA NOTIFY body (`e:propertyset`)."""

    root = ElementTree.fromstring(xml_text)
    variables: Dict[str, str] = {}
    for prop in root:
        if not prop.tag.endswith("property"):
            continue
        for var in prop:
            name = var.tag.rsplit("}", 1)[-1]
            variables[name] = var.text or ""
    return variables


def parse_last_change(xml_text: str) -> Dict[str, str]:
    """Flatten a LastChange event document into `{variable: value}`.

    Channel specific variables keep only the Master channel.
    """

    if not xml_text:
        return {}
    root = ElementTree.fromstring(xml_text)
    values: Dict[str, str] = {}
    for instance in root:
        for var in instance:
            channel = var.get("channel")
            if channel is not None and channel != "Master":
                continue
            name = var.tag.rsplit("}", 1)[-1]
            values[name] = var.get("val", "")
    return values


@dataclass
class Subscription:
    key: str
    device: SonosDevice
    service: str
    sid: Optional[str] = None
    expires_at: float = 0.0


class EventSubscriptions:
    """UPnP event subscriptions for every zone master.

    Speakers send NOTIFY requests to `{callback base}/upnp/notify/{key}`; the
    payload is decoded and re-emitted on the device as named events
    (`AVTransport`, `RenderingControl`, `PlayState`, `PlaybackStopped`).
    """

    def __init__(
        self,
        *,
        callback_base_url: Callable[[], str],
        timeout_seconds: int = 1800,
        http_user_agent: str = "SonosMultiroom",
        control_timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._callback_base_url = callback_base_url
        self._timeout_seconds = max(60, int(timeout_seconds))
        self._http_user_agent = http_user_agent
        self._control_timeout = float(control_timeout)
        self._transport = transport
        self._subscriptions: Dict[str, Subscription] = {}
        self._renew_task: Optional[asyncio.Task] = None

    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._control_timeout, transport=self._transport)

    async def subscribe(self, device: SonosDevice) -> None:
        for service in EVENT_SERVICES:
            key = uuid.uuid4().hex
            sub = Subscription(key=key, device=device, service=service)
            self._subscriptions[key] = sub
            try:
                await self._subscribe(sub)
            except httpx.HTTPError as exc:
                log.warning("Subscribing to %s events of %s failed: %s", service, device.host, exc)

    async def _subscribe(self, sub: Subscription) -> None:
        url = f"{sub.device.base_url}{EVENT_SERVICES[sub.service]}"
        headers = {"User-Agent": self._http_user_agent, "TIMEOUT": f"Second-{self._timeout_seconds}"}
        if sub.sid:
            headers["SID"] = sub.sid
        else:
            headers["CALLBACK"] = f"<{self._callback_base_url()}{NOTIFY_PATH_PREFIX}{sub.key}>"
            headers["NT"] = "upnp:event"
        async with self._client() as client:
            resp = await client.request("SUBSCRIBE", url, headers=headers)
        if resp.status_code == 412 and sub.sid:
            # The speaker forgot the subscription (reboot); start a new one.
            sub.sid = None
            await self._subscribe(sub)
            return
        resp.raise_for_status()
        sub.sid = resp.headers.get("SID") or sub.sid
        timeout = self._timeout_seconds
        raw_timeout = (resp.headers.get("TIMEOUT") or "").lower()
        if raw_timeout.startswith("second-"):
            try:
                timeout = int(raw_timeout[len("second-"):])
            except ValueError:
                pass
        sub.expires_at = time.time() + timeout
        log.debug("Subscribed to %s events of %s (sid=%s)", sub.service, sub.device.host, sub.sid)

    async def renew_loop(self) -> None:
        interval = max(30.0, self._timeout_seconds / 2)
        try:
            while True:
                await asyncio.sleep(interval)
                for sub in list(self._subscriptions.values()):
                    try:
                        await self._subscribe(sub)
                    except httpx.HTTPError as exc:
                        log.warning(
                            "Renewing %s subscription of %s failed: %s", sub.service, sub.device.host, exc
                        )
                        sub.sid = None
        except asyncio.CancelledError:
            pass

    def start(self) -> None:
        if self._renew_task is None:
            self._renew_task = asyncio.create_task(self.renew_loop())

    async def stop(self) -> None:
        if self._renew_task:
            self._renew_task.cancel()
            try:
                await self._renew_task
            except asyncio.CancelledError:
                pass
            self._renew_task = None
        for sub in list(self._subscriptions.values()):
            if not sub.sid:
                continue
            url = f"{sub.device.base_url}{EVENT_SERVICES[sub.service]}"
            try:
                async with self._client() as client:
                    await client.request("UNSUBSCRIBE", url, headers={"SID": sub.sid})
            except httpx.HTTPError as exc:
                log.debug("Unsubscribing %s of %s failed: %s", sub.service, sub.device.host, exc)
        self._subscriptions.clear()

    def handle_notify(self, key: str, body: str) -> bool:
        """Decode a NOTIFY body and emit its events; False for unknown keys."""

        sub = self._subscriptions.get(key)
        if sub is None:
            return False
        try:
            variables = parse_property_set(body)
            last_change = parse_last_change(variables.get("LastChange", ""))
        except ElementTree.ParseError as exc:
            log.warning("Ignoring malformed %s event from %s: %s", sub.service, sub.device.host, exc)
            return True

        device = sub.device
        if sub.service == "RenderingControl":
            device.emit("RenderingControl", last_change)
            return True

        device.emit("AVTransport", last_change)
        raw_state = last_change.get("TransportState")
        if raw_state:
            state = normalize_transport_state(raw_state)
            device.emit("PlayState", state)
            if state == "stopped":
                device.emit("PlaybackStopped")
        return True
