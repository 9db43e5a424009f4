from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Literal, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError

from sonos_multiroom.services.errors import DeviceCommandError, TopologyUnavailable
from sonos_multiroom.services.registry import ZoneRegistry
from sonos_multiroom.services.sonos import Track, gather_all
from sonos_multiroom.services.topology import GroupTopologyResolver
from sonos_multiroom.services.zones import Zone


log = logging.getLogger("sonos_multiroom")

TRACK_PROPERTIES = {
    "current-track-uri": "uri",
    "current-track-title": "title",
    "current-track-artist": "artist",
    "current-track-album": "album",
}
ZONE_PROPERTIES = ("led-state", "volume", "mute", "current-state", *TRACK_PROPERTIES)


class ZoneUpdatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    led_state: Optional[StrictBool] = Field(default=None, alias="led-state")
    volume: Optional[StrictInt] = Field(default=None, ge=0, le=100)
    adjust_volume: Optional[StrictInt] = Field(default=None, alias="adjust-volume", ge=-100, le=100)
    mute: Optional[StrictBool] = None
    current_state: Optional[Literal["playing", "paused", "stopped", "previous", "next"]] = Field(
        default=None, alias="current-state"
    )
    current_track_uri: Optional[str] = Field(default=None, alias="current-track-uri", min_length=1)


UPDATE_FIELDS = {
    info.alias or name: name for name, info in ZoneUpdatePayload.model_fields.items()
}


def render_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def create_zones_router(*, registry: ZoneRegistry, resolver: GroupTopologyResolver) -> APIRouter:
    router = APIRouter()

    def _require_zone(zone_name: str) -> Zone:
        zone = registry.get_zone(zone_name)
        if zone is None:
            log.info("API - Zone not found: %s", zone_name)
            raise HTTPException(status_code=400, detail="Unknown zone")
        return zone

    async def _group_play_state(zone: Zone) -> str:
        try:
            return await resolver.resolve_group_play_state(zone)
        except TopologyUnavailable as exc:
            if exc.ungrouped:
                return "stopped"
            raise

    async def _current_track(zone: Zone) -> Optional[Track]:
        try:
            coordinator = await resolver.resolve_coordinator(zone)
        except TopologyUnavailable as exc:
            if not exc.ungrouped:
                raise
            coordinator = zone.master
        return await registry.driver_for(coordinator).current_track()

    async def _read_property(zone: Zone, prop: str) -> Any:
        driver = zone.driver
        if prop == "led-state":
            return (await driver.get_led_state()) == "On"
        if prop == "volume":
            return await driver.get_volume()
        if prop == "mute":
            return await driver.get_muted()
        if prop == "current-state":
            return await _group_play_state(zone)
        track = await _current_track(zone)
        return track.field(TRACK_PROPERTIES[prop]) if track else None

    async def _snapshot(zone: Zone) -> dict:
        driver = zone.driver
        led_state, volume, muted, state, track = await gather_all(
            driver.get_led_state(),
            driver.get_volume(),
            driver.get_muted(),
            _group_play_state(zone),
            _current_track(zone),
        )
        snapshot = {
            "led-state": led_state == "On",
            "volume": volume,
            "mute": muted,
            "current-state": state,
        }
        for prop, attr in TRACK_PROPERTIES.items():
            snapshot[prop] = track.field(attr) if track else None
        return snapshot

    async def _stop_or_leave(zone: Zone) -> None:
        try:
            await zone.driver.stop()
        except DeviceCommandError as exc:
            log.info("API - %s could not be stopped (%s); leaving group instead", zone.name, exc)
            await zone.driver.leave_group()

    async def _set_led_state(zone: Zone, enabled: bool) -> None:
        state = "On" if enabled else "Off"
        devices = registry.devices_in_zone(zone.name) or [zone.master]
        await gather_all(*(registry.driver_for(d).set_led_state(state) for d in devices))

    def _build_operations(zone: Zone, data: dict, payload: ZoneUpdatePayload) -> list[Awaitable[Any]]:
        driver = zone.driver
        operations: list[Awaitable[Any]] = []
        for key in data:
            attr = UPDATE_FIELDS.get(key)
            if attr is None:
                continue
            value = getattr(payload, attr)
            if value is None:
                continue
            if attr == "led_state":
                operations.append(_set_led_state(zone, value))
            elif attr == "volume":
                operations.append(driver.set_volume(value))
            elif attr == "adjust_volume":
                operations.append(driver.adjust_volume(value))
            elif attr == "mute":
                operations.append(driver.set_muted(value))
            elif attr == "current_track_uri":
                operations.append(driver.set_av_transport_uri(value))
            elif value == "playing":
                operations.append(driver.play())
            elif value == "paused":
                operations.append(driver.pause())
            elif value == "stopped":
                operations.append(_stop_or_leave(zone))
            elif value == "previous":
                operations.append(driver.previous())
            elif value == "next":
                operations.append(driver.next())
        return operations

    @router.get("/zones/{zone_name}/{prop}")
    async def get_zone_property(zone_name: str, prop: str) -> PlainTextResponse:
        zone = _require_zone(zone_name)
        if prop not in ZONE_PROPERTIES:
            log.info("API - Property not found: %s", prop)
            raise HTTPException(status_code=400, detail="Unknown property")
        try:
            value = await _read_property(zone, prop)
        except (DeviceCommandError, TopologyUnavailable) as exc:
            log.warning("API - Error while retrieving %s of %s: %s", prop, zone.name, exc)
            raise HTTPException(status_code=400, detail="Error while retrieving value") from exc
        return PlainTextResponse(render_text(value))

    @router.get("/zones/{zone_name}")
    async def get_zone(zone_name: str) -> dict:
        zone = _require_zone(zone_name)
        try:
            return await _snapshot(zone)
        except (DeviceCommandError, TopologyUnavailable) as exc:
            log.warning("API - Error while retrieving values of %s: %s", zone.name, exc)
            raise HTTPException(status_code=400, detail="Error while retrieving values") from exc

    @router.post("/zones/{zone_name}")
    async def update_zone(zone_name: str, request: Request) -> Response:
        zone = _require_zone(zone_name)
        raw = await request.body()
        if not raw.strip():
            raise HTTPException(status_code=400, detail="Request body required")
        try:
            data = json.loads(raw)
        except ValueError as exc:
            log.info("API - Malformed JSON body for %s", zone.name)
            raise HTTPException(status_code=400, detail="Malformed JSON body") from exc
        if not isinstance(data, dict) or not data:
            raise HTTPException(status_code=400, detail="Body must be a non-empty JSON object")
        try:
            payload = ZoneUpdatePayload.model_validate(data)
        except ValidationError as exc:
            log.info("API - Invalid values for %s: %s", zone.name, exc.errors())
            raise HTTPException(status_code=400, detail="Invalid property value") from exc

        operations = _build_operations(zone, data, payload)
        results = await asyncio.gather(*operations, return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            log.warning("API - Error while setting values of %s: %s", zone.name, failure)
        if failures:
            raise HTTPException(status_code=400, detail="Error while setting values")
        return Response(status_code=200)

    @router.get("/sonos-favorites")
    async def get_favorites() -> list[dict]:
        master = registry.any_zone_master()
        if master is None:
            raise HTTPException(status_code=400, detail="No Sonos zone available")
        try:
            items = await registry.driver_for(master).get_favorites()
        except DeviceCommandError as exc:
            log.warning("API - Error while retrieving favorites: %s", exc)
            raise HTTPException(status_code=400, detail="Error while retrieving favorites") from exc
        return [
            {
                "title": item.get("title"),
                "artist": item.get("artist"),
                "album": item.get("album"),
                "uri": item.get("uri"),
            }
            for item in items
        ]

    return router
