from __future__ import annotations

from fastapi import APIRouter

from sonos_multiroom.services.registry import ZoneRegistry


def create_health_router(*, registry: ZoneRegistry) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "zones": registry.zone_names(),
            "devices": [device.to_json() for device in registry.devices()],
        }

    return router
