from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from sonos_multiroom.services.accessories import AccessoryStore


class SwitchPayload(BaseModel):
    on: bool


def create_accessories_router(*, accessories: AccessoryStore) -> APIRouter:
    router = APIRouter()

    @router.get("/accessories")
    async def list_accessories() -> dict:
        return {name: acc.to_json() for name, acc in sorted(accessories.all().items())}

    @router.put("/accessories/{zone_name}/{kind}")
    async def set_switch(zone_name: str, kind: str, payload: SwitchPayload) -> dict:
        """Forward a user toggle to the switch, like a tap in the home app."""
        acc = accessories.get(zone_name)
        if acc is None:
            raise HTTPException(status_code=404, detail="Unknown zone")
        characteristic = acc.characteristics().get(kind)
        if characteristic is None:
            raise HTTPException(status_code=404, detail="Unknown switch")
        characteristic.set(payload.on)
        return {"ok": True, kind: characteristic.value}

    return router
