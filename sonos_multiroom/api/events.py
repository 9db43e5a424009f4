from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import Response

from sonos_multiroom.services.events import NOTIFY_PATH_PREFIX, EventSubscriptions


log = logging.getLogger("sonos_multiroom")


def create_events_router(*, subscriptions: EventSubscriptions) -> APIRouter:
    router = APIRouter()

    @router.api_route(NOTIFY_PATH_PREFIX + "{key}", methods=["NOTIFY"])
    async def upnp_notify(key: str, request: Request) -> Response:
        body = (await request.body()).decode("utf-8", errors="replace")
        if not subscriptions.handle_notify(key, body):
            log.debug("Event for unknown subscription %s (sid=%s)", key, request.headers.get("sid"))
            return Response(status_code=412)
        return Response(status_code=200)

    return router
