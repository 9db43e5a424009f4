import ipaddress
import logging
import os
import secrets
import subprocess
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sonos_multiroom import __version__
from sonos_multiroom.api.accessories import create_accessories_router
from sonos_multiroom.api.events import create_events_router
from sonos_multiroom.api.health import create_health_router
from sonos_multiroom.api.zones import create_zones_router
from sonos_multiroom.services.accessories import AccessoryStore
from sonos_multiroom.services.discovery import discover_devices
from sonos_multiroom.services.events import NOTIFY_PATH_PREFIX, EventSubscriptions
from sonos_multiroom.services.orchestrator import ZoneOrchestrator
from sonos_multiroom.services.registry import Device, ZoneRegistry
from sonos_multiroom.services.sonos import SonosDevice
from sonos_multiroom.services.zones_store import ZoneConfig, load_zone_configs


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
log = logging.getLogger("sonos_multiroom")

ZONES_PATH = Path(os.getenv("ZONES_PATH", "/config/zones.json"))
ACCESSORIES_PATH = Path(os.getenv("ACCESSORIES_PATH", "/config/accessories.json"))
API_TOKEN = os.getenv("API_TOKEN", "").strip()
API_HOST = os.getenv("API_HOST", "0.0.0.0").strip() or "0.0.0.0"
API_PORT = int(os.getenv("API_PORT", "8000"))
PUBLIC_HOST = os.getenv("PUBLIC_HOST", "").strip()
SONOS_HOSTS = [h.strip() for h in os.getenv("SONOS_HOSTS", "").split(",") if h.strip()]
SONOS_HTTP_USER_AGENT = os.getenv("SONOS_HTTP_USER_AGENT", "SonosMultiroom").strip() or "SonosMultiroom"
SONOS_DISCOVERY_TIMEOUT = float(os.getenv("SONOS_DISCOVERY_TIMEOUT", "2.0"))
SONOS_CONTROL_TIMEOUT = float(os.getenv("SONOS_CONTROL_TIMEOUT", "8.0"))
EVENT_SUBSCRIPTION_SECONDS = int(os.getenv("EVENT_SUBSCRIPTION_SECONDS", "1800"))
REVERT_DELAY = float(os.getenv("REVERT_DELAY", "1.0"))


def _detect_primary_ipv4_host() -> Optional[str]:
    try:
        output = subprocess.check_output(
            ["ip", "-o", "-4", "addr", "show", "up", "scope", "global"],
            text=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        iface_name = parts[1].rstrip(":")
        if iface_name.startswith("docker") or iface_name.startswith("br-") or iface_name.startswith("veth"):
            continue
        try:
            iface = ipaddress.ip_interface(parts[3])
        except ValueError:
            continue
        if iface.ip.is_loopback or iface.ip.is_link_local:
            continue
        return str(iface.ip)
    return None


def callback_base_url() -> str:
    host = PUBLIC_HOST or "127.0.0.1"
    # Speakers must reach us over the LAN; never hand out loopback.
    if host in {"127.0.0.1", "localhost"}:
        detected = _detect_primary_ipv4_host()
        if detected:
            host = detected
    return f"http://{host}:{API_PORT}"


def create_driver(host: str) -> SonosDevice:
    return SonosDevice(host, http_user_agent=SONOS_HTTP_USER_AGENT, control_timeout=SONOS_CONTROL_TIMEOUT)


def create_app(
    *,
    orchestrator: ZoneOrchestrator,
    api_token: str,
    load_devices: Optional[Callable[[], Awaitable[list[Device]]]] = None,
    load_configs: Optional[Callable[[], Dict[str, ZoneConfig]]] = None,
) -> FastAPI:
    app = FastAPI(title="Sonos Multiroom", version=__version__)
    registry = orchestrator.registry

    if orchestrator.subscriptions is not None:
        app.include_router(create_events_router(subscriptions=orchestrator.subscriptions))

    if api_token:
        app.include_router(create_health_router(registry=registry))
        app.include_router(create_zones_router(registry=registry, resolver=orchestrator.resolver))
        app.include_router(create_accessories_router(accessories=orchestrator.accessories))
    else:
        log.info("No API token provided; HTTP API disabled.")

    @app.middleware("http")
    async def token_middleware(request: Request, call_next):
        is_speaker_callback = request.method == "NOTIFY" and request.url.path.startswith(NOTIFY_PATH_PREFIX)
        if api_token and not is_speaker_callback:
            header = request.headers.get("authorization")
            if not header:
                log.info("API - Authorization header missing.")
                return JSONResponse(status_code=401, content={"detail": "Authorization required"})
            if not secrets.compare_digest(header.encode("utf-8"), api_token.encode("utf-8")):
                log.info("API - Token invalid.")
                return JSONResponse(status_code=401, content={"detail": "Invalid token"})
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_, exc: StarletteHTTPException):
        # Unsupported methods on known paths are reported like unknown paths.
        status_code = 404 if exc.status_code == 405 else exc.status_code
        detail = "Not Found" if exc.status_code == 405 else exc.detail
        return JSONResponse(status_code=status_code, content={"detail": detail})

    @app.on_event("startup")
    async def _startup_events() -> None:
        orchestrator.accessories.load()
        if load_devices is None:
            return
        try:
            devices = await load_devices()
        except Exception:
            log.exception("Sonos discovery crashed")
            devices = []
        configs = load_configs() if load_configs else {}
        orchestrator.build_zones(devices, configs)
        await orchestrator.start()
        log.info("API started." if api_token else "Event listener started.")

    @app.on_event("shutdown")
    async def _shutdown_events() -> None:
        await orchestrator.stop()

    return app


registry = ZoneRegistry(driver_factory=create_driver)
subscriptions = EventSubscriptions(
    callback_base_url=callback_base_url,
    timeout_seconds=EVENT_SUBSCRIPTION_SECONDS,
    http_user_agent=SONOS_HTTP_USER_AGENT,
    control_timeout=SONOS_CONTROL_TIMEOUT,
)
orchestrator = ZoneOrchestrator(
    registry=registry,
    accessories=AccessoryStore(ACCESSORIES_PATH),
    subscriptions=subscriptions,
    revert_delay=REVERT_DELAY,
)
app = create_app(
    orchestrator=orchestrator,
    api_token=API_TOKEN,
    load_devices=lambda: discover_devices(
        static_hosts=SONOS_HOSTS,
        timeout=SONOS_DISCOVERY_TIMEOUT,
        driver_for_host=registry.driver,
    ),
    load_configs=lambda: load_zone_configs(ZONES_PATH),
)
