import asyncio
import logging
import os
from typing import Optional

from fastapi import FastAPI

from api.health import create_health_router
from api.sonos import create_sonos_router
from services.room_cache import RoomCache
from services.sonos import SonosService
from services.ssdp import SSDP_ADDR, SONOS_SEARCH_TARGET


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
log = logging.getLogger("sonosremote")

HOST = os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0"
PORT = int(os.getenv("PORT", "8000"))
SONOS_HTTP_USER_AGENT = os.getenv("SONOS_HTTP_USER_AGENT", "SonosRemote/1.0").strip() or "SonosRemote/1.0"
SONOS_DISCOVERY_TIMEOUT = max(1, int(os.getenv("SONOS_DISCOVERY_TIMEOUT", "3")))
SONOS_CONTROL_TIMEOUT = float(os.getenv("SONOS_CONTROL_TIMEOUT", "2.0"))
SONOS_CONTROL_TIMEOUT = max(1.0, min(SONOS_CONTROL_TIMEOUT, 3.0))
SONOS_FETCH_CONCURRENCY = max(1, int(os.getenv("SONOS_FETCH_CONCURRENCY", "16")))
SONOS_ROOMS_CACHE_TTL = int(os.getenv("SONOS_ROOMS_CACHE_TTL", str(15 * 60)))
SONOS_DEFAULT_VOLUME_STEP = int(os.getenv("SONOS_DEFAULT_VOLUME_STEP", "5"))
SONOS_DEFAULT_VOLUME_STEP = max(1, min(SONOS_DEFAULT_VOLUME_STEP, 20))
SONOS_WARM_CACHE_ON_STARTUP = os.getenv("SONOS_WARM_CACHE_ON_STARTUP", "1").lower() not in {"0", "false", "no"}


sonos_service = SonosService(
    http_user_agent=SONOS_HTTP_USER_AGENT,
    control_timeout=SONOS_CONTROL_TIMEOUT,
    discovery_timeout=SONOS_DISCOVERY_TIMEOUT,
    fetch_concurrency=SONOS_FETCH_CONCURRENCY,
    ssdp_addr=SSDP_ADDR,
    search_target=SONOS_SEARCH_TARGET,
)
room_cache = RoomCache(SONOS_ROOMS_CACHE_TTL)
app = FastAPI(title="Sonos Remote", version="1.0.0")

app.include_router(create_health_router(room_cache))
app.include_router(
    create_sonos_router(
        sonos=sonos_service,
        room_cache=room_cache,
        default_volume_step=SONOS_DEFAULT_VOLUME_STEP,
    )
)

warm_cache_task: Optional[asyncio.Task] = None


async def _warm_room_cache() -> None:
    try:
        rooms = await room_cache.get_or_populate(sonos_service.list_rooms)
    except asyncio.CancelledError:
        raise
    except Exception:  # pragma: no cover - defensive
        log.exception("Sonos room cache warm-up crashed")
        return
    log.info("Rooms found: %s", len(rooms))


@app.on_event("startup")
async def _startup_events() -> None:
    global warm_cache_task
    log.info(
        "Sonos Remote starting (discovery_timeout=%ss, control_timeout=%.1fs, rooms_ttl=%ss)",
        SONOS_DISCOVERY_TIMEOUT,
        SONOS_CONTROL_TIMEOUT,
        SONOS_ROOMS_CACHE_TTL,
    )
    if SONOS_WARM_CACHE_ON_STARTUP and warm_cache_task is None:
        warm_cache_task = asyncio.create_task(_warm_room_cache())


@app.on_event("shutdown")
async def _shutdown_events() -> None:
    global warm_cache_task
    if warm_cache_task:
        warm_cache_task.cancel()
        try:
            await warm_cache_task
        except asyncio.CancelledError:
            pass
        warm_cache_task = None


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT, log_level=os.getenv("LOG_LEVEL", "INFO").lower())
