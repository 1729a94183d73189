from __future__ import annotations

from fastapi import APIRouter

from services.room_cache import RoomCache


def create_health_router(room_cache: RoomCache) -> APIRouter:
    router = APIRouter()

    @router.get("/api/health")
    async def health() -> dict:
        rooms = room_cache.peek()
        return {
            "status": "ok",
            "rooms_cached": rooms is not None,
            "room_count": len(rooms) if rooms is not None else None,
        }

    return router
