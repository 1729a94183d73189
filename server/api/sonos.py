import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from services.room_cache import RoomCache
from services.sonos import DeviceRecord, SonosService, find_room_address, is_valid_url


log = logging.getLogger("sonosremote")


class RoomPayload(BaseModel):
    roomName: str = Field(min_length=1, max_length=200)


class PlayStreamPayload(RoomPayload):
    streamUrl: str = Field(min_length=1, max_length=2000)

    @field_validator("streamUrl")
    @classmethod
    def _require_url(cls, value: str) -> str:
        if not is_valid_url(value):
            raise ValueError("streamUrl must be a valid URL")
        return value


class VolumeStepPayload(RoomPayload):
    step: Optional[int] = Field(default=None, ge=1, le=20)


def _public_rooms(rooms: dict[str, DeviceRecord]) -> dict:
    return {name: record.to_dict() for name, record in rooms.items()}


def create_sonos_router(
    *,
    sonos: SonosService,
    room_cache: RoomCache,
    default_volume_step: int,
) -> APIRouter:
    router = APIRouter()

    async def _cached_rooms() -> dict[str, DeviceRecord]:
        return await room_cache.get_or_populate(sonos.list_rooms)

    async def _resolve_room(room_name: str) -> str:
        address = find_room_address(await _cached_rooms(), room_name)
        if not address:
            raise HTTPException(status_code=404, detail="Room not found")
        return address

    @router.get("/api/sonos/rooms")
    async def list_rooms() -> dict:
        try:
            rooms = await _cached_rooms()
        except Exception as exc:
            log.exception("Listing Sonos rooms failed")
            raise HTTPException(status_code=500, detail=f"Failed to get rooms: {exc}") from exc
        return _public_rooms(rooms)

    @router.post("/api/sonos/rooms/refresh")
    async def refresh_rooms() -> dict:
        room_cache.invalidate()
        try:
            rooms = await _cached_rooms()
        except Exception as exc:
            log.exception("Refreshing Sonos rooms failed")
            raise HTTPException(status_code=500, detail=f"Failed to refresh rooms: {exc}") from exc
        log.info("Sonos rooms cache refreshed (%s room(s))", len(rooms))
        return {"message": "Rooms cache refreshed successfully", "rooms": _public_rooms(rooms)}

    @router.get("/api/sonos/volume")
    async def get_volume(roomName: str = Query(min_length=1, max_length=200)) -> dict:
        address = await _resolve_room(roomName)
        volume = await sonos.get_volume(address)
        if volume is None:
            raise HTTPException(status_code=500, detail="Failed to get volume")
        return {"volume": volume}

    @router.post("/api/sonos/playStreamOnRoom")
    async def play_stream_on_room(payload: PlayStreamPayload) -> dict:
        address = await _resolve_room(payload.roomName)
        log.info("Starting stream on %s (ip=%s, url=%s)", payload.roomName, address, payload.streamUrl)
        if not await sonos.play_stream(address, payload.streamUrl):
            raise HTTPException(status_code=500, detail="Failed to start stream")
        return {"message": "Stream started successfully"}

    @router.post("/api/sonos/stop")
    async def stop(payload: RoomPayload) -> dict:
        address = await _resolve_room(payload.roomName)
        if not await sonos.stop(address):
            raise HTTPException(status_code=500, detail="Failed to stop playback")
        return {"message": "Playback stopped successfully"}

    @router.post("/api/sonos/volumeUp")
    async def volume_up(payload: VolumeStepPayload) -> dict:
        address = await _resolve_room(payload.roomName)
        step = payload.step if payload.step is not None else default_volume_step
        if not await sonos.volume_up(address, step):
            raise HTTPException(status_code=500, detail="Failed to increase volume")
        return {
            "message": "Volume increased successfully",
            "currentVolume": await sonos.get_volume(address),
        }

    @router.post("/api/sonos/volumeDown")
    async def volume_down(payload: VolumeStepPayload) -> dict:
        address = await _resolve_room(payload.roomName)
        step = payload.step if payload.step is not None else default_volume_step
        if not await sonos.volume_down(address, step):
            raise HTTPException(status_code=500, detail="Failed to decrease volume")
        return {
            "message": "Volume decreased successfully",
            "currentVolume": await sonos.get_volume(address),
        }

    return router
