"""Tests for the room-addressed HTTP control surface."""

from typing import Optional

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.health import create_health_router
from api.sonos import create_sonos_router
from services.room_cache import RoomCache
from services.sonos import DeviceRecord, clamp_volume


KITCHEN = DeviceRecord(
    description_url="http://192.168.1.20:1400/xml/device_description.xml",
    address="192.168.1.20",
    room_name="Kitchen",
    udn="uuid:A",
    uuid="A",
    is_coordinator=True,
)


class FakeSonos:
    def __init__(self, *, volume: Optional[int] = 30, succeed: bool = True) -> None:
        self.volume = volume
        self.succeed = succeed
        self.builds = 0
        self.calls: list[tuple] = []

    async def list_rooms(self) -> dict:
        self.builds += 1
        return {"Kitchen": KITCHEN}

    async def get_volume(self, address: str) -> Optional[int]:
        self.calls.append(("get_volume", address))
        return self.volume

    async def volume_up(self, address: str, step: int) -> bool:
        self.calls.append(("volume_up", address, step))
        if not self.succeed or self.volume is None:
            return False
        self.volume = clamp_volume(self.volume + step)
        return True

    async def volume_down(self, address: str, step: int) -> bool:
        self.calls.append(("volume_down", address, step))
        if not self.succeed or self.volume is None:
            return False
        self.volume = clamp_volume(self.volume - step)
        return True

    async def stop(self, address: str) -> bool:
        self.calls.append(("stop", address))
        return self.succeed

    async def play_stream(self, address: str, stream_url: str) -> bool:
        self.calls.append(("play_stream", address, stream_url))
        return self.succeed


def _client(sonos: FakeSonos, cache: Optional[RoomCache] = None) -> TestClient:
    room_cache = cache or RoomCache(900)
    app = FastAPI()
    app.include_router(create_health_router(room_cache))
    app.include_router(create_sonos_router(sonos=sonos, room_cache=room_cache, default_volume_step=5))
    return TestClient(app)


class TestRooms:
    def test_rooms_are_cached(self):
        sonos = FakeSonos()
        client = _client(sonos)
        first = client.get("/api/sonos/rooms")
        second = client.get("/api/sonos/rooms")
        assert first.status_code == 200
        assert first.json()["Kitchen"]["address"] == "192.168.1.20"
        assert first.json()["Kitchen"]["isCoordinator"] is True
        assert second.json() == first.json()
        assert sonos.builds == 1

    def test_refresh_rebuilds(self):
        sonos = FakeSonos()
        client = _client(sonos)
        client.get("/api/sonos/rooms")
        resp = client.post("/api/sonos/rooms/refresh")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Rooms cache refreshed successfully"
        assert "Kitchen" in resp.json()["rooms"]
        assert sonos.builds == 2

    def test_health_reports_cache_state(self):
        client = _client(FakeSonos())
        assert client.get("/api/health").json() == {"status": "ok", "rooms_cached": False, "room_count": None}
        client.get("/api/sonos/rooms")
        assert client.get("/api/health").json()["room_count"] == 1


class TestVolumeRoutes:
    def test_get_volume(self):
        client = _client(FakeSonos(volume=42))
        resp = client.get("/api/sonos/volume", params={"roomName": "Kitchen"})
        assert resp.status_code == 200
        assert resp.json() == {"volume": 42}

    def test_unknown_room_is_404(self):
        client = _client(FakeSonos())
        resp = client.get("/api/sonos/volume", params={"roomName": "Attic"})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Room not found"

    def test_unreadable_volume_is_500(self):
        client = _client(FakeSonos(volume=None))
        resp = client.get("/api/sonos/volume", params={"roomName": "Kitchen"})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to get volume"

    def test_volume_up_uses_default_step(self):
        sonos = FakeSonos(volume=30)
        client = _client(sonos)
        resp = client.post("/api/sonos/volumeUp", json={"roomName": "Kitchen"})
        assert resp.status_code == 200
        assert resp.json() == {"message": "Volume increased successfully", "currentVolume": 35}
        assert ("volume_up", "192.168.1.20", 5) in sonos.calls

    def test_volume_down_with_step(self):
        client = _client(FakeSonos(volume=30))
        resp = client.post("/api/sonos/volumeDown", json={"roomName": "Kitchen", "step": 20})
        assert resp.status_code == 200
        assert resp.json() == {"message": "Volume decreased successfully", "currentVolume": 10}

    def test_step_out_of_bounds_is_rejected(self):
        sonos = FakeSonos()
        client = _client(sonos)
        assert client.post("/api/sonos/volumeUp", json={"roomName": "Kitchen", "step": 21}).status_code == 422
        assert client.post("/api/sonos/volumeDown", json={"roomName": "Kitchen", "step": 0}).status_code == 422
        assert sonos.calls == []

    def test_volume_failure_is_500(self):
        client = _client(FakeSonos(succeed=False))
        resp = client.post("/api/sonos/volumeUp", json={"roomName": "Kitchen"})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to increase volume"


class TestPlaybackRoutes:
    def test_play_stream(self):
        sonos = FakeSonos()
        client = _client(sonos)
        resp = client.post(
            "/api/sonos/playStreamOnRoom",
            json={"roomName": "Kitchen", "streamUrl": "http://radio.example.com/live.mp3"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"message": "Stream started successfully"}
        assert ("play_stream", "192.168.1.20", "http://radio.example.com/live.mp3") in sonos.calls

    def test_play_stream_rejects_bad_url(self):
        sonos = FakeSonos()
        client = _client(sonos)
        resp = client.post("/api/sonos/playStreamOnRoom", json={"roomName": "Kitchen", "streamUrl": "not a url"})
        assert resp.status_code == 422
        assert sonos.calls == []

    def test_play_stream_rejects_url_without_host(self):
        sonos = FakeSonos()
        client = _client(sonos)
        for url in ("http://:8000/stream", "http://user@/stream"):
            resp = client.post("/api/sonos/playStreamOnRoom", json={"roomName": "Kitchen", "streamUrl": url})
            assert resp.status_code == 422
        assert sonos.calls == []

    def test_play_stream_unknown_room(self):
        client = _client(FakeSonos())
        resp = client.post(
            "/api/sonos/playStreamOnRoom",
            json={"roomName": "Attic", "streamUrl": "http://radio.example.com/live.mp3"},
        )
        assert resp.status_code == 404

    def test_play_stream_failure(self):
        client = _client(FakeSonos(succeed=False))
        resp = client.post(
            "/api/sonos/playStreamOnRoom",
            json={"roomName": "Kitchen", "streamUrl": "http://radio.example.com/live.mp3"},
        )
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to start stream"

    def test_stop(self):
        client = _client(FakeSonos())
        resp = client.post("/api/sonos/stop", json={"roomName": "Kitchen"})
        assert resp.status_code == 200
        assert resp.json() == {"message": "Playback stopped successfully"}

    def test_stop_failure(self):
        client = _client(FakeSonos(succeed=False))
        resp = client.post("/api/sonos/stop", json={"roomName": "Kitchen"})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Failed to stop playback"

    def test_missing_room_name_is_rejected(self):
        client = _client(FakeSonos())
        assert client.post("/api/sonos/stop", json={}).status_code == 422
