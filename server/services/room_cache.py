from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple


ROOMS_CACHE_KEY = "sonos_rooms"


class RoomCache:
    """Time-boxed holder for the last built room registry.

    Entries live under a single fixed key and are replaced wholesale. While a
    rebuild is running, other callers wait for it instead of starting their own
    discovery.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def peek(self) -> Optional[Any]:
        cached = self._entries.get(ROOMS_CACHE_KEY)
        if not cached:
            return None
        expires_at, payload = cached
        if expires_at < self._clock():
            self._entries.pop(ROOMS_CACHE_KEY, None)
            return None
        return payload

    def put(self, payload: Any) -> None:
        if self._ttl <= 0:
            return
        self._entries[ROOMS_CACHE_KEY] = (self._clock() + self._ttl, payload)

    def invalidate(self) -> None:
        self._entries.pop(ROOMS_CACHE_KEY, None)

    async def get_or_populate(self, producer: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.peek()
        if cached is not None:
            return cached
        async with self._lock:
            cached = self.peek()
            if cached is not None:
                return cached
            payload = await producer()
            self.put(payload)
            return payload
