from __future__ import annotations

import asyncio
import logging
from typing import Optional


log = logging.getLogger("sonosremote")

SSDP_ADDR = ("239.255.255.250", 1900)
SONOS_SEARCH_TARGET = "urn:schemas-upnp-org:device:ZonePlayer:1"
# Replies without one of these markers come from other UPnP devices on the LAN.
DEVICE_MARKERS = ("Sonos", "ZonePlayer")
MIN_DISCOVERY_TIMEOUT = 1


def build_search_message(search_target: str = SONOS_SEARCH_TARGET, ssdp_addr: tuple[str, int] = SSDP_ADDR) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {ssdp_addr[0]}:{ssdp_addr[1]}\r\n"
        'MAN: "ssdp:discover"\r\n'
        "MX: 1\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    ).encode("utf-8")


def parse_location(data: bytes) -> Optional[str]:
    """Return the LOCATION header of a Sonos search reply, or None.

    Replies that do not mention a Sonos marker are ignored so that other
    UPnP renderers answering the multicast never enter the registry.
    """
    try:
        text = data.decode("utf-8", errors="ignore")
    except Exception:
        return None
    if not any(marker in text for marker in DEVICE_MARKERS):
        return None
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        if key.strip().lower() != "location":
            continue
        location = value.strip()
        return location or None
    return None


def discovery_window(timeout: object) -> int:
    try:
        seconds = int(timeout)
    except (TypeError, ValueError):
        seconds = MIN_DISCOVERY_TIMEOUT
    return max(MIN_DISCOVERY_TIMEOUT, seconds)


class _SearchProtocol(asyncio.DatagramProtocol):
    def __init__(self, message: bytes, ssdp_addr: tuple[str, int]) -> None:
        self._message = message
        self._ssdp_addr = ssdp_addr
        self.replies: asyncio.Queue = asyncio.Queue()
        self.send_failed = False
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport
        try:
            transport.sendto(self._message, self._ssdp_addr)
        except Exception as exc:
            log.warning("SSDP search send failed (%s:%s): %s", self._ssdp_addr[0], self._ssdp_addr[1], exc)
            self.send_failed = True
            self.replies.put_nowait(None)

    def datagram_received(self, data: bytes, addr) -> None:
        self.replies.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        log.warning("SSDP receive error: %s", exc)
        self.replies.put_nowait(None)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.replies.put_nowait(None)


async def discover(
    timeout: int = 3,
    *,
    ssdp_addr: tuple[str, int] = SSDP_ADDR,
    search_target: str = SONOS_SEARCH_TARGET,
) -> set[str]:
    """Multicast one search and collect device description URLs.

    Receives until a single wait exceeds ``timeout`` seconds (at least one
    second) or the socket reports an error. Never raises.
    """
    window = discovery_window(timeout)
    message = build_search_message(search_target, ssdp_addr)
    loop = asyncio.get_running_loop()
    locations: set[str] = set()

    try:
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: _SearchProtocol(message, ssdp_addr),
            local_addr=("0.0.0.0", 0),
        )
    except Exception as exc:
        log.warning("SSDP socket setup failed: %s", exc)
        return locations

    try:
        if protocol.send_failed:
            return set()
        while True:
            try:
                data = await asyncio.wait_for(protocol.replies.get(), timeout=window)
            except asyncio.TimeoutError:
                break
            if data is None:
                break
            location = parse_location(data)
            if location:
                locations.add(location)
    finally:
        transport.close()

    log.info("SSDP discovery found %s device location(s)", len(locations))
    return locations
