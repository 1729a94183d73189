import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from xml.sax.saxutils import escape as xml_escape
from xml.etree import ElementTree
from urllib.parse import urlparse

from services.ssdp import SSDP_ADDR, SONOS_SEARCH_TARGET, discover


log = logging.getLogger("sonosremote")

CONTROL_PORT = 1400
MIN_VOLUME = 0
MAX_VOLUME = 100
DEFAULT_VOLUME_STEP = 5

SERVICE_RENDERING_CONTROL = "RenderingControl"
SERVICE_AV_TRANSPORT = "AVTransport"
SERVICE_ZONE_GROUP_TOPOLOGY = "ZoneGroupTopology"

_URL_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*$")
_CURRENT_VOLUME_RE = re.compile(r"<CurrentVolume>(\d+)</CurrentVolume>")
_ZONE_GROUP_ID_RE = re.compile(r"<CurrentZoneGroupID>(.*?)</CurrentZoneGroupID>")
_ZONE_GROUP_MEMBERS_RE = re.compile(r"<CurrentZonePlayerUUIDsInGroup>(.*?)</CurrentZonePlayerUUIDsInGroup>")
_XML_QUOTES = {'"': "&quot;", "'": "&apos;"}


@dataclass
class DeviceRecord:
    description_url: str
    address: str
    friendly_name: str = ""
    manufacturer: str = ""
    model_name: str = ""
    model_number: str = ""
    serial_number: str = ""
    room_name: str = ""
    udn: str = ""
    uuid: str = ""
    is_coordinator: bool = False

    def __post_init__(self) -> None:
        if not self.address:
            raise ValueError("DeviceRecord requires a device address")

    def to_dict(self) -> dict:
        return {
            "descriptionUrl": self.description_url,
            "address": self.address,
            "friendlyName": self.friendly_name,
            "manufacturer": self.manufacturer,
            "modelName": self.model_name,
            "modelNumber": self.model_number,
            "serialNumber": self.serial_number,
            "roomName": self.room_name,
            "udn": self.udn,
            "uuid": self.uuid,
            "isCoordinator": self.is_coordinator,
        }


def is_valid_url(value: Optional[str]) -> bool:
    """Return True for absolute URLs with a scheme and a host.

    Any scheme is accepted so Sonos specific URIs such as
    ``x-rincon-mp3radio://host/stream`` remain playable.
    """
    if not value or not isinstance(value, str):
        return False
    if value != value.strip() or any(ch.isspace() for ch in value):
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    if not parsed.scheme or not _URL_SCHEME_RE.match(parsed.scheme):
        return False
    return bool(parsed.hostname)


def clamp_volume(volume: int) -> int:
    return max(MIN_VOLUME, min(MAX_VOLUME, int(volume)))


def strip_uuid_prefix(udn: Optional[str]) -> str:
    raw = (udn or "").strip()
    if raw.startswith("uuid:"):
        return raw[len("uuid:") :]
    return raw


def build_action_body(service: str, action: str, arguments: dict[str, str]) -> str:
    ns = f"urn:schemas-upnp-org:service:{service}:1"
    body_parts = [f"<{k}>{xml_escape(str(v), _XML_QUOTES)}</{k}>" for k, v in arguments.items()]
    return f"<u:{action} xmlns:u=\"{ns}\">" + "".join(body_parts) + f"</u:{action}>"


def build_envelope(body: str) -> str:
    return (
        "<?xml version=\"1.0\" encoding=\"utf-8\"?>"
        "<s:Envelope xmlns:s=\"http://schemas.xmlsoap.org/soap/envelope/\" "
        "s:encodingStyle=\"http://schemas.xmlsoap.org/soap/encoding/\">"
        "<s:Body>"
        f"{body}"
        "</s:Body>"
        "</s:Envelope>"
    )


def parse_upnp_fault(xml_text: str) -> Optional[str]:
    try:
        root = ElementTree.fromstring(xml_text)
    except Exception:
        return None
    fault = root.find(".//{*}Fault")
    if fault is None:
        return None
    error_code = root.findtext(".//{*}errorCode")
    error_desc = root.findtext(".//{*}errorDescription")
    if error_code or error_desc:
        code = (error_code or "").strip()
        desc = (error_desc or "").strip()
        if code and desc:
            return f"UPnPError {code}: {desc}"
        return f"UPnPError {code or desc}".strip()
    fault_string = root.findtext(".//{*}faultstring")
    if fault_string:
        return fault_string.strip()
    return "UPnPError (unknown SOAP fault)"


def rooms_from_devices(devices: list[DeviceRecord]) -> dict[str, DeviceRecord]:
    rooms: dict[str, DeviceRecord] = {}
    for device in devices:
        if not device.is_coordinator:
            continue
        # Later coordinators overwrite earlier ones with the same room name.
        rooms[device.room_name] = device
    return rooms


def find_room_address(rooms: dict[str, DeviceRecord], room_name: Optional[str]) -> Optional[str]:
    if not room_name:
        return None
    record = rooms.get(room_name)
    if record is None or not record.is_coordinator:
        return None
    return record.address or None


class SonosService:
    def __init__(
        self,
        *,
        http_user_agent: str,
        control_timeout: float,
        discovery_timeout: int,
        fetch_concurrency: int,
        ssdp_addr: tuple[str, int] = SSDP_ADDR,
        search_target: str = SONOS_SEARCH_TARGET,
        discover_locations: Optional[Callable[[int], Awaitable[set[str]]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._http_user_agent = http_user_agent
        self._control_timeout = float(control_timeout)
        self._discovery_timeout = int(discovery_timeout)
        self._fetch_concurrency = max(1, int(fetch_concurrency))
        self._ssdp_addr = ssdp_addr
        self._search_target = search_target
        self._discover_locations = discover_locations or self._ssdp_discover
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._control_timeout, transport=self._transport)

    async def _ssdp_discover(self, timeout: int) -> set[str]:
        return await discover(timeout, ssdp_addr=self._ssdp_addr, search_target=self._search_target)

    async def soap_request(
        self,
        address: str,
        service: str,
        action: str,
        body: str,
        *,
        control_path: Optional[str] = None,
    ) -> Optional[str]:
        """POST a SOAP action to a device and return the raw response text.

        Returns None on empty inputs, transport errors and non-2xx replies.
        """
        if not address or not service or not action or not body:
            return None
        path = control_path or f"/MediaRenderer/{service}/Control"
        target = f"http://{address}:{CONTROL_PORT}{path}"
        envelope = build_envelope(body).encode("utf-8")
        headers = {
            "Content-Type": "text/xml; charset=\"utf-8\"",
            "SOAPACTION": f'"urn:schemas-upnp-org:service:{service}:1#{action}"',
            "Content-Length": str(len(envelope)),
            "User-Agent": self._http_user_agent,
        }
        try:
            async with self._client() as client:
                resp = await client.post(target, content=envelope, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.warning("Sonos SOAP %s.%s request failed (ip=%s): %s", service, action, address, exc)
            return None

        if not resp.is_success:
            detail = parse_upnp_fault(resp.text or "") or f"HTTP {resp.status_code}"
            log.warning("Sonos SOAP %s.%s failed (ip=%s): %s", service, action, address, detail)
            return None
        return resp.text

    async def fetch_descriptor(self, url: str) -> Optional[DeviceRecord]:
        if not is_valid_url(url):
            log.debug("Skipping invalid description URL: %r", url)
            return None
        headers = {"User-Agent": self._http_user_agent}
        try:
            async with self._client() as client:
                resp = await client.get(url, headers=headers)
            if not resp.is_success:
                log.warning("Sonos description fetch returned HTTP %s (url=%s)", resp.status_code, url)
                return None
            root = ElementTree.fromstring(resp.content)
        except Exception as exc:
            log.warning("Sonos description fetch failed (url=%s): %s", url, exc)
            return None

        device = root.find("{*}device")
        if device is None:
            return None
        address = urlparse(url).hostname
        if not address:
            return None

        def _text(tag: str) -> str:
            value = device.findtext(f"{{*}}{tag}")
            return value.strip() if value else ""

        udn = _text("UDN")
        uuid = strip_uuid_prefix(udn)
        return DeviceRecord(
            description_url=url,
            address=address,
            friendly_name=_text("friendlyName"),
            manufacturer=_text("manufacturer"),
            model_name=_text("modelName"),
            model_number=_text("modelNumber"),
            serial_number=_text("serialNum"),
            room_name=_text("roomName"),
            udn=udn,
            uuid=uuid,
            is_coordinator=await self.is_coordinator(address, uuid),
        )

    async def is_coordinator(self, address: str, uuid: str) -> bool:
        """Return True if the device controls its zone group.

        Solo groups are always their own coordinator. Otherwise the group id
        is expected to start with the coordinator's uuid followed by ``:``.
        """
        if not address or not uuid:
            return False
        xml_text = await self.soap_request(
            address,
            SERVICE_ZONE_GROUP_TOPOLOGY,
            "GetZoneGroupAttributes",
            build_action_body(SERVICE_ZONE_GROUP_TOPOLOGY, "GetZoneGroupAttributes", {"InstanceID": "0"}),
            control_path=f"/{SERVICE_ZONE_GROUP_TOPOLOGY}/Control",
        )
        if not xml_text:
            return False
        group_match = _ZONE_GROUP_ID_RE.search(xml_text)
        members_match = _ZONE_GROUP_MEMBERS_RE.search(xml_text)
        group_id = group_match.group(1) if group_match else ""
        members = members_match.group(1) if members_match else ""
        if not group_id or not members:
            return False
        if "," not in members:
            return True
        return group_id.split(":")[0] == uuid

    async def list_devices(self, timeout: Optional[int] = None) -> list[DeviceRecord]:
        effective_timeout = self._discovery_timeout if timeout is None else int(timeout)
        try:
            locations = await self._discover_locations(effective_timeout)
        except Exception as exc:
            log.warning("Sonos SSDP discovery failed: %s", exc)
            locations = set()
        if not locations:
            return []

        sem = asyncio.Semaphore(self._fetch_concurrency)

        async def _fetch(url: str) -> Optional[DeviceRecord]:
            async with sem:
                try:
                    return await self.fetch_descriptor(url)
                except Exception as exc:
                    log.warning("Sonos device lookup failed (url=%s): %s", url, exc)
                    return None

        records = await asyncio.gather(*(_fetch(url) for url in sorted(locations)))
        devices = [record for record in records if record is not None]
        log.info("Sonos discovery resolved %s of %s device(s)", len(devices), len(locations))
        return devices

    async def list_rooms(self) -> dict[str, DeviceRecord]:
        return rooms_from_devices(await self.list_devices())

    async def get_volume(self, address: str) -> Optional[int]:
        xml_text = await self.soap_request(
            address,
            SERVICE_RENDERING_CONTROL,
            "GetVolume",
            build_action_body(SERVICE_RENDERING_CONTROL, "GetVolume", {"InstanceID": "0", "Channel": "Master"}),
        )
        if not xml_text:
            return None
        match = _CURRENT_VOLUME_RE.search(xml_text)
        if not match:
            return None
        return int(match.group(1))

    async def set_volume(self, address: str, volume: int) -> bool:
        arguments = {
            "InstanceID": "0",
            "Channel": "Master",
            "DesiredVolume": str(clamp_volume(volume)),
        }
        response = await self.soap_request(
            address,
            SERVICE_RENDERING_CONTROL,
            "SetVolume",
            build_action_body(SERVICE_RENDERING_CONTROL, "SetVolume", arguments),
        )
        return response is not None

    async def volume_up(self, address: str, step: int = DEFAULT_VOLUME_STEP) -> bool:
        current = await self.get_volume(address)
        if current is None:
            return False
        return await self.set_volume(address, current + int(step))

    async def volume_down(self, address: str, step: int = DEFAULT_VOLUME_STEP) -> bool:
        current = await self.get_volume(address)
        if current is None:
            return False
        return await self.set_volume(address, current - int(step))

    async def stop(self, address: str) -> bool:
        response = await self.soap_request(
            address,
            SERVICE_AV_TRANSPORT,
            "Stop",
            build_action_body(SERVICE_AV_TRANSPORT, "Stop", {"InstanceID": "0"}),
        )
        return response is not None

    async def play(self, address: str) -> bool:
        response = await self.soap_request(
            address,
            SERVICE_AV_TRANSPORT,
            "Play",
            build_action_body(SERVICE_AV_TRANSPORT, "Play", {"InstanceID": "0", "Speed": "1"}),
        )
        return response is not None

    async def play_stream(self, address: str, stream_url: str) -> bool:
        """Point the device at ``stream_url`` and start playback.

        Sonos does not start playing on SetAVTransportURI, so Play is sent
        right after; both calls must succeed.
        """
        if not is_valid_url(stream_url):
            log.warning("Rejecting invalid stream URL for %s: %r", address, stream_url)
            return False
        arguments = {
            "InstanceID": "0",
            "CurrentURI": stream_url,
            "CurrentURIMetaData": "",
        }
        response = await self.soap_request(
            address,
            SERVICE_AV_TRANSPORT,
            "SetAVTransportURI",
            build_action_body(SERVICE_AV_TRANSPORT, "SetAVTransportURI", arguments),
        )
        if response is None:
            return False
        return await self.play(address)
