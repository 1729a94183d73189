from typing import Callable, Optional

import httpx

from services.sonos import SonosService


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def soap_actions(self) -> list[str]:
        return [request.headers.get("SOAPACTION", "") for request in self.requests]


def soap_response(inner: str) -> str:
    return (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
        's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        f"<s:Body>{inner}</s:Body></s:Envelope>"
    )


def device_description(room_name: str, udn: str, *, serial: Optional[str] = "00-0E-58-01-02-03:4") -> str:
    serial_xml = f"<serialNum>{serial}</serialNum>" if serial is not None else ""
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<root xmlns="urn:schemas-upnp-org:device-1-0">'
        "<specVersion><major>1</major><minor>0</minor></specVersion>"
        "<device>"
        "<deviceType>urn:schemas-upnp-org:device:ZonePlayer:1</deviceType>"
        f"<friendlyName>192.168.1.20 - Sonos One - {udn}</friendlyName>"
        "<manufacturer>Sonos, Inc.</manufacturer>"
        "<modelNumber>S18</modelNumber>"
        "<modelName>Sonos One</modelName>"
        f"{serial_xml}"
        f"<UDN>{udn}</UDN>"
        f"<roomName>{room_name}</roomName>"
        "</device>"
        "</root>"
    )


def zone_group_attributes(group_id: str, members: str) -> str:
    return soap_response(
        '<u:GetZoneGroupAttributesResponse xmlns:u="urn:schemas-upnp-org:service:ZoneGroupTopology:1">'
        "<CurrentZoneGroupName>Kitchen</CurrentZoneGroupName>"
        f"<CurrentZoneGroupID>{group_id}</CurrentZoneGroupID>"
        f"<CurrentZonePlayerUUIDsInGroup>{members}</CurrentZonePlayerUUIDsInGroup>"
        "</u:GetZoneGroupAttributesResponse>"
    )


def make_service(transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs) -> SonosService:
    options = {
        "http_user_agent": "SonosRemote/test",
        "control_timeout": 2.0,
        "discovery_timeout": 1,
        "fetch_concurrency": 4,
    }
    options.update(kwargs)
    return SonosService(transport=transport, **options)


