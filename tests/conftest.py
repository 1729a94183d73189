import httpx
import pytest

from sonos_fakes import RecordingTransport, soap_response


@pytest.fixture
def ok_transport() -> RecordingTransport:
    return RecordingTransport(lambda request: httpx.Response(200, text=soap_response("")))
