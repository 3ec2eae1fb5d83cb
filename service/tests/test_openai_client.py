from types import SimpleNamespace

import httpx
import openai
import pytest

from drival.errors import UpstreamError
from drival.realtime.openai_client import RealtimeSessionBroker

REALTIME_URL = "https://api.openai.com/v1/realtime/sessions"


class FakeSessions:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error:
            raise self.error
        return self.result


def _broker_with(sessions):
    broker = RealtimeSessionBroker(api_key="sk-test", model="gpt-realtime-test", voice="alloy", instructions="Be brief")
    broker._client = SimpleNamespace(beta=SimpleNamespace(realtime=SimpleNamespace(sessions=sessions)))
    return broker


def _status_error(cls, status_code):
    response = httpx.Response(status_code, request=httpx.Request("POST", REALTIME_URL))
    return cls("upstream said no", response=response, body=None)


@pytest.mark.asyncio
async def test_credential_carries_client_secret():
    sessions = FakeSessions(result=SimpleNamespace(
        id="sess_123",
        client_secret=SimpleNamespace(value="ek_abc", expires_at=1735689600),
    ))
    broker = _broker_with(sessions)

    credential = await broker.create_credential()

    assert credential.client_secret == "ek_abc"
    assert credential.expires_at == 1735689600
    assert credential.upstream_session_id == "sess_123"
    assert sessions.kwargs == {"model": "gpt-realtime-test", "voice": "alloy", "instructions": "Be brief"}


@pytest.mark.asyncio
@pytest.mark.parametrize("error_cls, status", [
    (openai.AuthenticationError, 401),
    (openai.PermissionDeniedError, 403),
])
async def test_rejected_key_maps_to_401(error_cls, status):
    broker = _broker_with(FakeSessions(error=_status_error(error_cls, status)))

    with pytest.raises(UpstreamError) as exc_info:
        await broker.create_credential()

    assert exc_info.value.status_code == 401
    assert exc_info.value.extra == {"upstreamStatus": status}


@pytest.mark.asyncio
async def test_other_upstream_errors_map_to_502():
    broker = _broker_with(FakeSessions(error=_status_error(openai.InternalServerError, 500)))

    with pytest.raises(UpstreamError) as exc_info:
        await broker.create_credential()

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_missing_api_key():
    broker = RealtimeSessionBroker(api_key="")

    with pytest.raises(UpstreamError) as exc_info:
        await broker.create_credential()

    assert exc_info.value.status_code == 500
