import os
import time

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["OPENAI_API_KEY"] = "test-key-sk-12345"
os.environ["USAGE_BACKEND"] = "memory"
os.environ["ENABLE_BACKGROUND_JOBS"] = "false"
os.environ["JWT_SECRET"] = "test-secret-for-signing"

from drival.deps import build_services
from drival.main import create_app
from drival.memory_store import MemoryUsageStore
from drival.realtime.monitor import ConnectionMonitor
from drival.realtime.openai_client import RealtimeCredential
from drival.tokens import TokenService
from drival.usage import UsageService


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms=None):
        self.now_ms = start_ms if start_ms is not None else int(time.time()) * 1000

    def __call__(self):
        return self.now_ms

    def advance(self, seconds):
        self.now_ms += int(seconds * 1000)


class FakeBroker:
    def __init__(self):
        self.calls = 0
        self.error = None

    async def create_credential(self, instructions=None):
        self.calls += 1
        if self.error:
            raise self.error
        return RealtimeCredential(client_secret="ek_test_secret", expires_at=None)

    async def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryUsageStore(default_max_concurrent=3)


@pytest.fixture
def tokens(clock):
    return TokenService(secret="test-secret-for-signing", issuer="aiVoiceAgent", heartbeat_ttl_seconds=300, clock=clock)


@pytest.fixture
def usage(store, tokens, clock):
    return UsageService(
        store,
        tokens,
        clock=clock,
        initial_session_seconds=900,
        max_session_seconds=900,
        min_session_seconds=30,
        warning_threshold_seconds=300,
        stale_session_seconds=300,
        period="month",
    )


@pytest.fixture
def monitor(usage, tokens):
    return ConnectionMonitor(usage, tokens, idle_timeout_seconds=90, close_grace_seconds=0.01)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def services(store, clock, broker):
    services = build_services(store=store, clock=clock, broker=broker, enable_jobs=False)
    services.admin_api_key = "admin-test-key"
    services.monitor.close_grace_seconds = 0.01
    return services


@pytest.fixture
def client(services):
    """Create a test client."""
    app = create_app(services)
    with TestClient(app) as test_client:
        yield test_client
