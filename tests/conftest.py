"""Shared test fixtures for Anvil tests."""

import json

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from starlette.websockets import WebSocketState

from anvil.core.config import AnvilSettings
from anvil.daemon.main import create_app
from anvil.workers.pool import WorkerLauncher

TEST_API_KEY = "test_key"
TEST_JWT_SECRET = "anvil-test-jwt-secret-0123456789abcdef"
ALLOWED_ORIGIN = "http://localhost:3001"


def make_settings(**overrides) -> AnvilSettings:
    values = {
        "api_key": TEST_API_KEY,
        "jwt_secret": TEST_JWT_SECRET,
        "cors_origins": [ALLOWED_ORIGIN],
        "min_workers": 2,
        "max_workers": 4,
        "worker_timeout": 30.0,
        # Keep the background loops out of the way; tests drive ticks directly
        "heartbeat_interval": 3600.0,
        "scale_interval": 3600.0,
        "ws_ping_interval": 3600.0,
    }
    values.update(overrides)
    return AnvilSettings(**values)


@pytest_asyncio.fixture(scope="function")
async def app():
    """Create a fresh app and run its lifespan for each test."""
    _app = create_app(make_settings())
    async with _app.router.lifespan_context(_app):
        yield _app


@pytest_asyncio.fixture(scope="function")
async def client(app):
    """Async HTTP client pointed at the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {TEST_API_KEY}"},
    ) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def unauthed_client(app):
    """Async HTTP client without auth."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {TEST_API_KEY}"}


# ─── Fakes ───


class FakeWebSocket:
    """Stands in for a Starlette WebSocket inside the gateway."""

    def __init__(self, fail_send: bool = False):
        self.fail_send = fail_send
        self.accepted = False
        self.sent: list[dict] = []
        self.closed: tuple[int, str | None] | None = None
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTING

    async def accept(self) -> None:
        self.accepted = True
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, payload: str) -> None:
        if self.fail_send:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(payload))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)
        self.application_state = WebSocketState.DISCONNECTED

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == message_type]


class FailingLauncher(WorkerLauncher):
    """Launcher whose hooks raise for the configured worker ids (or all, if None).

    ``alive`` is what ``is_alive`` answers for every worker.
    """

    def __init__(self, fail_launch: bool = False, fail_terminate: set[str] | None = None):
        self.fail_launch = fail_launch
        self.fail_terminate = fail_terminate or set()
        self.launched: list[str] = []
        self.terminated: list[str] = []
        self.alive = True

    async def launch(self, worker) -> None:
        if self.fail_launch:
            raise RuntimeError("container runtime unavailable")
        self.launched.append(worker.id)

    async def terminate(self, worker) -> None:
        if worker.id in self.fail_terminate:
            raise RuntimeError(f"cannot terminate {worker.id}")
        self.terminated.append(worker.id)

    async def is_alive(self, worker) -> bool:
        return self.alive


class EventRecorder:
    """Pool listener that remembers every event it sees."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event, data):
        self.events.append((event.value, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def count(self, name: str) -> int:
        return self.names().count(name)
