"""Shared test doubles and fixtures.

Provides:
- FakeWebSocket: scripted socket with send/close/async iteration
- FakeConnector: stands in for ``websockets.connect`` and hands out one
  FakeWebSocket per URL
- wait_until: poll a condition while background channel tasks run
- FastAPI app with registry and broadcaster on app.state (no lifespan)
- Async HTTP client for API testing
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster
from src.rtms_relay.core.security import SignatureProvider
from src.rtms_relay.main import create_app
from src.rtms_relay.rtms.registry import ConnectionRegistry

CLIENT_ID = "client-abc"
CLIENT_SECRET = "secret-xyz"

_CLOSED = object()


class FakeWebSocket:
    """In-memory socket. Frames fed with ``feed`` are yielded by iteration."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def feed(self, frame: Any) -> None:
        """Queue an inbound frame; dicts are sent as JSON text."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._inbox.put_nowait(frame)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_CLOSED)

    def sent_of_type(self, msg_type: int) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("msg_type") == msg_type]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Callable with the shape of ``websockets.connect``.

    URLs listed in ``refused`` fail with OSError like an unreachable host.
    """

    def __init__(self) -> None:
        self.sockets: dict[str, FakeWebSocket] = {}
        self.urls: list[str] = []
        self.refused: set[str] = set()

    def socket(self, url: str) -> FakeWebSocket:
        return self.sockets.setdefault(url, FakeWebSocket())

    @asynccontextmanager
    async def __call__(self, url: str):
        self.urls.append(url)
        if url in self.refused:
            raise OSError(f"connection refused: {url}")
        ws = self.socket(url)
        try:
            yield ws
        finally:
            ws.closed = True


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until


@pytest.fixture
def signer() -> SignatureProvider:
    return SignatureProvider(CLIENT_ID, CLIENT_SECRET)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest_asyncio.fixture
async def broadcaster() -> AsyncGenerator[TranscriptBroadcaster, None]:
    instance = TranscriptBroadcaster(instance_id="instance-test")
    yield instance
    await instance.close()


@pytest_asyncio.fixture
async def registry(signer, broadcaster, connector) -> AsyncGenerator[ConnectionRegistry, None]:
    instance = ConnectionRegistry(signer=signer, broadcaster=broadcaster, connect=connector)
    yield instance
    await instance.close_all()


@pytest.fixture
def app(registry, broadcaster):
    """FastAPI app wired to the test registry and broadcaster."""
    application = create_app()
    application.state.registry = registry
    application.state.broadcaster = broadcaster
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
