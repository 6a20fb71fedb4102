"""Shared test fixtures for wsconform tests."""

from __future__ import annotations

from collections import deque
from types import SimpleNamespace

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from wsconform.config import ServerConfig, TransportMode
from wsconform.events import EventBus


class FakeWebSocket:
    """Minimal stand-in for a websockets connection.

    With ``echo=True`` every sent message is queued to be received back,
    optionally passed through ``transform`` first.
    """

    def __init__(
        self,
        incoming=None,
        echo: bool = False,
        transform=None,
        fail_send: bool = False,
        fail_ping: bool = False,
        path: str = "/",
        headers: dict | None = None,
        subprotocol: str | None = None,
    ) -> None:
        self.id = "fake"
        self.sent: list = []
        self.pings = 0
        self.closed = False
        self.close_codes: list[int] = []
        self.echo = echo
        self.transform = transform
        self.fail_send = fail_send
        self.fail_ping = fail_ping
        self.subprotocol = subprotocol
        self.request = SimpleNamespace(path=path, headers=Headers(headers or {}))
        self._incoming = deque(incoming or [])

    async def recv(self):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        if not self._incoming:
            raise ConnectionClosedError(None, None)
        return self._incoming.popleft()

    async def send(self, data):
        if self.closed or self.fail_send:
            raise ConnectionClosedError(None, None)
        self.sent.append(data)
        if self.echo:
            self._incoming.append(self.transform(data) if self.transform else data)

    async def ping(self):
        if self.closed or self.fail_ping:
            raise ConnectionClosedError(None, None)
        self.pings += 1

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_codes.append(code)
        self.closed = True


@pytest.fixture
def fake_ws():
    """The FakeWebSocket class, for building connections in tests."""
    return FakeWebSocket


@pytest.fixture
def event_bus() -> EventBus:
    """Create a test event bus."""
    return EventBus()


@pytest.fixture(params=[TransportMode.LISTEN, TransportMode.SERVE], ids=lambda m: m.value)
def server_config(request) -> ServerConfig:
    """Local server config on an ephemeral port, once per transport mode."""
    return ServerConfig(port=0, mode=request.param, rate_limit=100)
