"""Server lifecycle: start the harness listener in a background task.

Two transport modes serve the same protocol behaviour and differ only in
how startup errors surface and how shutdown is triggered:

- LISTEN (ListenHandle): binds its own socket, rate-limits accepts per
  client address, and stops by closing the listener directly. A bind
  error is the background task's exception.
- SERVE (QueueHandle): a queue-backed wrapper. Any message on ``inbox``
  shuts it down; startup errors are posted to ``outbox``.

Usage:
    task, handle = await start_server(ServerConfig(port=0), event_bus)
    ...
    handle.stop()
    await task
"""

from __future__ import annotations

import asyncio
import logging
import socket
from abc import ABC, abstractmethod
from http import HTTPStatus

from websockets.asyncio.server import serve

from ..config import ServerConfig, TransportMode
from ..events import EventBus, EventType, Side
from ..exceptions import ServerStartupError
from .gatekeeper import Gatekeeper, make_http_responder, select_subprotocol
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)

CLOSE_MESSAGE = "Any message means close!"


class ServerHandle(ABC):
    """Reference to a running listener, used to stop it or inspect errors."""

    mode: TransportMode

    def __init__(self, config: ServerConfig, event_bus: EventBus) -> None:
        self.config = config
        self.event_bus = event_bus
        self.gatekeeper = Gatekeeper(event_bus, config.initiator_lengths)
        self.server = None
        self.port: int | None = None
        self.task: asyncio.Task | None = None
        # Set once the listener is bound, or binding has failed
        self.ready = asyncio.Event()

    @property
    def uri(self) -> str:
        """Where a local client should connect."""
        host = self.config.host
        if host in ("", "0.0.0.0"):
            host = "127.0.0.1"
        elif host == "::":
            host = "::1"
        if ":" in host:
            host = f"[{host}]"
        return f"ws://{host}:{self.port}/"

    def _serve_kwargs(self) -> dict:
        return {
            "process_request": make_http_responder(self.event_bus),
            "select_subprotocol": select_subprotocol,
            "max_size": self.config.max_size,
        }

    def _started(self, server) -> None:
        self.server = server
        self.port = next(iter(server.sockets)).getsockname()[1]
        logger.info(
            "Harness server (%s mode) listening on %s:%d",
            self.mode.value, self.config.host, self.port,
        )
        self.event_bus.emit(
            EventType.SERVER_STARTED, side=Side.SERVER,
            mode=self.mode.value, port=self.port,
        )

    def _stopped(self) -> None:
        logger.info("Harness server (%s mode) stopped", self.mode.value)
        self.event_bus.emit(EventType.SERVER_STOPPED, side=Side.SERVER, mode=self.mode.value)

    @abstractmethod
    async def run(self) -> None:
        """Body of the background task."""

    @abstractmethod
    def stop(self) -> None:
        """Stop accepting requests. Safe to call more than once."""

    @abstractmethod
    def drain_startup_errors(self) -> None:
        """Raise ServerStartupError if the listener failed to start."""


class ListenHandle(ServerHandle):
    """LISTEN mode: own socket, accept-rate limiter, direct close."""

    mode = TransportMode.LISTEN

    def __init__(self, config: ServerConfig, event_bus: EventBus) -> None:
        super().__init__(config, event_bus)
        self.sock: socket.socket | None = None
        self.limiter = RateLimiter(config.rate_limit, config.rate_period)
        self._closing = False

    def _serve_kwargs(self) -> dict:
        kwargs = super()._serve_kwargs()
        http_responder = kwargs["process_request"]

        def process_request(connection, request):
            address = connection.remote_address[0] if connection.remote_address else ""
            if not self.limiter.allow(address):
                logger.warning("Rate limit exceeded for %s", address)
                self.event_bus.emit(EventType.RATE_LIMITED, side=Side.SERVER, address=address)
                return connection.respond(HTTPStatus.TOO_MANY_REQUESTS, "Too many requests\n")
            return http_responder(connection, request)

        kwargs["process_request"] = process_request
        return kwargs

    async def run(self) -> None:
        try:
            # create_server sets SO_REUSEADDR on POSIX
            self.sock = socket.create_server((self.config.host, self.config.port))
            try:
                server = await serve(self.gatekeeper, sock=self.sock, **self._serve_kwargs())
            except OSError:
                self.sock.close()
                raise
        finally:
            self.ready.set()

        self._started(server)
        if self._closing:
            server.close()
        await server.wait_closed()
        self._stopped()

    def stop(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self.server is not None:
            # Closes the listening socket and any open connections
            self.server.close()
        elif self.sock is not None:
            self.sock.close()

    def drain_startup_errors(self) -> None:
        if self.task is None or not self.task.done() or self.task.cancelled():
            return
        error = self.task.exception()
        if error is not None:
            raise ServerStartupError(
                f"Could not listen on {self.config.host}:{self.config.port}: {error}"
            ) from error


class QueueHandle(ServerHandle):
    """SERVE mode: control messages in ``inbox``, errors out via ``outbox``."""

    mode = TransportMode.SERVE

    def __init__(self, config: ServerConfig, event_bus: EventBus) -> None:
        super().__init__(config, event_bus)
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.outbox: asyncio.Queue = asyncio.Queue()
        self._close_sent = False

    async def run(self) -> None:
        try:
            server = await serve(
                self.gatekeeper, self.config.host, self.config.port, **self._serve_kwargs()
            )
        except OSError as e:
            logger.error("Harness server failed to start: %s", e)
            self.outbox.put_nowait(e)
            return
        finally:
            self.ready.set()

        self._started(server)
        try:
            message = await self.inbox.get()
            logger.debug("Close requested: %r", message)
        finally:
            server.close()
            await server.wait_closed()
        self._stopped()

    def stop(self) -> None:
        if self._close_sent:
            return
        self._close_sent = True
        self.inbox.put_nowait(CLOSE_MESSAGE)

    def drain_startup_errors(self) -> None:
        if self.outbox.empty():
            return
        error = self.outbox.get_nowait()
        raise ServerStartupError(
            f"Could not listen on {self.config.host}:{self.config.port}: {error}"
        ) from error


async def start_server(
    config: ServerConfig,
    event_bus: EventBus | None = None,
) -> tuple[asyncio.Task, ServerHandle]:
    """Start the harness server in a background task.

    Waits until the listener is bound before returning, so a client can
    connect straight away. Raises ServerStartupError if binding fails.
    """
    config.validate()
    bus = event_bus or EventBus()
    if config.mode == TransportMode.LISTEN:
        handle: ServerHandle = ListenHandle(config, bus)
    else:
        handle = QueueHandle(config, bus)

    task = asyncio.create_task(handle.run(), name=f"wsconform-server-{config.mode.value}")
    handle.task = task
    await handle.ready.wait()

    try:
        handle.drain_startup_errors()
    except ServerStartupError as e:
        bus.emit(EventType.SERVER_STARTUP_FAILED, side=Side.SERVER, error=str(e))
        raise
    return task, handle
