"""Guarded operations over a websockets connection.

Role logic only talks to a Connection through these helpers. Each one
reports protocol-level failure (peer gone, connection closed, socket
error) with a flag instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from .config import DEFAULT_MAX_SIZE, NORMAL_CLOSURE
from .events import Side

logger = logging.getLogger(__name__)

Message = str | bytes


@dataclass
class Connection:
    """An open websocket tagged with the side it lives on."""

    ws: Any
    side: Side

    @property
    def is_server(self) -> bool:
        return self.side == Side.SERVER

    @property
    def subprotocol(self) -> str | None:
        return self.ws.subprotocol

    def __str__(self) -> str:
        return f"{self.side.value} connection {self.ws.id}"


def as_bytes(data: Message) -> bytes:
    """Text frames come back as str; compare everything as UTF-8 bytes."""
    return data.encode() if isinstance(data, str) else bytes(data)


async def read_guarded(conn: Connection) -> tuple[Message, bool]:
    """Read one message. Returns ``(data, ok)``."""
    try:
        data = await conn.ws.recv()
    except ConnectionClosed as e:
        logger.debug("%s: read on closed connection (%s)", conn, e)
        return b"", False
    except OSError as e:
        logger.debug("%s: read failed: %s", conn, e)
        return b"", False
    return data, True


async def write_guarded(conn: Connection, data: Message) -> bool:
    """Send one message. Returns False if it could not be sent."""
    try:
        await conn.ws.send(data)
    except ConnectionClosed as e:
        logger.debug("%s: write on closed connection (%s)", conn, e)
        return False
    except OSError as e:
        logger.debug("%s: write failed: %s", conn, e)
        return False
    return True


async def send_ping(conn: Connection) -> bool:
    """Send a ping frame without waiting for the pong."""
    try:
        await conn.ws.ping()
    except ConnectionClosed as e:
        logger.debug("%s: ping on closed connection (%s)", conn, e)
        return False
    except OSError as e:
        logger.debug("%s: ping failed: %s", conn, e)
        return False
    logger.debug("%s: ping sent", conn)
    return True


async def close(conn: Connection, code: int = NORMAL_CLOSURE) -> None:
    """Close the connection. Closing an already closed connection is a no-op."""
    await conn.ws.close(code=code)


async def open_connection(
    uri: str,
    subprotocol: str | None = None,
    max_size: int | None = DEFAULT_MAX_SIZE,
) -> Connection:
    """Open a client-side connection to ``uri``.

    When ``subprotocol`` is given it is the only one offered.
    """
    subprotocols = [subprotocol] if subprotocol else None
    ws = await connect(uri, subprotocols=subprotocols, max_size=max_size)
    logger.debug("Connected to %s (subprotocol=%s)", uri, ws.subprotocol)
    return Connection(ws, Side.CLIENT)
