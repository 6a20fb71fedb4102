"""Protocol roles run on an already open connection.

The same functions run on either end of a conversation: the gatekeeper
calls them for server-side connections, the orchestrator for client-side
ones. Outcomes go to the event bus. A failure observed on the server
side is informational, since nothing above the server task can assert
on it directly.
"""

from __future__ import annotations

import asyncio
import logging
import random
import string
from dataclasses import dataclass, field

from .config import DEFAULT_MSG_LENGTHS, NORMAL_CLOSURE
from .events import EventBus, EventType
from .transport import Connection, as_bytes, close, read_guarded, send_ping, write_guarded

logger = logging.getLogger(__name__)

PRINTABLE = string.ascii_letters + string.digits


def random_printable(length: int) -> str:
    """Random alphanumeric string of exactly ``length`` characters."""
    return "".join(random.choices(PRINTABLE, k=length))


@dataclass
class InitiatorResult:
    """What the initiator observed on its own end."""

    passed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.aborted


async def echo_responder(conn: Connection, event_bus: EventBus | None = None) -> bool:
    """Read one message and write it straight back.

    One round only. The connection is left open for its owner to close.
    """
    bus = event_bus or EventBus()
    logger.debug("echo_responder on %s", conn)

    data, ok = await read_guarded(conn)
    if not ok:
        logger.error("echo_responder: couldn't read from %s", conn)
        bus.emit(EventType.READ_FAILED, side=conn.side, role="echo")
        return False

    length = len(as_bytes(data))
    if not await write_guarded(conn, data):
        logger.error("echo_responder: couldn't write %d bytes to %s", length, conn)
        bus.emit(EventType.WRITE_FAILED, side=conn.side, length=length, role="echo")
        return False

    bus.emit(EventType.ROUND_PASSED, side=conn.side, length=length, role="echo")
    return True


async def conversation_initiator(
    conn: Connection,
    msg_lengths: tuple[int, ...] | list[int] = DEFAULT_MSG_LENGTHS,
    *,
    close_before_exit: bool = False,
    event_bus: EventBus | None = None,
) -> InitiatorResult:
    """Ping, then send one message per length and check each echo.

    Strictly one message in flight: the echo of a message is read before
    the next one is sent, so every echo can be attributed to its length.
    """
    bus = event_bus or EventBus()
    result = InitiatorResult()
    logger.debug("conversation_initiator on %s, lengths %s", conn, list(msg_lengths))

    # The pong is not checked; websockets logs it on the other side.
    if await send_ping(conn):
        bus.emit(EventType.PING_SENT, side=conn.side)
    else:
        bus.emit(EventType.PING_FAILED, side=conn.side)

    # Both ends may share this event loop; let the peer process the ping.
    await asyncio.sleep(0)

    for length in msg_lengths:
        sent = random_printable(length)

        if not await write_guarded(conn, sent):
            logger.error("conversation_initiator: couldn't write length %d to %s", length, conn)
            bus.emit(EventType.WRITE_FAILED, side=conn.side, length=length, role="initiator")
            result.failed.append(length)
            result.aborted = True
            break

        await asyncio.sleep(0)
        readback, ok = await read_guarded(conn)
        if not ok:
            _report_failure(
                bus, conn, EventType.READ_FAILED, length,
                "couldn't read echo of length %d from %s",
            )
            result.failed.append(length)
        elif as_bytes(readback) != sent.encode():
            _report_failure(
                bus, conn, EventType.ECHO_MISMATCH, length,
                "echo of length %d from %s differs from what was sent",
                received=len(as_bytes(readback)),
            )
            result.failed.append(length)
        else:
            bus.emit(EventType.ROUND_PASSED, side=conn.side, length=length, role="initiator")
            result.passed.append(length)

        if close_before_exit:
            await close(conn, NORMAL_CLOSURE)
            bus.emit(EventType.CONNECTION_CLOSED, side=conn.side, length=length)

    logger.debug(
        "conversation_initiator exiting: %d passed, %d failed",
        len(result.passed), len(result.failed),
    )
    return result


def _report_failure(
    bus: EventBus,
    conn: Connection,
    event_type: EventType,
    length: int,
    message: str,
    **data,
) -> None:
    # Server-side failures can't fail the caller's test; they are logged
    # and published as informational.
    if conn.is_server:
        logger.warning("conversation_initiator: " + message, length, conn)
    else:
        logger.error("conversation_initiator: " + message, length, conn)
    bus.emit(
        event_type,
        side=conn.side,
        length=length,
        role="initiator",
        informational=conn.is_server,
        **data,
    )
