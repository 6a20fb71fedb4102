"""Request routing for the harness server.

Every accepted request goes through ``http_responder`` (the websockets
``process_request`` hook) first. Plain HTTP requests are answered there
with 200 OK; upgrade requests are let through and, once the handshake
completes, handed to the Gatekeeper, which picks a role for the
connection.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from http import HTTPStatus

from ..config import DEFAULT_MSG_LENGTHS, SERVER_STARTS_SUBPROTOCOL
from ..events import EventBus, EventType, Side
from ..roles import conversation_initiator, echo_responder
from ..transport import Connection

logger = logging.getLogger(__name__)

PLAIN_BODY = "OK\n"


def is_upgrade_request(request) -> bool:
    """True if the request asks to switch to the WebSocket protocol."""
    for header_name, header_value in request.headers.raw_items():
        if header_name.lower() == "upgrade" and header_value.lower() == "websocket":
            return True
    return False


def make_http_responder(event_bus: EventBus | None = None):
    """Build the ``process_request`` hook for plain HTTP requests."""

    def http_responder(connection, request):
        if is_upgrade_request(request):
            return None  # Let websockets handle the upgrade
        logger.debug("Plain HTTP request for %s", request.path)
        if event_bus is not None:
            event_bus.emit(EventType.HTTP_RESPONSE, side=Side.SERVER,
                           path=request.path, status=HTTPStatus.OK.value)
        return connection.respond(HTTPStatus.OK, PLAIN_BODY)

    return http_responder


def select_subprotocol(connection, subprotocols: Sequence[str]) -> str | None:
    """Accept the sentinel subprotocol; carry on without one otherwise."""
    if SERVER_STARTS_SUBPROTOCOL in subprotocols:
        return SERVER_STARTS_SUBPROTOCOL
    return None


@dataclass(frozen=True)
class UpgradeRequest:
    """The parts of an upgrade request the gatekeeper looks at."""

    origin: str
    target: str
    subprotocol: str

    @classmethod
    def from_connection(cls, ws) -> UpgradeRequest:
        headers = ws.request.headers
        return cls(
            origin=headers.get("Origin", ""),
            target=ws.request.path,
            subprotocol=ws.subprotocol or "",
        )


class Gatekeeper:
    """Connection handler: checks the handshake and dispatches a role.

    Exactly one role runs per connection. Exceptions from the role are
    logged and published as ROLE_ERROR; they never reach the listener.
    """

    def __init__(
        self,
        event_bus: EventBus,
        initiator_lengths: tuple[int, ...] = DEFAULT_MSG_LENGTHS,
    ) -> None:
        self.event_bus = event_bus
        self.initiator_lengths = initiator_lengths

    async def __call__(self, ws) -> None:
        conn = Connection(ws, Side.SERVER)
        role = "unselected"
        try:
            request = UpgradeRequest.from_connection(ws)
            self.check(request)

            role = "initiator" if request.subprotocol == SERVER_STARTS_SUBPROTOCOL else "echo"
            self.event_bus.emit(EventType.ROLE_SELECTED, side=Side.SERVER, role=role)
            logger.debug("Gatekeeper: %s role for %s", role, conn)

            if role == "initiator":
                await conversation_initiator(
                    conn,
                    self.initiator_lengths,
                    close_before_exit=False,
                    event_bus=self.event_bus,
                )
            else:
                await echo_responder(conn, self.event_bus)
        except Exception as e:
            logger.exception("Gatekeeper: %s role failed on %s", role, conn)
            self.event_bus.emit(
                EventType.ROLE_ERROR, side=Side.SERVER, role=role, error=repr(e)
            )
        logger.debug("Gatekeeper exiting for %s", conn)

    def check(self, request: UpgradeRequest) -> None:
        """Flag headers this harness does not expect. Never fatal."""
        if request.origin:
            logger.error("Gatekeeper: got an Origin header as from a browser: %s", request.origin)
            self.event_bus.emit(EventType.ORIGIN_ANOMALY, side=Side.SERVER, origin=request.origin)
        if request.target != "/":
            logger.error("Gatekeeper: unexpected request target %s", request.target)
            self.event_bus.emit(EventType.TARGET_ANOMALY, side=Side.SERVER, target=request.target)
