"""Orchestrator: runs one conformance scenario end to end.

The orchestrator:
1. Validates the scenario (bad configuration fails before any I/O)
2. Starts a local harness server, unless an external URI is given
3. Opens client connections and runs the client-side role
4. Stops the server and waits for its task
5. Builds a report from the event bus, server-side events included
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from urllib.parse import urlsplit

from websockets.exceptions import InvalidHandshake

from .config import SERVER_STARTS_SUBPROTOCOL, ScenarioConfig, ServerConfig
from .events import EventBus, EventType, HarnessEvent, Side
from .exceptions import ScenarioFailed
from .roles import conversation_initiator, echo_responder
from .server.lifecycle import start_server
from .transport import Connection, close, open_connection

logger = logging.getLogger(__name__)

# Endpoints that knowingly deviate from this harness's reading of
# RFC 6455: host -> message lengths to skip.
KNOWN_DEVIATIONS: dict[str, frozenset[int]] = {
    # Does not echo zero-length messages
    "echo.websocket.org": frozenset({0}),
}


def lengths_to_skip(uri: str) -> frozenset[int]:
    """Lengths a known-deviant endpoint at ``uri`` should not be sent."""
    host = urlsplit(uri).hostname or ""
    skipped: frozenset[int] = frozenset()
    for known_host, lengths in KNOWN_DEVIATIONS.items():
        if host == known_host or host.endswith("." + known_host):
            skipped |= lengths
    return skipped


@dataclass
class ScenarioReport:
    """Outcome of one scenario."""

    uri: str
    expected_rounds: int
    client_passed: list[int] = field(default_factory=list)
    server_passed: list[int] = field(default_factory=list)
    failures: list[HarnessEvent] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def verified_rounds(self) -> int:
        """Round trips checked by whichever side initiated."""
        return max(len(self.client_passed), len(self.server_passed))

    @property
    def ok(self) -> bool:
        return not self.failures and self.verified_rounds == self.expected_rounds

    def raise_for_failures(self) -> None:
        if self.ok:
            return
        raise ScenarioFailed(
            f"{len(self.failures)} failure(s), "
            f"{self.verified_rounds}/{self.expected_rounds} round trips verified at {self.uri}",
            failures=self.failures,
        )


async def run_scenario(
    scenario: ScenarioConfig,
    server_config: ServerConfig | None = None,
    event_bus: EventBus | None = None,
) -> ScenarioReport:
    """Run one scenario and return its report.

    With ``scenario.uri`` unset a local server is started from
    ``server_config``; when the server initiates, it sends the scenario's
    lengths.
    """
    scenario.validate()
    bus = event_bus or EventBus()
    start_time = time.time()

    task = handle = None
    if scenario.uri is None:
        server_config = server_config or ServerConfig(port=0)
        # Client-initiated runs open one connection per length; the
        # accept-rate limiter must not turn those away.
        overrides = {"rate_limit": max(server_config.rate_limit, len(scenario.msg_lengths))}
        if scenario.server_initiates:
            overrides["initiator_lengths"] = tuple(scenario.msg_lengths)
        server_config = replace(server_config, **overrides)
        task, handle = await start_server(server_config, bus)
        uri = handle.uri
    else:
        uri = scenario.uri

    skip = lengths_to_skip(uri)
    lengths = []
    for length in scenario.msg_lengths:
        if length in skip:
            logger.info("Skipping length %d for %s (known deviation)", length, uri)
            bus.emit(EventType.LENGTH_SKIPPED, side=Side.CLIENT, length=length, uri=uri)
        else:
            lengths.append(length)

    bus.emit(
        EventType.SCENARIO_STARTED, side=Side.CLIENT, uri=uri,
        lengths=lengths, server_initiates=scenario.server_initiates,
    )
    logger.info("Testing client -> server at %s, lengths %s", uri, lengths)

    try:
        if scenario.server_initiates:
            await _run_server_initiated(uri, len(lengths), bus)
        else:
            await _run_client_initiated(uri, lengths, scenario.close_before_exit, bus)
    finally:
        if handle is not None:
            handle.stop()
            await task

    # Only the initiator compares content, so echo rounds aren't counted.
    report = ScenarioReport(
        uri=uri,
        expected_rounds=len(lengths),
        client_passed=[
            e.length for e in bus.events(EventType.ROUND_PASSED, Side.CLIENT)
            if e.data.get("role") == "initiator"
        ],
        server_passed=[
            e.length for e in bus.events(EventType.ROUND_PASSED, Side.SERVER)
            if e.data.get("role") == "initiator"
        ],
        failures=bus.failures(),
        skipped=sorted(set(scenario.msg_lengths) & skip),
        elapsed_seconds=time.time() - start_time,
    )
    bus.emit(
        EventType.SCENARIO_COMPLETED, side=Side.CLIENT,
        ok=report.ok, failures=len(report.failures),
    )
    return report


async def _connect(
    uri: str,
    bus: EventBus,
    length: int | None = None,
    subprotocol: str | None = None,
) -> Connection | None:
    """Open a client connection; a refused handshake is recorded, not raised."""
    try:
        return await open_connection(uri, subprotocol=subprotocol)
    except (InvalidHandshake, OSError, asyncio.TimeoutError) as e:
        logger.error("Could not connect to %s: %s", uri, e)
        bus.emit(EventType.CONNECT_FAILED, side=Side.CLIENT, length=length, uri=uri, error=str(e))
        return None


async def _run_client_initiated(
    uri: str,
    lengths: list[int],
    close_before_exit: bool,
    bus: EventBus,
) -> None:
    # The echo responder answers one round per connection, so each
    # length gets a connection of its own.
    for length in lengths:
        conn = await _connect(uri, bus, length)
        if conn is None:
            continue
        try:
            await conversation_initiator(
                conn, [length], close_before_exit=close_before_exit, event_bus=bus
            )
        finally:
            await close(conn)


async def _run_server_initiated(uri: str, rounds: int, bus: EventBus) -> None:
    conn = await _connect(uri, bus, subprotocol=SERVER_STARTS_SUBPROTOCOL)
    if conn is None:
        return
    try:
        # Without the subprotocol the peer waits for us to speak first
        if conn.subprotocol != SERVER_STARTS_SUBPROTOCOL:
            logger.error("%s did not accept subprotocol %s", uri, SERVER_STARTS_SUBPROTOCOL)
            bus.emit(
                EventType.SUBPROTOCOL_REJECTED, side=Side.CLIENT,
                uri=uri, subprotocol=conn.subprotocol,
            )
            return
        for _ in range(rounds):
            if not await echo_responder(conn, bus):
                break
    finally:
        await close(conn)
