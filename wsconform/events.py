"""Event bus for harness results.

Callback-based: roles, the gatekeeper and the server lifecycle publish
HarnessEvent objects; subscribers (CLI display, the orchestrator's
report) receive them.

Server-side roles run inside detached tasks, so their assertions can't
propagate up a call stack. They publish here instead and the orchestrator
reads the history after shutdown.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class Side(str, Enum):
    """Which end of a conversation a connection belongs to."""

    SERVER = "server"
    CLIENT = "client"


class EventType(str, Enum):
    """Types of events published by the harness."""

    # Round trips
    ROUND_PASSED = "round_passed"
    READ_FAILED = "read_failed"
    WRITE_FAILED = "write_failed"
    ECHO_MISMATCH = "echo_mismatch"
    PING_SENT = "ping_sent"
    PING_FAILED = "ping_failed"
    CONNECTION_CLOSED = "connection_closed"

    # Gatekeeper
    ORIGIN_ANOMALY = "origin_anomaly"
    TARGET_ANOMALY = "target_anomaly"
    ROLE_SELECTED = "role_selected"
    ROLE_ERROR = "role_error"

    # Server lifecycle
    SERVER_STARTED = "server_started"
    SERVER_STOPPED = "server_stopped"
    SERVER_STARTUP_FAILED = "server_startup_failed"
    RATE_LIMITED = "rate_limited"
    HTTP_RESPONSE = "http_response"

    # Scenario
    SCENARIO_STARTED = "scenario_started"
    SCENARIO_COMPLETED = "scenario_completed"
    LENGTH_SKIPPED = "length_skipped"
    CONNECT_FAILED = "connect_failed"
    SUBPROTOCOL_REJECTED = "subprotocol_rejected"


FAILURE_TYPES = frozenset({
    EventType.READ_FAILED,
    EventType.WRITE_FAILED,
    EventType.ECHO_MISMATCH,
    EventType.ROLE_ERROR,
    EventType.CONNECT_FAILED,
    EventType.SUBPROTOCOL_REJECTED,
})


@dataclass
class HarnessEvent:
    """An event from the harness."""

    event_type: EventType
    side: Side | None = None
    length: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_failure(self) -> bool:
        return self.event_type in FAILURE_TYPES

    def __str__(self) -> str:
        parts = [f"[{self.event_type.value}]"]
        if self.side is not None:
            parts.append(f"side={self.side.value}")
        if self.length is not None:
            parts.append(f"length={self.length}")
        if self.data:
            for key, value in self.data.items():
                parts.append(f"{key}={value}")
        return " ".join(parts)


EventCallback = Callable[[HarnessEvent], None]


class EventBus:
    """Thread-safe callback-based event bus.

    Subscribers register callbacks that are invoked synchronously
    when events are published.  A lock protects the subscriber list
    and event history so the CLI thread and the event loop can share it.
    """

    def __init__(self, max_history: int = 10_000) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[EventCallback] = []
        self._history: list[HarnessEvent] = []
        self._max_history = max_history

    def subscribe(self, callback: EventCallback) -> None:
        """Subscribe to all events."""
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        """Unsubscribe from events."""
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s is not callback]

    def publish(self, event: HarnessEvent) -> None:
        """Publish an event to all subscribers."""
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]
            # Callbacks run outside the lock so a callback may publish.
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                pass  # A broken display must not fail a round trip

    def emit(
        self,
        event_type: EventType,
        side: Side | None = None,
        length: int | None = None,
        **data: Any,
    ) -> None:
        """Convenience method to create and publish an event."""
        self.publish(HarnessEvent(
            event_type=event_type,
            side=side,
            length=length,
            data=data,
        ))

    @property
    def history(self) -> list[HarnessEvent]:
        """Get event history (returns a copy)."""
        with self._lock:
            return list(self._history)

    def events(self, event_type: EventType, side: Side | None = None) -> list[HarnessEvent]:
        """History filtered by type and, optionally, side."""
        return [
            e for e in self.history
            if e.event_type == event_type and (side is None or e.side == side)
        ]

    def failures(self, side: Side | None = None) -> list[HarnessEvent]:
        """All failure events, optionally restricted to one side."""
        return [
            e for e in self.history
            if e.is_failure and (side is None or e.side == side)
        ]

    def clear_history(self) -> None:
        """Clear event history."""
        with self._lock:
            self._history.clear()
