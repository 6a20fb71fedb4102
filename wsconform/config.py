"""Configuration for wsconform.

Everything is supplied by the caller: dataclasses built in code, or a
TOML file passed explicitly on the command line. Supports:
- Server settings (address, port, transport mode, rate limit)
- Scenario settings (message lengths, early close, role placement)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib  # type: ignore[no-redef]
    except ImportError:
        tomllib = None  # type: ignore[assignment]

from .exceptions import ConfigError

# Offered by a client that wants the server to start the conversation.
# Subprotocols must be RFC 7230 tokens, so no spaces.
SERVER_STARTS_SUBPROTOCOL = "server-starts-conversation"

# Zero, plus both sides of the 7-bit (125/126), 16-bit (65535/65536)
# and 64-bit payload length encodings.
DEFAULT_MSG_LENGTHS: tuple[int, ...] = (0, 1, 125, 126, 127, 65535, 65536, 65537)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

# Large enough for the biggest default length with room to spare
DEFAULT_MAX_SIZE = 2**20

NORMAL_CLOSURE = 1000


class TransportMode(str, Enum):
    """How the listener is run and shut down."""

    LISTEN = "listen"  # raw socket + rate limiter, stop closes the socket
    SERVE = "serve"  # queue-backed wrapper, stop sends a control message


def _validate_lengths(lengths: tuple[int, ...], what: str) -> None:
    if not lengths:
        raise ConfigError(f"{what} must contain at least one message length")
    for length in lengths:
        if not isinstance(length, int) or isinstance(length, bool) or length < 0:
            raise ConfigError(f"{what} contains an invalid length: {length!r}")


@dataclass
class ServerConfig:
    """Settings for the harness server."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    mode: TransportMode = TransportMode.SERVE

    # Lengths used when a client asks the server to start the conversation
    initiator_lengths: tuple[int, ...] = DEFAULT_MSG_LENGTHS

    max_size: int | None = DEFAULT_MAX_SIZE

    # Accept-rate limit per client address (LISTEN mode only)
    rate_limit: int = 10
    rate_period: float = 1.0

    def validate(self) -> None:
        try:
            self.mode = TransportMode(self.mode)
        except ValueError:
            raise ConfigError(f"Unknown transport mode: {self.mode!r}") from None
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"Port out of range: {self.port}")
        if self.rate_limit < 1 or self.rate_period <= 0:
            raise ConfigError("Rate limit must allow at least one connection per period")
        self.initiator_lengths = tuple(self.initiator_lengths)
        _validate_lengths(self.initiator_lengths, "initiator_lengths")


@dataclass
class ScenarioConfig:
    """One conversation to exercise against a server."""

    msg_lengths: tuple[int, ...] = DEFAULT_MSG_LENGTHS
    close_before_exit: bool = False

    # True: the client offers SERVER_STARTS_SUBPROTOCOL and echoes.
    # False: the client initiates and the server echoes.
    server_initiates: bool = False

    # External endpoint; None means start a local server
    uri: str | None = None

    def validate(self) -> None:
        self.msg_lengths = tuple(self.msg_lengths)
        _validate_lengths(self.msg_lengths, "msg_lengths")
        if self.uri is not None and not self.uri.startswith(("ws://", "wss://")):
            raise ConfigError(f"Not a WebSocket URI: {self.uri}")


@dataclass
class Config:
    """Server and scenario settings loaded together."""

    server: ServerConfig = field(default_factory=ServerConfig)
    scenario: ScenarioConfig = field(default_factory=ScenarioConfig)


def parse_lengths(text: str) -> tuple[int, ...]:
    """Parse a comma separated list such as ``"0,125,126"``."""
    try:
        return tuple(int(part) for part in text.split(",") if part.strip())
    except ValueError:
        raise ConfigError(f"Invalid message lengths: {text!r}") from None


def load_config(config_file: Path) -> Config:
    """Load configuration from a TOML file given by the caller."""
    if tomllib is None:
        raise ImportError(
            "tomli is required for Python < 3.11. "
            "Install it with: pip install tomli"
        )

    try:
        with open(config_file, "rb") as f:
            raw = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Could not read {config_file}: {e}") from e

    return _parse_config(raw)


def _parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw TOML dict into Config."""
    config = Config()

    server_data = raw.get("server", {})
    server = config.server
    server.host = server_data.get("host", server.host)
    server.port = server_data.get("port", server.port)
    server.mode = server_data.get("mode", server.mode)
    server.initiator_lengths = tuple(
        server_data.get("initiator_lengths", server.initiator_lengths)
    )
    server.max_size = server_data.get("max_size", server.max_size)
    server.rate_limit = server_data.get("rate_limit", server.rate_limit)
    server.rate_period = server_data.get("rate_period", server.rate_period)

    scenario_data = raw.get("scenario", {})
    scenario = config.scenario
    scenario.msg_lengths = tuple(scenario_data.get("msg_lengths", scenario.msg_lengths))
    scenario.close_before_exit = scenario_data.get(
        "close_before_exit", scenario.close_before_exit
    )
    scenario.server_initiates = scenario_data.get(
        "server_initiates", scenario.server_initiates
    )
    scenario.uri = scenario_data.get("uri", scenario.uri)

    server.validate()
    scenario.validate()
    return config
