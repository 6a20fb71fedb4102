"""Exceptions raised to the caller of the harness.

Round-trip failures are never raised; they are published on the
event bus. These cover what has to stop a scenario outright.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for harness errors."""


class ConfigError(HarnessError, ValueError):
    """Invalid server or scenario configuration."""


class ServerStartupError(HarnessError):
    """The listener could not be started (e.g. the port is taken)."""


class ScenarioFailed(HarnessError):
    """A scenario finished with failures or missing round trips."""

    def __init__(self, message: str, failures: list | None = None) -> None:
        super().__init__(message)
        self.failures = failures or []
