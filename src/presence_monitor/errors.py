"""Exception types raised by the presence monitor."""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for presence monitor failures."""


class SourceFailure(MonitorError):
    """The presence source could not produce a sample.

    Retryable failures make the sampler fall back to the simulator; permanent
    ones abandon the current poll cycle.
    """

    def __init__(self, reason: str, *, retryable: bool = True) -> None:
        super().__init__(reason)
        self.reason = reason
        self.retryable = retryable


class StoreFailure(MonitorError):
    """A read or write against the SQLite store failed."""


class InvalidIdentity(MonitorError, ValueError):
    """The monitored identity is empty or malformed."""
