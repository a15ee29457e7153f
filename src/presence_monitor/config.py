"""Configuration models and helpers for the presence monitor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(slots=True)
class MonitorSettings:
    """Runtime configuration for the presence monitor."""

    poll_interval: timedelta = timedelta(seconds=60)
    heartbeat_threshold: timedelta = timedelta(minutes=30)
    request_timeout: timedelta = timedelta(seconds=10)
    use_simulator: bool = False

    @classmethod
    def from_intervals(
        cls,
        poll_seconds: float,
        heartbeat_minutes: float = 30.0,
        timeout_seconds: float | None = None,
        use_simulator: bool = False,
    ) -> "MonitorSettings":
        # A request must never outlive the poll period it belongs to.
        timeout = (
            timeout_seconds if timeout_seconds is not None else min(10.0, poll_seconds)
        )
        return cls(
            poll_interval=timedelta(seconds=poll_seconds),
            heartbeat_threshold=timedelta(minutes=heartbeat_minutes),
            request_timeout=timedelta(seconds=timeout),
            use_simulator=use_simulator,
        )
