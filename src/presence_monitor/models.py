"""Domain models for presence samples, events and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional


def calendar_day(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def floor_seconds(start: datetime, end: datetime) -> int:
    return max(0, (end - start) // timedelta(seconds=1))


@dataclass(frozen=True, slots=True)
class Sample:
    """One observation of the monitored identity."""

    online: bool
    activity: Optional[str] = None


@dataclass(frozen=True, slots=True)
class PresenceEvent:
    """A persisted sample. Heartbeats carry no state change."""

    identity: str
    online: bool
    activity: Optional[str]
    timestamp: datetime
    heartbeat: bool = False
    id: Optional[int] = None

    @property
    def date(self) -> str:
        return calendar_day(self.timestamp)


@dataclass(frozen=True, slots=True)
class Session:
    """A closed online interval."""

    identity: str
    start_time: datetime
    end_time: datetime
    activity: Optional[str]
    id: Optional[int] = None

    @property
    def duration_seconds(self) -> int:
        return floor_seconds(self.start_time, self.end_time)

    @property
    def date(self) -> str:
        return calendar_day(self.start_time)


@dataclass(slots=True)
class LastKnownState:
    online: bool
    activity: Optional[str]
    timestamp: datetime
    # Timestamp of the last persisted event or heartbeat.
    recorded_at: datetime


@dataclass(slots=True)
class EngineState:
    """Mutable runtime state owned by a single reconciliation engine."""

    last_known: Optional[LastKnownState] = None
    current_session_start: Optional[datetime] = None

    def copy(self) -> "EngineState":
        last = self.last_known
        return EngineState(
            last_known=(
                LastKnownState(last.online, last.activity, last.timestamp, last.recorded_at)
                if last
                else None
            ),
            current_session_start=self.current_session_start,
        )


@dataclass(frozen=True, slots=True)
class PresenceUpdate:
    """Snapshot handed to listeners after every successful ingest or repair."""

    identity: str
    online: bool
    activity: Optional[str]
    current_session_start: Optional[datetime]
    sessions: list[Session] = field(default_factory=list)
