"""Session reconciliation for one monitored identity.

The engine turns a stream of presence samples into two append-only stores:
``events`` (every state change, plus heartbeats that bound how long an
unchanged state goes unrecorded) and ``sessions`` (closed online intervals).
Its runtime state is an :class:`EngineState` that can always be rebuilt from
the most recent event, which is what gap repair does when the observer comes
back after a period in which nothing was polled.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .db import (
    EVENTS_STORE,
    SESSIONS_STORE,
    append,
    clear,
    fetch_last_event,
    read_all,
    transaction,
)
from .errors import StoreFailure
from .models import (
    EngineState,
    LastKnownState,
    PresenceEvent,
    PresenceUpdate,
    Sample,
    Session,
)

logger = logging.getLogger(__name__)

Listener = Callable[[PresenceUpdate], None]


class ReconciliationEngine:
    """Pairs online/offline transitions into sessions and repairs gaps.

    ``ingest``, ``repair`` and ``rebuild_state`` are serialized by a single
    re-entrant lock, so repair's read-then-write never interleaves with an
    ingest. State is only replaced after the store writes have committed.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        identity: str,
        *,
        heartbeat_threshold: timedelta = timedelta(minutes=30),
    ) -> None:
        self._conn = conn
        self.identity = identity
        self.heartbeat_threshold = heartbeat_threshold
        self._state = EngineState()
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state.copy()

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def clear_history(self) -> None:
        """Empty both stores (for every identity) and reset the state."""
        with self._lock:
            with transaction(self._conn):
                clear(self._conn, EVENTS_STORE)
                clear(self._conn, SESSIONS_STORE)
            self._state = EngineState()

    def ingest(self, sample: Sample, ts: datetime) -> Optional[PresenceEvent]:
        """Apply one sample; return the event written, if any."""
        with self._lock:
            state = self._state
            last = state.last_known
            session_start = state.current_session_start
            event: Optional[PresenceEvent] = None
            session: Optional[Session] = None

            if last is None or self._changed(last, sample):
                event = self._event(sample, ts)
                if sample.online:
                    if session_start is None:
                        session_start = ts
                elif last is not None and last.online and session_start is not None:
                    session = Session(
                        identity=self.identity,
                        start_time=session_start,
                        end_time=ts,
                        activity=last.activity,
                    )
                    session_start = None
            elif ts - last.recorded_at > self.heartbeat_threshold:
                event = self._event(sample, ts, heartbeat=True)

            if session is not None and session.end_time <= session.start_time:
                logger.warning(
                    "Dropping empty session for %s at %s.", self.identity, ts
                )
                session = None

            if event is not None:
                event = self._write(event, session)

            self._state = EngineState(
                last_known=LastKnownState(
                    online=sample.online,
                    activity=sample.activity,
                    timestamp=ts,
                    recorded_at=ts if event is not None else last.recorded_at,
                ),
                current_session_start=session_start,
            )
            self._emit()
            return event

    def repair(self, sample: Sample, now: datetime) -> None:
        """Bridge the unobserved interval between the last event and ``now``."""
        with self._lock:
            last_ev = fetch_last_event(self._conn, self.identity)
            if last_ev is None:
                self._state = EngineState()
                self.ingest(sample, now)
                return

            if (
                last_ev.timestamp == now
                and last_ev.online == sample.online
                and last_ev.activity == sample.activity
            ):
                logger.debug("Sample at %s already recorded; nothing to repair.", now)
            elif last_ev.online and not sample.online:
                # The real offline moment inside the gap is unknown; the
                # session is stretched to the first sample seen afterwards.
                gap_session = Session(
                    identity=self.identity,
                    start_time=last_ev.timestamp,
                    end_time=now,
                    activity=last_ev.activity or sample.activity,
                )
                if gap_session.end_time <= gap_session.start_time:
                    logger.warning(
                        "Skipping gap session for %s: %s is not after %s.",
                        self.identity,
                        now,
                        last_ev.timestamp,
                    )
                    gap_session = None
                self._write(self._event(sample, now), gap_session)
                if gap_session is not None:
                    logger.info(
                        "Gap filled with session of %ss for %s.",
                        gap_session.duration_seconds,
                        self.identity,
                    )
            else:
                self._write(self._event(sample, now), None)

            self._rebuild_locked()
            self._emit()

    def rebuild_state(self) -> EngineState:
        """Reload runtime state from the newest persisted event."""
        with self._lock:
            self._rebuild_locked()
            return self._state.copy()

    def _rebuild_locked(self) -> None:
        record = fetch_last_event(self._conn, self.identity)
        if record is None:
            self._state = EngineState()
            return
        self._state = EngineState(
            last_known=LastKnownState(
                online=record.online,
                activity=record.activity,
                timestamp=record.timestamp,
                recorded_at=record.timestamp,
            ),
            current_session_start=record.timestamp if record.online else None,
        )

    @staticmethod
    def _changed(last: LastKnownState, sample: Sample) -> bool:
        if last.online != sample.online:
            return True
        return sample.online and last.activity != sample.activity

    def _event(self, sample: Sample, ts: datetime, heartbeat: bool = False) -> PresenceEvent:
        return PresenceEvent(
            identity=self.identity,
            online=sample.online,
            activity=sample.activity,
            timestamp=ts,
            heartbeat=heartbeat,
        )

    def _write(
        self, event: PresenceEvent, session: Optional[Session]
    ) -> PresenceEvent:
        with transaction(self._conn):
            event_id = append(self._conn, EVENTS_STORE, event)
            if session is not None:
                append(self._conn, SESSIONS_STORE, session)
        logger.info(
            "%s saved: %s %s %s",
            "Heartbeat" if event.heartbeat else "Event",
            self.identity,
            "ONLINE" if event.online else "OFFLINE",
            event.activity or "-",
        )
        if session is not None:
            logger.info(
                "Session saved: %s %ss %s",
                self.identity,
                session.duration_seconds,
                session.activity or "-",
            )
        return PresenceEvent(
            id=event_id,
            identity=event.identity,
            online=event.online,
            activity=event.activity,
            timestamp=event.timestamp,
            heartbeat=event.heartbeat,
        )

    def _emit(self) -> None:
        last = self._state.last_known
        if not self._listeners or last is None:
            return
        try:
            sessions = read_all(self._conn, SESSIONS_STORE, identity=self.identity)
        except StoreFailure:
            logger.exception("Could not load sessions for listeners.")
            return
        update = PresenceUpdate(
            identity=self.identity,
            online=last.online,
            activity=last.activity,
            current_session_start=self._state.current_session_start,
            sessions=sessions,
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Presence listener failed.")
