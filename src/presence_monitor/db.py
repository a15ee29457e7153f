"""SQLite storage for presence events and sessions."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import StoreFailure
from .models import PresenceEvent, Session, calendar_day

logger = logging.getLogger(__name__)

DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

EVENTS_STORE = "events"
SESSIONS_STORE = "sessions"
STORES = (EVENTS_STORE, SESSIONS_STORE)

IDENTITY_PREF = "identity"
SIMULATOR_PREF = "use_simulator"

Record = Union[PresenceEvent, Session]


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY,
            identity TEXT NOT NULL,
            online INTEGER NOT NULL,
            activity TEXT,
            timestamp TEXT NOT NULL,
            date TEXT NOT NULL,
            heartbeat INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
        );

        CREATE INDEX IF NOT EXISTS idx_events_identity_timestamp
            ON events(identity, timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_date
            ON events(date);

        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY,
            identity TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            duration_seconds INTEGER NOT NULL CHECK (duration_seconds >= 0),
            activity TEXT,
            date TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_identity
            ON sessions(identity);
        CREATE INDEX IF NOT EXISTS idx_sessions_date
            ON sessions(date);

        CREATE TABLE IF NOT EXISTS preferences (
            key TEXT PRIMARY KEY,
            value TEXT
        );
        """
    )


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise StoreFailure(f"Failed to {action}: {exc}") from exc


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed writes atomically; any exception rolls them back."""
    with _store_errors("begin transaction"):
        conn.execute("BEGIN IMMEDIATE")
    try:
        with _store_errors("write records"):
            yield conn
    except BaseException:
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed.")
        raise
    with _store_errors("commit transaction"):
        conn.execute("COMMIT")


def _format_ts(value: datetime) -> str:
    return value.strftime(DATETIME_FMT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, DATETIME_FMT)


def _record_row(store_name: str, record: Record) -> dict[str, object]:
    if store_name == EVENTS_STORE and isinstance(record, PresenceEvent):
        return {
            "identity": record.identity,
            "online": 1 if record.online else 0,
            "activity": record.activity,
            "timestamp": _format_ts(record.timestamp),
            "date": record.date,
            "heartbeat": 1 if record.heartbeat else 0,
        }
    if store_name == SESSIONS_STORE and isinstance(record, Session):
        if record.end_time <= record.start_time:
            raise ValueError("session end_time must be after start_time")
        return {
            "identity": record.identity,
            "start_time": _format_ts(record.start_time),
            "end_time": _format_ts(record.end_time),
            "duration_seconds": record.duration_seconds,
            "activity": record.activity,
            "date": record.date,
        }
    raise ValueError(f"Cannot store {type(record).__name__} in {store_name!r}")


def _check_store(store_name: str) -> None:
    if store_name not in STORES:
        raise ValueError(f"Unknown store {store_name!r}")


def append(conn: sqlite3.Connection, store_name: str, record: Record) -> int:
    """Insert a single record and return its id."""
    _check_store(store_name)
    row = _record_row(store_name, record)
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    with _store_errors(f"append to {store_name}"):
        cur = conn.execute(
            f"INSERT INTO {store_name} ({columns}) VALUES ({placeholders})",
            list(row.values()),
        )
    return int(cur.lastrowid)


def read_all(
    conn: sqlite3.Connection,
    store_name: str,
    identity: Optional[str] = None,
    day: Optional[date] = None,
) -> list:
    """Return records in insertion order, optionally filtered by identity and day."""
    _check_store(store_name)
    clauses: list[str] = []
    params: list[object] = []
    if identity is not None:
        clauses.append("identity = ?")
        params.append(identity)
    if day is not None:
        clauses.append("date = ?")
        params.append(calendar_day(day))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with _store_errors(f"read {store_name}"):
        rows = conn.execute(
            f"SELECT * FROM {store_name} {where} ORDER BY id", params
        ).fetchall()
    convert = _row_to_event if store_name == EVENTS_STORE else _row_to_session
    return [convert(row) for row in rows]


def clear(conn: sqlite3.Connection, store_name: str) -> None:
    _check_store(store_name)
    with _store_errors(f"clear {store_name}"):
        conn.execute(f"DELETE FROM {store_name}")


def fetch_last_event(
    conn: sqlite3.Connection, identity: str
) -> Optional[PresenceEvent]:
    """Most recent event for the identity by timestamp, ties broken by id."""
    with _store_errors("read last event"):
        row = conn.execute(
            """
            SELECT * FROM events
            WHERE identity = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
            """,
            (identity,),
        ).fetchone()
    return _row_to_event(row) if row else None


def fetch_activity_totals(
    conn: sqlite3.Connection, identity: str, day: date
) -> list[sqlite3.Row]:
    """Return total session seconds per activity for the given day."""
    with _store_errors("summarize sessions"):
        return list(
            conn.execute(
                """
                SELECT
                    activity,
                    COUNT(*) AS sessions,
                    SUM(duration_seconds) AS seconds
                FROM sessions
                WHERE identity = ? AND date = ?
                GROUP BY activity
                ORDER BY seconds DESC;
                """,
                (identity, calendar_day(day)),
            )
        )


def get_preference(
    conn: sqlite3.Connection, key: str, default: Optional[str] = None
) -> Optional[str]:
    with _store_errors("read preference"):
        row = conn.execute(
            "SELECT value FROM preferences WHERE key = ?", (key,)
        ).fetchone()
    return row["value"] if row else default


def set_preference(conn: sqlite3.Connection, key: str, value: Optional[str]) -> None:
    with _store_errors("write preference"):
        conn.execute(
            """
            INSERT INTO preferences (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )


def _row_to_event(row: sqlite3.Row) -> PresenceEvent:
    return PresenceEvent(
        id=row["id"],
        identity=row["identity"],
        online=bool(row["online"]),
        activity=row["activity"],
        timestamp=_parse_ts(row["timestamp"]),
        heartbeat=bool(row["heartbeat"]),
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        identity=row["identity"],
        start_time=_parse_ts(row["start_time"]),
        end_time=_parse_ts(row["end_time"]),
        activity=row["activity"],
    )
