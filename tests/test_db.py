from __future__ import annotations

from datetime import datetime

import pytest

from conftest import at
from presence_monitor.db import (
    EVENTS_STORE,
    SESSIONS_STORE,
    append,
    clear,
    fetch_activity_totals,
    fetch_last_event,
    get_preference,
    read_all,
    set_preference,
    transaction,
)
from presence_monitor.errors import StoreFailure
from presence_monitor.models import PresenceEvent, Session


def event(ts, online=True, identity="alice", activity=None, heartbeat=False):
    return PresenceEvent(
        identity=identity, online=online, activity=activity, timestamp=ts, heartbeat=heartbeat
    )


def test_append_returns_ids_and_read_all_keeps_insertion_order(conn):
    first = append(conn, EVENTS_STORE, event(at(60), activity="Jogo A"))
    second = append(conn, EVENTS_STORE, event(at(0), online=False, heartbeat=True))

    assert second > first
    records = read_all(conn, EVENTS_STORE)
    assert [r.id for r in records] == [first, second]
    assert records[0].activity == "Jogo A"
    assert records[1].heartbeat is True
    assert records[1].online is False
    assert records[0].timestamp == at(60)


def test_read_all_filters_by_identity_and_day(conn):
    append(conn, EVENTS_STORE, event(at(0)))
    append(conn, EVENTS_STORE, event(at(0), identity="bob"))
    append(conn, EVENTS_STORE, event(datetime(2024, 5, 2, 8, 0)))

    assert len(read_all(conn, EVENTS_STORE, identity="alice")) == 2
    assert len(read_all(conn, EVENTS_STORE, day=datetime(2024, 5, 1))) == 2
    [only] = read_all(conn, EVENTS_STORE, identity="alice", day=datetime(2024, 5, 2))
    assert only.date == "2024-05-02"


def test_fetch_last_event_orders_by_timestamp_then_id(conn):
    append(conn, EVENTS_STORE, event(at(120), activity="late"))
    append(conn, EVENTS_STORE, event(at(60), activity="early"))
    append(conn, EVENTS_STORE, event(at(120), activity="tie"))

    assert fetch_last_event(conn, "alice").activity == "tie"
    assert fetch_last_event(conn, "nobody") is None


def test_sessions_round_trip_with_duration(conn):
    append(conn, SESSIONS_STORE, Session("alice", at(0), at(90.5), "Obby Fun"))
    [session] = read_all(conn, SESSIONS_STORE, identity="alice")
    assert session.duration_seconds == 90
    row = conn.execute("SELECT duration_seconds, date FROM sessions").fetchone()
    assert (row["duration_seconds"], row["date"]) == (90, "2024-05-01")


def test_empty_session_is_rejected(conn):
    with pytest.raises(ValueError):
        append(conn, SESSIONS_STORE, Session("alice", at(10), at(10), None))


def test_unknown_store_and_mismatched_record_are_rejected(conn):
    with pytest.raises(ValueError):
        append(conn, "settings", event(at(0)))
    with pytest.raises(ValueError):
        append(conn, SESSIONS_STORE, event(at(0)))
    with pytest.raises(ValueError):
        read_all(conn, "settings")


def test_clear_empties_a_single_store(conn):
    append(conn, EVENTS_STORE, event(at(0)))
    append(conn, SESSIONS_STORE, Session("alice", at(0), at(60), None))

    clear(conn, EVENTS_STORE)

    assert read_all(conn, EVENTS_STORE) == []
    assert len(read_all(conn, SESSIONS_STORE)) == 1


def test_transaction_rolls_back_on_error(conn):
    with pytest.raises(RuntimeError):
        with transaction(conn):
            append(conn, EVENTS_STORE, event(at(0)))
            raise RuntimeError("abort")

    assert read_all(conn, EVENTS_STORE) == []
    assert not conn.in_transaction


def test_closed_connection_raises_store_failure(conn):
    conn.close()
    with pytest.raises(StoreFailure):
        read_all(conn, EVENTS_STORE)


def test_activity_totals(conn):
    append(conn, SESSIONS_STORE, Session("alice", at(0), at(60), "Jogo A"))
    append(conn, SESSIONS_STORE, Session("alice", at(100), at(400), "Jogo B"))
    append(conn, SESSIONS_STORE, Session("alice", at(500), at(560), "Jogo A"))

    rows = fetch_activity_totals(conn, "alice", at(0))
    assert [(r["activity"], r["sessions"], r["seconds"]) for r in rows] == [
        ("Jogo B", 1, 300),
        ("Jogo A", 2, 120),
    ]


def test_preferences_upsert(conn):
    assert get_preference(conn, "identity", "none") == "none"
    set_preference(conn, "identity", "alice")
    set_preference(conn, "identity", "bob")
    assert get_preference(conn, "identity") == "bob"
