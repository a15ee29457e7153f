from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import FakeClock, T0, at
from presence_monitor.config import MonitorSettings
from presence_monitor.db import (
    IDENTITY_PREF,
    SESSIONS_STORE,
    append,
    database_connection,
    set_preference,
)
from presence_monitor.models import Session
from presence_monitor.sources import simulate
from presence_monitor.webapp import create_app


@pytest.fixture
def settings():
    return MonitorSettings(poll_interval=timedelta(hours=1), use_simulator=True)


@pytest.fixture
def client(db_path, settings):
    app = create_app(db_path=db_path, settings=settings, clock=FakeClock())
    test_client = TestClient(app)
    yield test_client
    app.state.service.close()


def test_status_without_identity(client):
    payload = client.get("/api/status").json()
    assert payload["identity"] is None
    assert payload["monitor_running"] is False
    assert payload["poll_seconds"] == 3600


def test_endpoints_require_identity(client):
    assert client.get("/api/sessions").status_code == 409
    assert client.post("/api/check").status_code == 409
    assert client.get("/api/summary").status_code == 409


def test_invalid_identity_is_rejected(client):
    response = client.put("/api/identity", json={"identity": "  "})
    assert response.status_code == 400


def test_check_records_simulated_sample(client):
    assert client.put("/api/identity", json={"identity": "alice"}).json()["identity"] == "alice"

    assert client.post("/api/check").json() == {"recorded": True}

    expected = simulate("alice", T0)
    status = client.get("/api/status").json()
    assert status["identity"] == "alice"
    assert status["simulated"] is True
    assert status["online"] is expected.online
    assert status["activity"] == expected.activity
    assert status["last_update"] == T0.isoformat()

    events = client.get("/api/events", params={"date": "2024-05-01"}).json()["events"]
    assert len(events) == 1
    assert events[0]["online"] is expected.online


def test_sessions_summary_and_export(db_path, settings):
    with database_connection(db_path) as conn:
        set_preference(conn, IDENTITY_PREF, "alice")
        append(conn, SESSIONS_STORE, Session("alice", at(0), at(600), "Jogo A"))
        append(conn, SESSIONS_STORE, Session("alice", at(1000), at(1060), "Obby Fun"))

    app = create_app(db_path=db_path, settings=settings, clock=FakeClock())
    client = TestClient(app)
    try:
        page = client.get("/api/sessions", params={"sort_by": "duration_asc"}).json()
        assert page["total"] == 2
        assert [s["activity"] for s in page["sessions"]] == ["Obby Fun", "Jogo A"]
        assert page["sessions"][1]["duration_hms"] == "00:10:00"

        filtered = client.get("/api/sessions", params={"activity": "jogo"}).json()
        assert filtered["total"] == 1

        assert client.get("/api/sessions", params={"sort_by": "nope"}).status_code == 400
        assert client.get("/api/sessions", params={"date": "05/01/2024"}).status_code == 400

        summary = client.get("/api/summary", params={"date": "2024-05-01"}).json()
        assert summary["online_seconds"] == 660
        assert summary["sessions"] == 2

        csv_response = client.get("/api/export.csv")
        assert csv_response.status_code == 200
        assert csv_response.text.splitlines()[0].startswith('"identity","start"')
        assert "alice_history.csv" in csv_response.headers["content-disposition"]

        xls_response = client.get("/api/export.xls")
        assert xls_response.headers["content-type"].startswith("application/vnd.ms-excel")

        assert client.delete("/api/history").json() == {"cleared": True}
        assert client.get("/api/sessions").json()["total"] == 0
    finally:
        app.state.service.close()


def test_resume_and_suspend_signals(client):
    client.put("/api/identity", json={"identity": "alice"})

    assert client.post("/api/resume").json() == {"monitor_running": True}
    assert client.post("/api/resume").json() == {"monitor_running": True}
    assert client.post("/api/suspend").json() == {"monitor_running": False}
