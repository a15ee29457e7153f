from __future__ import annotations

import csv

from typer.testing import CliRunner

from conftest import at
from presence_monitor.cli import app
from presence_monitor.db import (
    EVENTS_STORE,
    IDENTITY_PREF,
    SESSIONS_STORE,
    append,
    database_connection,
    get_preference,
    read_all,
)
from presence_monitor.models import PresenceEvent, Session

runner = CliRunner()


def seed(db_path):
    with database_connection(db_path) as conn:
        append(conn, SESSIONS_STORE, Session("alice", at(0), at(600), "Jogo A"))
        append(
            conn,
            EVENTS_STORE,
            PresenceEvent(identity="alice", online=False, activity=None, timestamp=at(600)),
        )


def test_sessions_lists_history_and_remembers_identity(db_path):
    seed(db_path)

    result = runner.invoke(app, ["sessions", "--user", "alice", "--db", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "00:10:00" in result.output
    assert "Jogo A" in result.output
    with database_connection(db_path) as conn:
        assert get_preference(conn, IDENTITY_PREF) == "alice"

    again = runner.invoke(app, ["sessions", "--db", str(db_path)])
    assert again.exit_code == 0
    assert "Page 1 / 1 (1 sessions)" in again.output


def test_invalid_identity_is_a_usage_error(db_path):
    result = runner.invoke(app, ["sessions", "--user", "no spaces!", "--db", str(db_path)])
    assert result.exit_code == 2


def test_missing_identity_is_a_usage_error(db_path):
    result = runner.invoke(app, ["summary", "--db", str(db_path)])
    assert result.exit_code == 2


def test_export_csv(db_path, tmp_path):
    seed(db_path)
    target = tmp_path / "out.csv"

    result = runner.invoke(
        app, ["export", "--user", "alice", "--db", str(db_path), "--output", str(target)]
    )

    assert result.exit_code == 0, result.output
    rows = list(csv.reader(target.open(encoding="utf-8")))
    assert rows[1][3] == "600"


def test_summary_for_day(db_path):
    seed(db_path)
    result = runner.invoke(
        app, ["summary", "--user", "alice", "--date", "2024-05-01", "--db", str(db_path)]
    )
    assert result.exit_code == 0, result.output
    assert "Online time:  00:10:00" in result.output


def test_reset_clears_history(db_path):
    seed(db_path)
    result = runner.invoke(app, ["reset", "--yes", "--db", str(db_path)])
    assert result.exit_code == 0, result.output
    with database_connection(db_path) as conn:
        assert read_all(conn, EVENTS_STORE) == []
        assert read_all(conn, SESSIONS_STORE) == []
