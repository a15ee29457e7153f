from __future__ import annotations

import csv
import io
from datetime import datetime

import pytest

from conftest import at
from presence_monitor.db import EVENTS_STORE, SESSIONS_STORE, append
from presence_monitor.models import PresenceEvent, Session
from presence_monitor.reporting import (
    CSV_HEADER,
    SummaryPrinter,
    export_csv,
    export_xls,
    filter_sessions,
    format_duration,
    paginate,
    total_online_seconds,
)


@pytest.fixture
def history():
    return [
        Session("alice", at(0), at(600), "Jogo A", id=1),
        Session("alice", at(1000), at(4600), "City Adventure", id=2),
        Session("alice", datetime(2024, 5, 2, 9, 0), datetime(2024, 5, 2, 9, 0, 30), None, id=3),
    ]


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "00:00:00"), (None, "00:00:00"), (-5, "00:00:00"), (59.9, "00:00:59"), (3725, "01:02:05")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_total_online_includes_running_session(history):
    assert total_online_seconds(history, at(0)) == 600 + 3600
    assert total_online_seconds(history, at(0), at(5000), at(5120)) == 600 + 3600 + 120
    assert total_online_seconds(history, at(0), datetime(2024, 5, 2), at(0)) == 4200


def test_filter_by_date_and_activity(history):
    assert [s.id for s in filter_sessions(history, day="2024-05-02")] == [3]
    assert [s.id for s in filter_sessions(history, activity="city")] == [2]
    assert [s.id for s in filter_sessions(history, search="00:10:00")] == [1]


@pytest.mark.parametrize(
    "sort_by, expected",
    [
        ("timestamp_desc", [3, 2, 1]),
        ("timestamp_asc", [1, 2, 3]),
        ("duration_desc", [2, 1, 3]),
        ("duration_asc", [3, 1, 2]),
    ],
)
def test_sorting(history, sort_by, expected):
    assert [s.id for s in filter_sessions(history, sort_by=sort_by)] == expected


def test_unknown_sort_is_rejected(history):
    with pytest.raises(ValueError):
        filter_sessions(history, sort_by="random")


def test_paginate_clamps_page():
    rows = [Session("alice", at(i * 100), at(i * 100 + 10), None, id=i) for i in range(30)]
    page = paginate(rows, page=9)
    assert (page.page, page.total_pages, page.total) == (3, 3, 30)
    assert [s.id for s in page.sessions] == list(range(24, 30))
    assert paginate([], page=1).total_pages == 1


def test_export_csv(history):
    rows = list(csv.reader(io.StringIO(export_csv(reversed(history)))))
    assert rows[0] == CSV_HEADER
    assert rows[1] == [
        "alice",
        "2024-05-01T12:00:00",
        "2024-05-01T12:10:00",
        "600",
        "00:10:00",
        "2024-05-01",
        "Jogo A",
    ]
    assert len(rows) == 4


def test_export_xls_escapes_labels():
    content = export_xls([Session("alice", at(0), at(60), "<Obby & Fun>")])
    assert "&lt;Obby &amp; Fun&gt;" in content
    assert content.startswith("<table>")


def test_summary_printer(conn, db_path, capsys):
    append(conn, SESSIONS_STORE, Session("alice", at(0), at(600), "Jogo A"))
    append(
        conn,
        EVENTS_STORE,
        PresenceEvent(identity="alice", online=False, activity=None, timestamp=at(600)),
    )

    SummaryPrinter(db_path).print_daily_summary("alice", at(0))

    output = capsys.readouterr().out
    assert "Online time:  00:10:00" in output
    assert "OFFLINE" in output
    assert "Jogo A" in output


def test_summary_printer_without_history(db_path, capsys):
    SummaryPrinter(db_path).print_daily_summary("alice", at(0))
    assert "No presence recorded" in capsys.readouterr().out
