"""Reporting helpers shared by the CLI and the dashboard API."""

from __future__ import annotations

import csv
import html
import io
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional

from .db import SESSIONS_STORE, database_connection, fetch_activity_totals, read_all
from .engine import ReconciliationEngine
from .models import Session, calendar_day, floor_seconds

PAGE_SIZE = 12

SORT_KEYS = ("timestamp_desc", "timestamp_asc", "duration_desc", "duration_asc")

CSV_HEADER = [
    "identity",
    "start",
    "end",
    "duration_sec",
    "duration_hms",
    "date",
    "activity",
]


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def print_daily_summary(self, identity: str, day: datetime) -> None:
        now = datetime.now()
        with database_connection(self.db_path) as conn:
            state = ReconciliationEngine(conn, identity).rebuild_state()
            sessions = read_all(conn, SESSIONS_STORE, identity=identity, day=day)
            rows = fetch_activity_totals(conn, identity, day)

        last = state.last_known
        if last is None:
            print(f"No presence recorded for {identity}.")
            return

        total = total_online_seconds(sessions, day, state.current_session_start, now)
        print(f"Summary for {identity} on {calendar_day(day)}")
        print("-" * 40)
        status = "ONLINE" if last.online else "OFFLINE"
        print(f"Last status:  {status} ({last.activity or '-'}) at {last.timestamp:%H:%M:%S}")
        print(f"Online time:  {format_duration(total)}")
        if state.current_session_start is not None:
            running = floor_seconds(state.current_session_start, now)
            print(f"Current session: {format_duration(running)}")

        if rows:
            print()
            print("Top activities:")
            for row in rows[:5]:
                label = row["activity"] or "(unknown)"
                print(f"  {label[:30]:<30} {row['sessions']:>3}x {format_duration(row['seconds'])}")


def total_online_seconds(
    sessions: Iterable[Session],
    day: date,
    open_session_start: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> int:
    """Closed session time dated ``day`` plus the running session if it began that day."""
    target = calendar_day(day)
    total = sum(s.duration_seconds for s in sessions if s.date == target)
    if open_session_start is not None and calendar_day(open_session_start) == target:
        total += floor_seconds(open_session_start, now or datetime.now())
    return total


@dataclass(slots=True)
class SessionPage:
    sessions: list[Session]
    page: int
    total_pages: int
    total: int


def filter_sessions(
    sessions: Iterable[Session],
    *,
    day: Optional[str] = None,
    activity: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "timestamp_desc",
) -> list[Session]:
    if sort_by not in SORT_KEYS:
        raise ValueError(f"sort_by must be one of {', '.join(SORT_KEYS)}")
    rows = list(sessions)
    if day:
        rows = [s for s in rows if s.date == day]
    activity_filter = (activity or "").strip().lower()
    if activity_filter:
        rows = [s for s in rows if activity_filter in (s.activity or "").lower()]
    text = (search or "").strip().lower()
    if text:
        rows = [
            s
            for s in rows
            if text in (s.activity or "").lower()
            or text in format_duration(s.duration_seconds)
            or text in s.start_time.strftime("%Y-%m-%d %H:%M:%S")
        ]

    if sort_by.startswith("timestamp"):
        rows.sort(key=lambda s: s.start_time, reverse=sort_by.endswith("desc"))
    else:
        rows.sort(key=lambda s: s.duration_seconds, reverse=sort_by.endswith("desc"))
    return rows


def paginate(rows: list[Session], page: int = 1, page_size: int = PAGE_SIZE) -> SessionPage:
    total_pages = max(1, -(-len(rows) // page_size))
    page = min(max(1, page), total_pages)
    start = (page - 1) * page_size
    return SessionPage(
        sessions=rows[start : start + page_size],
        page=page,
        total_pages=total_pages,
        total=len(rows),
    )


def export_csv(sessions: Iterable[Session]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for s in sorted(sessions, key=lambda item: item.start_time):
        writer.writerow(
            [
                s.identity,
                s.start_time.isoformat(),
                s.end_time.isoformat(),
                s.duration_seconds,
                format_duration(s.duration_seconds),
                s.date,
                s.activity or "",
            ]
        )
    return buffer.getvalue()


def export_xls(sessions: Iterable[Session]) -> str:
    """HTML table that spreadsheet applications open as a worksheet."""
    header = "".join(
        f"<th>{name}</th>"
        for name in ("identity", "start", "end", "duration", "date", "activity")
    )
    lines = [f"<table><tr>{header}</tr>"]
    for s in sorted(sessions, key=lambda item: item.start_time):
        cells = (
            s.identity,
            s.start_time.isoformat(),
            s.end_time.isoformat(),
            format_duration(s.duration_seconds),
            s.date,
            s.activity or "",
        )
        lines.append("<tr>" + "".join(f"<td>{html.escape(c)}</td>" for c in cells) + "</tr>")
    lines.append("</table>")
    return "\n".join(lines)


def format_duration(seconds: Optional[float]) -> str:
    if not seconds or seconds < 0:
        return "00:00:00"
    total_seconds = int(seconds)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
