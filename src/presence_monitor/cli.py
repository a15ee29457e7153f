"""Command-line interface for the presence monitor."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from .config import MonitorSettings
from .db import (
    EVENTS_STORE,
    IDENTITY_PREF,
    SESSIONS_STORE,
    SIMULATOR_PREF,
    clear,
    database_connection,
    get_preference,
    open_database,
    read_all,
    set_preference,
)
from .errors import InvalidIdentity
from .models import PresenceUpdate
from .normalization import normalize_identity
from .paths import get_db_path, get_export_path, get_log_path
from .server_runner import run_dashboard

app = typer.Typer(help="Track a Roblox user's online sessions.")

logger = logging.getLogger(__name__)


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def resolve_identity(conn: sqlite3.Connection, user: Optional[str]) -> str:
    """Use ``--user`` or the last monitored identity; persist the choice."""
    candidate = user if user is not None else get_preference(conn, IDENTITY_PREF)
    try:
        identity = normalize_identity(candidate)
    except InvalidIdentity as exc:
        raise typer.BadParameter(str(exc), param_hint="--user") from exc
    set_preference(conn, IDENTITY_PREF, identity)
    return identity


def resolve_simulator(conn: sqlite3.Connection, simulate: Optional[bool]) -> bool:
    if simulate is None:
        return get_preference(conn, SIMULATOR_PREF) == "true"
    set_preference(conn, SIMULATOR_PREF, "true" if simulate else "false")
    return simulate


def _print_update(update: PresenceUpdate) -> None:
    status = "ONLINE" if update.online else "OFFLINE"
    typer.echo(f"{datetime.now():%H:%M:%S} {update.identity}: {status} {update.activity or '-'}")


@app.command()
def watch(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Username to monitor."),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the presence SQLite database.",
    ),
    poll_seconds: float = typer.Option(
        60.0,
        "--interval",
        min=5.0,
        help="Polling interval in seconds.",
    ),
    heartbeat_minutes: float = typer.Option(
        30.0,
        "--heartbeat",
        min=1.0,
        help="Minutes an unchanged status may go unrecorded.",
    ),
    simulate: Optional[bool] = typer.Option(
        None,
        "--simulate/--no-simulate",
        help="Use the deterministic simulator instead of the Roblox API.",
    ),
) -> None:
    """Poll presence until interrupted."""
    from .monitor import PresenceMonitor

    file_handler = logging.FileHandler(get_log_path(), encoding="utf-8")
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    logging.getLogger().addHandler(file_handler)

    conn = open_database(db_path or get_db_path(), check_same_thread=False)
    try:
        identity = resolve_identity(conn, user)
        settings = MonitorSettings.from_intervals(
            poll_seconds=poll_seconds,
            heartbeat_minutes=heartbeat_minutes,
            use_simulator=resolve_simulator(conn, simulate),
        )
        monitor = PresenceMonitor.create(conn, identity, settings)
        monitor.engine.subscribe(_print_update)
        monitor.run_forever()
    finally:
        conn.close()


@app.command()
def sessions(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Username to report on."),
    date: Optional[str] = typer.Option(None, "--date", help="Only sessions from YYYY-MM-DD."),
    activity: Optional[str] = typer.Option(None, "--activity", help="Activity substring."),
    search: Optional[str] = typer.Option(None, "--search", help="Free-text search."),
    sort_by: str = typer.Option("timestamp_desc", "--sort", help="timestamp_desc, timestamp_asc, duration_desc or duration_asc."),
    page: int = typer.Option(1, "--page", min=1, help="Page number."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the presence SQLite database."
    ),
) -> None:
    """List recorded sessions."""
    from .reporting import filter_sessions, format_duration, paginate

    with database_connection(db_path or get_db_path()) as conn:
        identity = resolve_identity(conn, user)
        records = read_all(conn, SESSIONS_STORE, identity=identity)
    try:
        rows = filter_sessions(
            records, day=date, activity=activity, search=search, sort_by=sort_by
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--sort") from exc

    result = paginate(rows, page)
    if not result.sessions:
        typer.echo("No sessions recorded.")
        return
    for s in result.sessions:
        typer.echo(
            f"{s.start_time:%Y-%m-%d %H:%M:%S}  {s.end_time:%Y-%m-%d %H:%M:%S}  "
            f"{format_duration(s.duration_seconds)}  {s.activity or '-'}"
        )
    typer.echo(f"Page {result.page} / {result.total_pages} ({result.total} sessions)")


@app.command()
def summary(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Username to summarize."),
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    db_path: Optional[Path] = typer.Option(
        None,
        "--db",
        path_type=Path,
        help="Location of the presence SQLite database.",
    ),
) -> None:
    """Print the online time for a specific day."""
    from .reporting import SummaryPrinter

    resolved_db = db_path or get_db_path()
    with database_connection(resolved_db) as conn:
        identity = resolve_identity(conn, user)
    target = datetime.strptime(date, "%Y-%m-%d") if date else datetime.now()
    SummaryPrinter(db_path=resolved_db).print_daily_summary(identity, target)


@app.command()
def export(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Username to export."),
    fmt: str = typer.Option("csv", "--format", help="csv or xls."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", path_type=Path),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the presence SQLite database."
    ),
) -> None:
    """Write the session history to a CSV or XLS file."""
    from .reporting import export_csv, export_xls

    if fmt not in ("csv", "xls"):
        raise typer.BadParameter("format must be csv or xls", param_hint="--format")
    with database_connection(db_path or get_db_path()) as conn:
        identity = resolve_identity(conn, user)
        records = read_all(conn, SESSIONS_STORE, identity=identity)
    content = export_csv(records) if fmt == "csv" else export_xls(records)
    target = output or get_export_path(identity, fmt)
    target.write_text(content, encoding="utf-8")
    typer.echo(f"Exported {len(records)} sessions to {target}")


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the presence SQLite database."
    ),
) -> None:
    """Delete every recorded event and session."""
    if not yes:
        typer.confirm("Delete the whole local history?", abort=True)
    with database_connection(db_path or get_db_path()) as conn:
        clear(conn, EVENTS_STORE)
        clear(conn, SESSIONS_STORE)
    logger.info("History cleared.")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the dashboard."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the dashboard."
    ),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Username to monitor."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the presence SQLite database."
    ),
    poll_seconds: float = typer.Option(
        60.0,
        "--interval",
        min=5.0,
        help="Polling interval in seconds.",
    ),
    heartbeat_minutes: float = typer.Option(
        30.0,
        "--heartbeat",
        min=1.0,
        help="Minutes an unchanged status may go unrecorded.",
    ),
    simulate: Optional[bool] = typer.Option(
        None,
        "--simulate/--no-simulate",
        help="Use the deterministic simulator instead of the Roblox API.",
    ),
    open_browser: bool = typer.Option(
        True,
        "--open-browser/--no-open-browser",
        help="Automatically launch the dashboard in your default browser.",
    ),
) -> None:
    """Start the dashboard API with the background monitor."""
    identity: Optional[str] = None
    if user is not None:
        try:
            identity = normalize_identity(user)
        except InvalidIdentity as exc:
            raise typer.BadParameter(str(exc), param_hint="--user") from exc
    resolved_db = db_path or get_db_path()
    with database_connection(resolved_db) as conn:
        use_simulator = resolve_simulator(conn, simulate)
    settings = MonitorSettings.from_intervals(
        poll_seconds=poll_seconds,
        heartbeat_minutes=heartbeat_minutes,
        use_simulator=use_simulator,
    )
    run_dashboard(
        host=host,
        port=port,
        db_path=resolved_db,
        settings=settings,
        identity=identity,
        open_browser=open_browser,
    )
