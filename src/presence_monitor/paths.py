"""Helpers for locating application directories."""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "PresenceMonitor"
APP_AUTHOR = "PresenceMonitor"


def get_data_dir() -> Path:
    """Return the base directory for persistent data."""
    dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)
    path = Path(dirs.user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_db_path() -> Path:
    return get_data_dir() / "presence.sqlite3"


def get_log_path() -> Path:
    return get_data_dir() / "monitor.log"


def get_export_path(identity: str, suffix: str) -> Path:
    """Default file for exported session history, e.g. ``alice_history.csv``."""
    export_dir = get_data_dir() / "exports"
    export_dir.mkdir(parents=True, exist_ok=True)
    return export_dir / f"{identity or 'presence'}_history.{suffix}"
