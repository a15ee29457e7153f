"""Helpers to launch the local dashboard API."""

from __future__ import annotations

import logging
import threading
import time
import webbrowser
from pathlib import Path
from typing import Optional

import uvicorn

from .config import MonitorSettings
from .paths import get_db_path
from .webapp import create_app

logger = logging.getLogger(__name__)


def run_dashboard(
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    db_path: Optional[Path] = None,
    settings: Optional[MonitorSettings] = None,
    identity: Optional[str] = None,
    open_browser: bool = True,
    log_level: str = "info",
) -> None:
    """Start the FastAPI app with the presence monitor in the background."""
    app = create_app(
        db_path=db_path or get_db_path(),
        settings=settings or MonitorSettings(),
    )
    service = app.state.service
    if identity:
        service.set_identity(identity)
    if service.identity is None:
        logger.warning("No user configured yet; PUT /api/identity to start polling.")

    if open_browser:
        url = f"http://{host}:{port}/docs"
        threading.Thread(
            target=_launch_browser_after_delay, args=(url,), daemon=True
        ).start()

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _launch_browser_after_delay(url: str) -> None:
    time.sleep(1.0)
    try:
        webbrowser.open(url)
    except Exception:
        logger.exception("Failed to launch browser for %s", url)
