"""FastAPI application exposing the presence history and monitor controls."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict

from .config import MonitorSettings
from .db import (
    EVENTS_STORE,
    IDENTITY_PREF,
    SESSIONS_STORE,
    clear,
    database_connection,
    get_preference,
    open_database,
    read_all,
    set_preference,
)
from .errors import InvalidIdentity
from .models import Session
from .monitor import MonitorRunner, PresenceMonitor
from .normalization import normalize_identity
from .paths import get_db_path
from .reporting import (
    PAGE_SIZE,
    export_csv,
    export_xls,
    filter_sessions,
    format_duration,
    paginate,
    total_online_seconds,
)

logger = logging.getLogger(__name__)


class MonitorService:
    """Owns the monitor for the currently configured identity."""

    def __init__(
        self,
        db_path: Path,
        settings: MonitorSettings,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db_path = Path(db_path)
        self.settings = settings
        self._clock = clock
        self._conn = open_database(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self.monitor: Optional[PresenceMonitor] = None
        self.runner: Optional[MonitorRunner] = None
        stored = get_preference(self._conn, IDENTITY_PREF)
        if stored:
            self._build(stored)

    @property
    def identity(self) -> Optional[str]:
        return self.monitor.identity if self.monitor else None

    def _build(self, identity: str) -> None:
        self.monitor = PresenceMonitor.create(
            self._conn, identity, self.settings, clock=self._clock
        )
        self.monitor.engine.rebuild_state()
        self.runner = MonitorRunner(self.monitor)

    def set_identity(self, value: str) -> str:
        identity = normalize_identity(value)
        with self._lock:
            was_running = self.is_running()
            self._teardown()
            set_preference(self._conn, IDENTITY_PREF, identity)
            self._build(identity)
            if was_running and self.runner:
                self.runner.on_resume()
        logger.info("Monitored identity set to %s.", identity)
        return identity

    def resume(self) -> None:
        if self.runner:
            self.runner.on_resume()

    def suspend(self) -> None:
        if self.runner:
            self.runner.on_suspend()

    def is_running(self) -> bool:
        return bool(self.runner and self.runner.is_running())

    def clear_history(self) -> None:
        with self._lock:
            was_running = self.is_running()
            self.suspend()
            if self.monitor:
                self.monitor.reset_history()
            else:
                clear(self._conn, EVENTS_STORE)
                clear(self._conn, SESSIONS_STORE)
            if was_running:
                self.resume()
        logger.info("History cleared.")

    def _teardown(self) -> None:
        self.suspend()
        if self.monitor:
            self.monitor.close()
        self.monitor = None
        self.runner = None

    def close(self) -> None:
        with self._lock:
            self._teardown()
            self._conn.close()


class IdentityPayload(BaseModel):
    identity: str

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[MonitorSettings] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_db_path = Path(db_path or get_db_path())
    resolved_settings = settings or MonitorSettings()
    service = MonitorService(resolved_db_path, resolved_settings, clock)

    app = FastAPI(title="Presence Monitor", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.service = service

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        service.resume()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        service.close()

    def _require_identity() -> str:
        identity = service.identity
        if not identity:
            raise HTTPException(status_code=409, detail="No identity configured")
        return identity

    def _require_monitor() -> PresenceMonitor:
        monitor = service.monitor
        if monitor is None:
            raise HTTPException(status_code=409, detail="No identity configured")
        return monitor

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        monitor = service.monitor
        payload: Dict[str, Any] = {
            "monitor_running": service.is_running(),
            "identity": service.identity,
            "database_path": str(request.app.state.db_path),
            "poll_seconds": resolved_settings.poll_interval.total_seconds(),
            "online": None,
            "activity": None,
            "last_update": None,
            "current_session_start": None,
            "simulated": None,
            "degraded": None,
            "last_failure": None,
        }
        if monitor is None:
            return payload
        state = monitor.engine.state
        payload.update(
            simulated=monitor.sampler.simulated,
            degraded=monitor.sampler.degraded,
            last_failure=monitor.sampler.last_failure,
            current_session_start=_isoformat(state.current_session_start),
        )
        if state.last_known:
            payload.update(
                online=state.last_known.online,
                activity=state.last_known.activity,
                last_update=state.last_known.timestamp.isoformat(),
            )
        return payload

    @app.put("/api/identity")
    def set_identity(payload: IdentityPayload) -> Dict[str, Any]:
        try:
            identity = service.set_identity(payload.identity)
        except InvalidIdentity as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"identity": identity, "monitor_running": service.is_running()}

    @app.post("/api/check")
    def check_now() -> Dict[str, Any]:
        monitor = _require_monitor()
        return {"recorded": monitor.check_and_record()}

    @app.post("/api/suspend")
    def suspend() -> Dict[str, Any]:
        service.suspend()
        return {"monitor_running": service.is_running()}

    @app.post("/api/resume")
    def resume() -> Dict[str, Any]:
        _require_identity()
        service.resume()
        return {"monitor_running": service.is_running()}

    @app.get("/api/sessions")
    def sessions(
        request: Request,
        date: Optional[str] = Query(default=None, description="YYYY-MM-DD filter."),
        activity: Optional[str] = Query(default=None),
        search: Optional[str] = Query(default=None),
        sort_by: str = Query(default="timestamp_desc"),
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=PAGE_SIZE, ge=1, le=500),
    ) -> Dict[str, Any]:
        identity = _require_identity()
        day = _parse_date(date).strftime("%Y-%m-%d") if date else None
        with database_connection(request.app.state.db_path) as conn:
            records = read_all(conn, SESSIONS_STORE, identity=identity)
        try:
            rows = filter_sessions(
                records, day=day, activity=activity, search=search, sort_by=sort_by
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        result = paginate(rows, page, page_size)
        return {
            "identity": identity,
            "page": result.page,
            "total_pages": result.total_pages,
            "total": result.total,
            "sessions": [_session_payload(s) for s in result.sessions],
        }

    @app.get("/api/events")
    def events(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        identity = _require_identity()
        target_day = _parse_date(date, clock())
        with database_connection(request.app.state.db_path) as conn:
            records = read_all(conn, EVENTS_STORE, identity=identity, day=target_day)
        return {
            "date": target_day.strftime("%Y-%m-%d"),
            "events": [
                {
                    "id": event.id,
                    "online": event.online,
                    "activity": event.activity,
                    "timestamp": event.timestamp.isoformat(),
                    "heartbeat": event.heartbeat,
                }
                for event in records
            ],
        }

    @app.get("/api/summary")
    def summary(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        monitor = _require_monitor()
        identity = monitor.identity
        target_day = _parse_date(date, clock())
        with database_connection(request.app.state.db_path) as conn:
            records = read_all(conn, SESSIONS_STORE, identity=identity, day=target_day)
        open_start = monitor.engine.state.current_session_start
        total = total_online_seconds(records, target_day, open_start, clock())
        return {
            "date": target_day.strftime("%Y-%m-%d"),
            "identity": identity,
            "online_seconds": total,
            "online_hms": format_duration(total),
            "sessions": len(records),
        }

    @app.get("/api/export.csv")
    def export_sessions_csv(request: Request) -> Response:
        identity = _require_identity()
        with database_connection(request.app.state.db_path) as conn:
            records = read_all(conn, SESSIONS_STORE, identity=identity)
        return Response(
            content=export_csv(records),
            media_type="text/csv; charset=utf-8",
            headers={
                "Content-Disposition": f'attachment; filename="{identity}_history.csv"'
            },
        )

    @app.get("/api/export.xls")
    def export_sessions_xls(request: Request) -> Response:
        identity = _require_identity()
        with database_connection(request.app.state.db_path) as conn:
            records = read_all(conn, SESSIONS_STORE, identity=identity)
        return Response(
            content=export_xls(records),
            media_type="application/vnd.ms-excel",
            headers={
                "Content-Disposition": f'attachment; filename="{identity}_history.xls"'
            },
        )

    @app.delete("/api/history")
    def delete_history() -> Dict[str, Any]:
        service.clear_history()
        return {"cleared": True}

    return app


def _parse_date(value: Optional[str], today: Optional[datetime] = None) -> datetime:
    if not value:
        return _start_of_day(today or datetime.now())
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc
    return _start_of_day(parsed)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _session_payload(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat(),
        "duration_seconds": session.duration_seconds,
        "duration_hms": format_duration(session.duration_seconds),
        "activity": session.activity,
        "date": session.date,
    }
