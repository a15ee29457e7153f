"""Polling loop and lifecycle handling for the presence monitor."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from typing import Callable, Optional

from .config import MonitorSettings
from .engine import ReconciliationEngine
from .errors import SourceFailure, StoreFailure
from .sources import PresenceSampler, RobloxPresenceSource, SimulatedSource

logger = logging.getLogger(__name__)


class PresenceMonitor:
    """Samples one identity and feeds the reconciliation engine.

    At most one cycle (poll or repair) runs at a time; a poll triggered while
    another cycle is in flight is skipped rather than queued.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        identity: str,
        settings: MonitorSettings,
        sampler: PresenceSampler,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.identity = identity
        self.settings = settings
        self.sampler = sampler
        self.engine = ReconciliationEngine(
            conn, identity, heartbeat_threshold=settings.heartbeat_threshold
        )
        self._clock = clock
        self._cycle_lock = threading.Lock()
        self._repair_pending = False

    @classmethod
    def create(
        cls,
        conn: sqlite3.Connection,
        identity: str,
        settings: MonitorSettings,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "PresenceMonitor":
        sampler = PresenceSampler(
            RobloxPresenceSource(timeout=settings.request_timeout.total_seconds()),
            SimulatedSource(clock),
            use_simulator=settings.use_simulator,
        )
        return cls(conn, identity, settings, sampler, clock=clock)

    def close(self) -> None:
        source = self.sampler.source
        if isinstance(source, RobloxPresenceSource):
            source.close()

    def check_and_record(self) -> bool:
        """Run one poll cycle; return False when skipped or abandoned."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Poll skipped; a cycle for %s is in flight.", self.identity)
            return False
        try:
            ts = self._clock()
            try:
                sample = self.sampler.sample(self.identity)
            except SourceFailure as exc:
                logger.error("Presence lookup for %s failed: %s", self.identity, exc.reason)
                return False
            try:
                if self._repair_pending:
                    self.engine.repair(sample, ts)
                    self._repair_pending = False
                else:
                    self.engine.ingest(sample, ts)
            except StoreFailure:
                logger.exception("Could not record sample for %s.", self.identity)
                return False
            return True
        finally:
            self._cycle_lock.release()

    def resume(self) -> bool:
        """Repair the gap since the last recorded event.

        On failure the repair stays pending and runs on the next poll that
        gets a sample, so a run that ended while unobserved is still closed.
        """
        with self._cycle_lock:
            self._repair_pending = True
            try:
                sample = self.sampler.sample(self.identity)
            except SourceFailure as exc:
                logger.error("Gap repair for %s skipped: %s", self.identity, exc.reason)
                return False
            try:
                self.engine.repair(sample, self._clock())
            except StoreFailure:
                logger.exception("Gap repair for %s failed.", self.identity)
                return False
            self._repair_pending = False
            return True

    def reset_history(self) -> None:
        """Delete all events and sessions and forget the runtime state."""
        with self._cycle_lock:
            self.engine.clear_history()

    def run_forever(self) -> None:
        stop_event = threading.Event()
        try:
            self.run_until_stopped(stop_event)
        except KeyboardInterrupt:
            logger.info("Monitor interrupted.")
        finally:
            self.close()

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """Repair, then poll every interval until the event is set."""
        interval = self.settings.poll_interval.total_seconds()
        logger.info("Polling %s every %ss.", self.identity, interval)
        self._guarded(self.resume)
        # Sleep in an interruptible manner.
        while not stop_event.wait(interval):
            self._guarded(self.check_and_record)
        logger.info("Polling stopped for %s.", self.identity)

    def _guarded(self, cycle: Callable[[], bool]) -> None:
        try:
            cycle()
        except Exception:
            logger.exception("Poll cycle for %s failed.", self.identity)


class MonitorRunner:
    """Run a presence monitor in a background thread.

    ``on_resume`` starts polling (gap repair first) and ``on_suspend`` stops
    it. Extra resume signals while polling are ignored.
    """

    def __init__(self, monitor: PresenceMonitor) -> None:
        self.monitor = monitor
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def on_resume(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self.monitor.run_until_stopped,
                args=(stop_event,),
                name=f"presence-{self.monitor.identity}",
                daemon=True,
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.info("Monitor background thread started.")

    def on_suspend(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._thread.is_alive() or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread:
            # Let an in-flight cycle finish its writes.
            thread.join(timeout=self.monitor.settings.request_timeout.total_seconds() + 10)
            logger.info("Monitor background thread stopped.")

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())
