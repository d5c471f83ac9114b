"""
Periodic reconciliation triggers.

Each job runs on its own daemon thread and guards its run with a
non-blocking lock, so a run never overlaps with itself: a tick that fires
while the previous run is still going is skipped and counted.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from mailhooks.accounts.models import utcnow
from mailhooks.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class PeriodicJob:
    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        interval_seconds: float,
        run_immediately: bool = False,
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.runs = 0
        self.skipped = 0
        self.last_started_at: Optional[datetime] = None
        self.last_finished_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        if self.running:
            return
        # Each loop owns its stop event; a loop still finishing after stop() exits on its own
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, args=(self._stop,), name=f"mailhooks-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info("Started %s job (every %ss)", self.name, self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("%s job still finishing its current run", self.name)
        self._thread = None
        logger.info("Stopped %s job", self.name)

    def trigger(self) -> Optional[Any]:
        """Run now unless a run is already in progress; ``None`` when skipped."""
        if not self._lock.acquire(blocking=False):
            self.skipped += 1
            logger.info("Skipping %s run: previous run still in progress", self.name)
            return None
        try:
            self.last_started_at = utcnow()
            result = self.func()
            self.last_error = None
            return result
        except Exception as e:
            self.last_error = str(e)
            logger.error("%s job failed: %s", self.name, e, exc_info=True)
            return None
        finally:
            self.runs += 1
            self.last_finished_at = utcnow()
            self._lock.release()

    def _loop(self, stop: threading.Event) -> None:
        if self.run_immediately:
            self.trigger()
        while not stop.wait(self.interval_seconds):
            self.trigger()

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "running": self.running,
            "in_flight": self.in_flight,
            "runs": self.runs,
            "skipped": self.skipped,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_error": self.last_error,
        }


class ReconciliationScheduler:
    """Owns the hourly reconcile and the daily cleanup job."""

    def __init__(self, engine, config: Settings = default_settings):
        self.engine = engine
        self.jobs: Dict[str, PeriodicJob] = {
            "reconcile": PeriodicJob(
                "reconcile", engine.run_tick, config.RECONCILE_INTERVAL_SECONDS, run_immediately=True
            ),
            "cleanup": PeriodicJob("cleanup", engine.run_cleanup, config.CLEANUP_INTERVAL_SECONDS),
        }
        self.started = False

    def start(self) -> None:
        for job in self.jobs.values():
            job.start()
        self.started = True

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        for job in self.jobs.values():
            job.stop(timeout)
        self.started = False

    def trigger(self, name: str) -> Optional[Any]:
        if name not in self.jobs:
            raise KeyError(name)
        return self.jobs[name].trigger()

    def status(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "jobs": [job.status() for job in self.jobs.values()],
        }
