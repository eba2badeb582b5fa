from __future__ import annotations

import errno
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

from vodkeep.app.services.maintenance_service import MaintenanceScheduler, RunSkipped
from vodkeep.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("vodkeep.scheduler")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


class SchedulerService:
    """Background thread that triggers maintenance runs on a fixed interval.

    Only one process per data directory runs the loop; the others skip start
    when the lock file is already held.
    """

    def __init__(
        self,
        maintenance: MaintenanceScheduler,
        interval_seconds: int,
        *,
        initial_delay_seconds: float = 0.0,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._maintenance = maintenance
        self._interval_seconds = max(1, interval_seconds)
        self._initial_delay_seconds = max(0.0, initial_delay_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.running:
            return True

        if not self._try_acquire_process_lock():
            return False

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="vodkeep-scheduler")
        self._thread.daemon = True
        self._thread.start()
        LOGGER.info("maintenance scheduler started interval_seconds=%s", self._interval_seconds)
        return True

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning(
                "scheduler single-instance lock unavailable on this platform; starting scheduler"
            )
            return True

        lock_path = self._lock_path
        lock_file = None
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if lock_file is not None:
                lock_file.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info(
                    "scheduler start skipped; lock held by another process path=%s",
                    lock_path,
                )
                return False
            LOGGER.warning(
                "scheduler lock acquisition failed path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("scheduler lock file metadata write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired and fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("scheduler lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            try:
                lock_file.close()
            except OSError:
                pass
            self._lock_file = None
            self._lock_acquired = False

    def _run_loop(self) -> None:
        if self._stop_event.wait(self._initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            started_at = time.monotonic()
            self._run_tick()
            elapsed = time.monotonic() - started_at
            self._stop_event.wait(max(0.0, self._interval_seconds - elapsed))

    def _run_tick(self) -> None:
        started_at = time.perf_counter()
        self._telemetry.emit("scheduler.tick.start")
        try:
            result = self._maintenance.run_once()
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.exception("scheduled maintenance run failed")
            return

        self._telemetry.emit(
            "scheduler.tick.finish",
            duration_ms=int((time.perf_counter() - started_at) * 1000),
            outcome="skipped" if isinstance(result, RunSkipped) else "ok",
        )
