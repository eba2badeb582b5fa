from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from vodkeep.app.repositories.common import utc_now
from vodkeep.app.repositories.database import Database
from vodkeep.app.services.artifact_resolver import ArtifactResolver
from vodkeep.app.services.live_channel_service import LiveChannelService
from vodkeep.app.services.video_cache_store import BoundedCacheStore, StorageUnsupported
from vodkeep.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("vodkeep.maintenance")

TaskStatus = Literal["success", "failed", "skipped"]

TASK_ARTIFACT_REFRESH = "artifact_refresh"
TASK_CACHE_CLEANUP_EXPIRED = "cache_cleanup_expired"
TASK_CACHE_VALIDATE_SIZE = "cache_validate_size"
TASK_CACHE_MIGRATE_LEGACY = "cache_migrate_legacy"
TASK_LIVE_CHANNELS_REFRESH = "live_channels_refresh"
_CACHE_TASKS: frozenset[str] = frozenset(
    {TASK_CACHE_CLEANUP_EXPIRED, TASK_CACHE_VALIDATE_SIZE, TASK_CACHE_MIGRATE_LEGACY}
)


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class TaskSkipped(Exception):
    pass


class TaskFailed(Exception):
    pass


@dataclass(frozen=True)
class TaskOutcome:
    name: str
    status: TaskStatus
    detail: str
    duration_ms: int


@dataclass(frozen=True)
class RunReport:
    run_id: str
    start_time: datetime
    end_time: datetime
    duration_ms: int
    memory_used_mb: float | None
    db_queries: int
    tasks: tuple[TaskOutcome, ...]

    @property
    def duration_seconds(self) -> float:
        return round(self.duration_ms / 1000, 2)

    @property
    def failed_tasks(self) -> list[str]:
        return [task.name for task in self.tasks if task.status == "failed"]


@dataclass(frozen=True)
class RunSkipped:
    reason: str = "maintenance run already in progress"
    skipped: bool = True


class MaintenanceScheduler:
    """Single-flight maintenance pass over the artifact, video cache and live channels.

    `run_once` never raises for task failures: each task is isolated, bounded by
    its own timeout, and reported in the returned `RunReport`. A second caller
    arriving while a run is active gets `RunSkipped` immediately.
    """

    def __init__(
        self,
        *,
        resolver: ArtifactResolver,
        cache_store: BoundedCacheStore,
        live_channels: LiveChannelService | None = None,
        database: Database | None = None,
        task_timeout_seconds: float = 120.0,
        migrate_on_first_run: bool = True,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._resolver = resolver
        self._cache_store = cache_store
        self._live_channels = live_channels
        self._database = database
        self._task_timeout_seconds = task_timeout_seconds
        self._migrate_on_first_run = migrate_on_first_run
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock
        self._state = RunState.IDLE
        self._state_lock = threading.Lock()
        self._last_report: RunReport | None = None
        self._migration_completed = False
        # Workers of timed-out tasks, keyed by task name, until they return.
        self._stragglers: dict[str, Future[str]] = {}

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    def last_report(self) -> RunReport | None:
        with self._state_lock:
            return self._last_report

    def run_once(self, *, run_migration: bool | None = None) -> RunReport | RunSkipped:
        if not self._try_begin():
            LOGGER.info("maintenance run skipped; another run is active")
            self._telemetry.emit("maintenance.run.skipped")
            return RunSkipped()

        try:
            report = self._execute(run_migration=run_migration)
            with self._state_lock:
                self._last_report = report
            return report
        finally:
            self._finish()

    def run_cache_cleanup(self) -> tuple[int, int] | RunSkipped:
        """Expire then evict under the run lock; returns (removed, evicted).

        Raises StorageUnsupported when the cache backend cannot be queried.
        """
        if not self._try_begin():
            return RunSkipped()
        try:
            blocking = self._running_straggler(TASK_CACHE_CLEANUP_EXPIRED)
            if blocking is not None:
                return RunSkipped(reason=f"previous {blocking} worker still running")
            removed = self._cache_store.cleanup_expired()
            evicted = self._cache_store.validate_size()
        finally:
            self._finish()
        return removed, evicted

    def _try_begin(self) -> bool:
        with self._state_lock:
            if self._state is RunState.RUNNING:
                return False
            self._state = RunState.RUNNING
            return True

    def _finish(self) -> None:
        with self._state_lock:
            self._state = RunState.IDLE

    def _running_straggler(self, name: str) -> str | None:
        """Name of a still-running timed-out worker that conflicts with `name`."""
        conflicting = _CACHE_TASKS if name in _CACHE_TASKS else frozenset({name})
        with self._state_lock:
            for task_name in sorted(conflicting):
                future = self._stragglers.get(task_name)
                if future is None:
                    continue
                if future.done():
                    del self._stragglers[task_name]
                    continue
                return task_name
        return None

    def _execute(self, *, run_migration: bool | None) -> RunReport:
        run_id = uuid4().hex
        context_tokens = bind_contextvars(maintenance_run_id=run_id)
        start_time = self._clock()
        started_at = time.perf_counter()
        memory_before = _resident_memory_mb()
        if self._database is not None:
            self._database.reset_statement_count()
        self._telemetry.emit("maintenance.run.start", run_id=run_id)
        LOGGER.info("maintenance run started run_id=%s", run_id)

        try:
            tasks: list[tuple[str, Callable[[], str]]] = [
                (TASK_ARTIFACT_REFRESH, self._refresh_artifact),
                (TASK_CACHE_CLEANUP_EXPIRED, self._cleanup_expired),
                (TASK_CACHE_VALIDATE_SIZE, self._validate_size),
                (TASK_CACHE_MIGRATE_LEGACY, lambda: self._migrate_legacy(run_migration)),
                (TASK_LIVE_CHANNELS_REFRESH, self._refresh_live_channels),
            ]
            outcomes = tuple(self._run_task(run_id, name, task) for name, task in tasks)

            memory_after = _resident_memory_mb()
            memory_used = (
                round(memory_after - memory_before, 2)
                if memory_before is not None and memory_after is not None
                else None
            )
            report = RunReport(
                run_id=run_id,
                start_time=start_time,
                end_time=self._clock(),
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                memory_used_mb=memory_used,
                db_queries=self._database.statement_count if self._database is not None else 0,
                tasks=outcomes,
            )
            self._telemetry.emit(
                "maintenance.run.finish",
                run_id=run_id,
                duration_ms=report.duration_ms,
                db_queries=report.db_queries,
                failed_tasks=len(report.failed_tasks),
            )
            LOGGER.info(
                "maintenance run finished run_id=%s duration_ms=%s failed=%s",
                run_id,
                report.duration_ms,
                ",".join(report.failed_tasks) or "none",
            )
            return report
        finally:
            reset_contextvars(**context_tokens)

    def _run_task(self, run_id: str, name: str, task: Callable[[], str]) -> TaskOutcome:
        started_at = time.perf_counter()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"vodkeep-{name}")
        status: TaskStatus
        future: Future[str] | None = None
        try:
            blocking = self._running_straggler(name)
            if blocking is not None:
                LOGGER.warning(
                    "maintenance task skipped task=%s blocking_worker=%s", name, blocking
                )
                raise TaskSkipped(f"previous {blocking} worker still running")
            future = executor.submit(task)
            detail = future.result(timeout=self._task_timeout_seconds)
            status = "success"
        except TaskSkipped as exc:
            status, detail = "skipped", str(exc)
        except TimeoutError:
            status, detail = "failed", f"timed out after {self._task_timeout_seconds}s"
            LOGGER.warning("maintenance task timed out task=%s", name)
            if future is not None:
                with self._state_lock:
                    self._stragglers[name] = future
        except TaskFailed as exc:
            status, detail = "failed", str(exc)
            LOGGER.warning("maintenance task failed task=%s detail=%s", name, detail)
        except Exception as exc:
            status, detail = "failed", f"{type(exc).__name__}: {exc}"
            LOGGER.warning("maintenance task failed task=%s", name, exc_info=True)
        finally:
            # A timed-out worker keeps running detached and is tracked in _stragglers.
            executor.shutdown(wait=False, cancel_futures=True)

        duration_ms = int((time.perf_counter() - started_at) * 1000)
        self._telemetry.emit(
            f"maintenance.task.{status}",
            run_id=run_id,
            task=name,
            duration_ms=duration_ms,
        )
        return TaskOutcome(name=name, status=status, detail=detail, duration_ms=duration_ms)

    def _refresh_artifact(self) -> str:
        record = self._resolver.resolve(force_refresh=True)
        summary = f"tier={record.source_tier} source={record.source} size={record.size}"
        if not record.success:
            raise TaskFailed(f"all artifact sources failed; {summary}")
        return f"{summary} checksum={record.checksum}"

    def _cleanup_expired(self) -> str:
        try:
            removed = self._cache_store.cleanup_expired()
        except StorageUnsupported as exc:
            raise TaskSkipped(f"unsupported: {exc}") from exc
        return f"removed={removed}"

    def _validate_size(self) -> str:
        try:
            evicted = self._cache_store.validate_size()
            stats = self._cache_store.stats()
        except StorageUnsupported as exc:
            raise TaskSkipped(f"unsupported: {exc}") from exc
        return f"evicted={evicted} total_size={stats.total_size} max_size={stats.max_size}"

    def _migrate_legacy(self, run_migration: bool | None) -> str:
        if run_migration is None:
            run_migration = self._migrate_on_first_run and not self._migration_completed
        if not run_migration:
            raise TaskSkipped("not requested for this run")
        try:
            migrated = self._cache_store.migrate_legacy()
        except StorageUnsupported as exc:
            raise TaskSkipped(f"unsupported: {exc}") from exc
        self._migration_completed = True
        return f"migrated={migrated}"

    def _refresh_live_channels(self) -> str:
        if self._live_channels is None:
            raise TaskSkipped("no live sources configured")
        counts = self._live_channels.refresh_all()
        if not counts:
            raise TaskSkipped("no live sources configured")
        failed = sorted(key for key, count in counts.items() if count == 0)
        detail = (
            f"sources={len(counts)} channels={sum(counts.values())} "
            f"empty={','.join(failed) or 'none'}"
        )
        if len(failed) == len(counts):
            raise TaskFailed(detail)
        return detail


def _resident_memory_mb() -> float | None:
    try:
        with open("/proc/self/statm", encoding="ascii") as handle:
            resident_pages = int(handle.read().split()[1])
    except (OSError, ValueError, IndexError):
        return None
    return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
