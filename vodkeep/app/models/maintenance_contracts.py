from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from vodkeep.app.services.health_probe import ProbeResult
from vodkeep.app.services.maintenance_service import RunReport, TaskOutcome
from vodkeep.app.services.video_cache_store import CacheStats


class MaintenanceTaskResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    status: Literal["success", "failed", "skipped"]
    detail: str
    duration_ms: int

    @classmethod
    def from_outcome(cls, outcome: TaskOutcome) -> MaintenanceTaskResult:
        return cls(
            name=outcome.name,
            status=outcome.status,
            detail=outcome.detail,
            duration_ms=outcome.duration_ms,
        )


class MaintenanceStats(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    start_time: str
    end_time: str
    duration: int = Field(description="Run duration in milliseconds.")
    duration_seconds: float
    memory_used: float | None = Field(
        default=None,
        description="Resident memory delta across the run in MB, when measurable.",
    )
    db_queries: int
    tasks: list[MaintenanceTaskResult]

    @classmethod
    def from_report(cls, report: RunReport) -> MaintenanceStats:
        return cls(
            run_id=report.run_id,
            start_time=report.start_time.isoformat(),
            end_time=report.end_time.isoformat(),
            duration=report.duration_ms,
            duration_seconds=report.duration_seconds,
            memory_used=report.memory_used_mb,
            db_queries=report.db_queries,
            tasks=[MaintenanceTaskResult.from_outcome(task) for task in report.tasks],
        )


class MaintenanceRunResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str
    skipped: bool = False
    stats: MaintenanceStats | None = None

    @classmethod
    def from_report(cls, report: RunReport) -> MaintenanceRunResponse:
        failed = report.failed_tasks
        message = (
            "maintenance completed"
            if not failed
            else f"maintenance completed with failed tasks: {', '.join(failed)}"
        )
        return cls(success=True, message=message, stats=MaintenanceStats.from_report(report))


class ArtifactStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_tier: str
    source: str
    size: int
    checksum: str
    success: bool
    cached: bool
    resolved_at: str
    tried: int


class ProbeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    accessible: bool
    checked_at: str
    status_code: int | None = None
    content_type: str | None = None
    content_length: int | None = None
    last_modified: str | None = None
    error: str | None = None

    @classmethod
    def from_result(cls, result: ProbeResult) -> ProbeResponse:
        return cls.model_validate(result.to_dict())


class CacheStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool = True
    total_size: int
    file_count: int
    max_size: int
    usage_percent: float
    removed: int | None = None
    evicted: int | None = None

    @classmethod
    def from_stats(
        cls,
        stats: CacheStats,
        *,
        removed: int | None = None,
        evicted: int | None = None,
    ) -> CacheStatsResponse:
        return cls(
            total_size=stats.total_size,
            file_count=stats.file_count,
            max_size=stats.max_size,
            usage_percent=stats.usage_percent,
            removed=removed,
            evicted=evicted,
        )
