from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from vodkeep.app.dependencies import (
    get_artifact_resolver,
    get_cache_store,
    get_health_probe,
    get_maintenance_scheduler,
)
from vodkeep.app.models.maintenance_contracts import (
    ArtifactStatusResponse,
    CacheStatsResponse,
    MaintenanceRunResponse,
    ProbeResponse,
)
from vodkeep.app.services.artifact_resolver import ARTIFACT_CONTENT_TYPE, ArtifactResolver
from vodkeep.app.services.health_probe import HealthProbe
from vodkeep.app.services.maintenance_service import MaintenanceScheduler, RunSkipped
from vodkeep.app.services.video_cache_store import BoundedCacheStore, StorageUnsupported

router = APIRouter()


def _unsupported_response(exc: StorageUnsupported) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "unsupported": True, "message": str(exc)},
    )


def _flag(value: str | None) -> bool:
    return value is not None and value.strip().lower() in {"1", "true", "yes", "on"}


@router.post(
    "/maintenance/run",
    response_model=MaintenanceRunResponse,
    tags=["maintenance"],
    operation_id="maintenance_run",
)
def maintenance_run(
    scheduler: Annotated[MaintenanceScheduler, Depends(get_maintenance_scheduler)],
    migrate: Annotated[str | None, Query(description="Set to 1 to force legacy migration.")] = None,
) -> MaintenanceRunResponse:
    result = scheduler.run_once(run_migration=True if _flag(migrate) else None)
    if isinstance(result, RunSkipped):
        return MaintenanceRunResponse(success=False, skipped=True, message=result.reason)
    return MaintenanceRunResponse.from_report(result)


@router.get(
    "/maintenance/status",
    response_model=MaintenanceRunResponse,
    tags=["maintenance"],
    operation_id="maintenance_status",
)
def maintenance_status(
    scheduler: Annotated[MaintenanceScheduler, Depends(get_maintenance_scheduler)],
) -> MaintenanceRunResponse:
    report = scheduler.last_report()
    if report is None:
        raise HTTPException(status_code=404, detail="No maintenance run has completed yet.")
    return MaintenanceRunResponse.from_report(report)


@router.get("/artifact", tags=["artifact"], operation_id="artifact_get")
def artifact_get(
    resolver: Annotated[ArtifactResolver, Depends(get_artifact_resolver)],
    refresh: Annotated[str | None, Query(description="Set to 1 to bypass memory.")] = None,
    url: Annotated[str | None, Query(description="Override source URL.")] = None,
) -> Response:
    record = resolver.resolve(force_refresh=_flag(refresh), override_url=url)
    return Response(
        content=record.payload,
        media_type=ARTIFACT_CONTENT_TYPE,
        headers={
            "Cache-Control": "no-cache",
            "X-Artifact-Source": record.source,
            "X-Artifact-Tier": record.source_tier,
            "X-Artifact-Success": "true" if record.success else "false",
            "X-Artifact-Cached": "true" if record.cached else "false",
            "X-Artifact-Checksum": record.checksum,
        },
    )


@router.get(
    "/artifact/status",
    response_model=ArtifactStatusResponse,
    tags=["artifact"],
    operation_id="artifact_status",
)
def artifact_status(
    resolver: Annotated[ArtifactResolver, Depends(get_artifact_resolver)],
) -> ArtifactStatusResponse:
    status = resolver.status()
    if status is None:
        raise HTTPException(status_code=404, detail="Artifact has not been resolved yet.")
    return ArtifactStatusResponse.model_validate(status)


@router.get(
    "/artifact/health",
    response_model=ProbeResponse,
    tags=["artifact"],
    operation_id="artifact_health",
)
def artifact_health(
    probe: Annotated[HealthProbe, Depends(get_health_probe)],
    url: Annotated[str | None, Query(description="URL to probe.")] = None,
) -> ProbeResponse:
    if url is None or not url.strip():
        raise HTTPException(status_code=400, detail="Missing required query parameter: url")
    return ProbeResponse.from_result(probe.probe(url))


@router.get(
    "/video-cache/stats",
    response_model=CacheStatsResponse,
    tags=["video-cache"],
    operation_id="video_cache_stats",
)
def video_cache_stats(
    store: Annotated[BoundedCacheStore, Depends(get_cache_store)],
) -> CacheStatsResponse | JSONResponse:
    try:
        return CacheStatsResponse.from_stats(store.stats())
    except StorageUnsupported as exc:
        return _unsupported_response(exc)


@router.post(
    "/video-cache/cleanup",
    response_model=CacheStatsResponse,
    tags=["video-cache"],
    operation_id="video_cache_cleanup",
)
def video_cache_cleanup(
    store: Annotated[BoundedCacheStore, Depends(get_cache_store)],
    scheduler: Annotated[MaintenanceScheduler, Depends(get_maintenance_scheduler)],
) -> CacheStatsResponse | JSONResponse:
    try:
        result = scheduler.run_cache_cleanup()
        if isinstance(result, RunSkipped):
            return JSONResponse(
                status_code=409,
                content={"success": False, "skipped": True, "message": result.reason},
            )
        removed, evicted = result
        return CacheStatsResponse.from_stats(store.stats(), removed=removed, evicted=evicted)
    except StorageUnsupported as exc:
        return _unsupported_response(exc)
