from __future__ import annotations

from functools import lru_cache

from vodkeep.app.config import AppSettings, load_settings
from vodkeep.app.repositories.database import Database
from vodkeep.app.repositories.video_cache_repository import VideoCacheRepository
from vodkeep.app.services.artifact_resolver import ArtifactResolver, build_artifact_resolver
from vodkeep.app.services.health_probe import HealthProbe
from vodkeep.app.services.live_channel_service import LiveChannelService, LiveSource
from vodkeep.app.services.maintenance_service import MaintenanceScheduler
from vodkeep.app.services.object_store import FileObjectStore
from vodkeep.app.services.video_cache_store import BoundedCacheStore
from vodkeep.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_artifact_resolver() -> ArtifactResolver:
    settings = get_settings()
    object_store = (
        FileObjectStore(settings.object_store_dir) if settings.object_store_enabled else None
    )
    return build_artifact_resolver(
        candidate_urls=settings.artifact_candidate_urls,
        memory_ttl_seconds=settings.artifact_memory_ttl_seconds,
        fetch_timeout_seconds=settings.artifact_fetch_timeout_seconds,
        fetch_retries=settings.artifact_fetch_retries,
        min_bytes=settings.artifact_min_bytes,
        max_bytes=settings.artifact_max_bytes,
        required_magic=settings.artifact_required_magic,
        object_store=object_store,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_cache_store() -> BoundedCacheStore:
    settings = get_settings()
    repository = (
        VideoCacheRepository(get_database()) if settings.video_cache_backend == "sqlite" else None
    )
    return BoundedCacheStore(
        repository,
        max_size_bytes=settings.video_cache_max_bytes,
        ttl_seconds=settings.video_cache_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_health_probe() -> HealthProbe:
    return HealthProbe(timeout_seconds=get_settings().health_probe_timeout_seconds)


@lru_cache(maxsize=1)
def get_live_channels() -> LiveChannelService:
    settings = get_settings()
    sources = {
        key: LiveSource(url=source.url, user_agent=source.ua, epg_url=source.epg)
        for key, source in settings.live_sources.items()
    }
    return LiveChannelService(
        sources,
        user_agent=settings.live_user_agent,
        timeout_seconds=settings.live_fetch_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_maintenance_scheduler() -> MaintenanceScheduler:
    settings = get_settings()
    return MaintenanceScheduler(
        resolver=get_artifact_resolver(),
        cache_store=get_cache_store(),
        live_channels=get_live_channels(),
        database=get_database(),
        task_timeout_seconds=settings.maintenance_task_timeout_seconds,
        migrate_on_first_run=settings.migrate_legacy_on_startup,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    if get_artifact_resolver.cache_info().currsize:
        get_artifact_resolver().close()
    get_maintenance_scheduler.cache_clear()
    get_live_channels.cache_clear()
    get_health_probe.cache_clear()
    get_cache_store.cache_clear()
    get_artifact_resolver.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
