from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".vodkeep"
VIDEO_CACHE_BACKENDS: frozenset[str] = frozenset({"sqlite", "none"})
DEFAULT_ARTIFACT_CANDIDATE_URLS: tuple[str, ...] = (
    "https://raw.githubusercontent.com/FongMi/CatVodSpider/main/jar/custom_spider.jar",
    "https://raw.githubusercontent.com/qlql765/CatVodTVSpider-by-zhixc/main/jar/custom_spider.jar",
    "https://raw.githubusercontent.com/gaotianliuyun/gao/master/jar/custom_spider.jar",
    "https://gh-proxy.com/https://raw.githubusercontent.com/FongMi/CatVodSpider/main/jar/custom_spider.jar",
    "https://cors.isteed.cc/github.com/FongMi/CatVodSpider/raw/main/jar/custom_spider.jar",
    "https://hub.gitmirror.com/raw.githubusercontent.com/FongMi/CatVodSpider/main/jar/custom_spider.jar",
)
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("object_store_dir", Path("objects")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "object_store_enabled",
    "migrate_legacy_on_startup",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{VODKEEP_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


class LiveSourceSettings(BaseModel):
    url: str
    ua: str | None = None
    epg: str | None = None


def _normalize_url_list(value: Any) -> Any:
    # Comma separated env values are accepted alongside JSON lists.
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            return json.loads(stripped)
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return value


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `VODKEEP_*` environment variables (or `.env`)
    and documents what it controls and its default.
    """

    model_config = SettingsConfigDict(
        env_prefix="VODKEEP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state, logs, and stored artifacts.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # Maintenance scheduling.
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="VODKEEP_ENABLE_SCHEDULER",
        description="Run maintenance periodically from a background thread.",
    )
    maintenance_interval_seconds: int = Field(
        default=3_600,
        ge=1,
        description="Cadence of the background maintenance loop.",
    )
    maintenance_initial_delay_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Wait before the first background maintenance run after startup.",
    )
    maintenance_task_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound for a single maintenance task before the run moves on.",
    )
    migrate_legacy_on_startup: bool = Field(
        default=True,
        description=(
            "Run legacy video-cache migration on the first maintenance pass of each "
            "process. When disabled migration only runs on demand."
        ),
    )

    # Spider artifact resolution.
    artifact_candidate_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ARTIFACT_CANDIDATE_URLS),
        description="Remote artifact sources, tried strictly in this order.",
    )
    artifact_memory_ttl_seconds: int = Field(
        default=4 * 60 * 60,
        ge=0,
        description="How long a successfully resolved artifact is served from memory.",
    )
    artifact_fetch_timeout_seconds: float = Field(
        default=12.0,
        gt=0,
        description="Timeout for a single artifact download attempt.",
    )
    artifact_fetch_retries: int = Field(
        default=2,
        ge=0,
        le=5,
        description="Extra attempts per remote candidate on transport errors or 5xx.",
    )
    artifact_min_bytes: int = Field(
        default=1_000,
        ge=1,
        description="Payloads smaller than this are rejected as broken downloads.",
    )
    artifact_max_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1,
        description="Payloads larger than this are rejected.",
    )
    artifact_required_magic: str | None = Field(
        default="PK",
        description="Required payload prefix (ZIP header). Empty disables the check.",
    )
    object_store_enabled: bool = Field(
        default=False,
        description="Persist resolved artifacts to the durable object store.",
    )
    object_store_dir: Path = Field(
        default=_default_in_data_dir(Path("objects")),
        description=f"Object store root. {_data_dir_default_note(Path('objects'))}",
    )

    # Health probe.
    health_probe_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for artifact URL health probes.",
    )

    # Video cache.
    video_cache_backend: Literal["sqlite", "none"] = Field(
        default="sqlite",
        description="Storage backend for the video cache. `none` disables cache maintenance.",
    )
    video_cache_max_bytes: int = Field(
        default=2 * 1024 * 1024 * 1024,
        ge=1,
        description="Byte ceiling for the video cache, enforced by eviction.",
    )
    video_cache_ttl_seconds: int = Field(
        default=12 * 60 * 60,
        ge=1,
        description="Lifetime of a cached video payload.",
    )

    # Live channels.
    live_sources: dict[str, LiveSourceSettings] = Field(
        default_factory=dict,
        description=(
            "Live M3U playlists keyed by source key (JSON object). Values are a playlist "
            "URL or an object with `url` and optional `ua` and `epg` overrides."
        ),
    )
    live_user_agent: str = Field(
        default="AptvPlayer/1.4.10",
        description="User-Agent sent when fetching live playlists.",
    )
    live_fetch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single live playlist download.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )
    log_file_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=0,
        description="Rotate log files past this size; 0 disables rotation.",
    )
    log_file_backup_count: int = Field(
        default=5,
        ge=0,
        description="Rotated log files kept per log.",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("video_cache_backend", mode="before")
    @classmethod
    def _normalize_video_cache_backend(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VODKEEP_VIDEO_CACHE_BACKEND must be a string.")
        normalized = value.strip().lower()
        if normalized in VIDEO_CACHE_BACKENDS:
            return normalized
        raise ValueError("VODKEEP_VIDEO_CACHE_BACKEND must be set to: sqlite, none.")

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("VODKEEP_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("VODKEEP_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("artifact_candidate_urls", mode="before")
    @classmethod
    def _normalize_candidate_urls(cls, value: Any) -> Any:
        return _normalize_url_list(value)

    @field_validator("artifact_candidate_urls")
    @classmethod
    def _require_http_candidates(cls, value: list[str]) -> list[str]:
        for url in value:
            if not url.startswith(("http://", "https://")):
                raise ValueError(
                    f"VODKEEP_ARTIFACT_CANDIDATE_URLS entries must be http(s) URLs: {url}"
                )
        return value

    @field_validator("live_sources", mode="before")
    @classmethod
    def _normalize_live_sources(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {
            key: {"url": source} if isinstance(source, str) else source
            for key, source in value.items()
        }

    @field_validator("artifact_required_magic", mode="before")
    @classmethod
    def _normalize_magic(cls, value: Any) -> str | None:
        if value is None or not isinstance(value, str):
            return None
        return value or None

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _validate_artifact_bounds(settings: AppSettings) -> None:
    if settings.artifact_min_bytes > settings.artifact_max_bytes:
        raise ValueError(
            "Invalid artifact configuration: VODKEEP_ARTIFACT_MIN_BYTES must not exceed "
            "VODKEEP_ARTIFACT_MAX_BYTES."
        )


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)
    _validate_artifact_bounds(settings)
    return settings
