from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, cast

import pytest

from vodkeep.app.config import DEFAULT_ARTIFACT_CANDIDATE_URLS, load_settings
from vodkeep.app.services.maintenance_service import RunSkipped
from vodkeep.app.services.scheduler_service import SchedulerService


class _FakeMaintenance:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail
        self.ran = threading.Event()

    def run_once(self) -> RunSkipped:
        self.calls += 1
        self.ran.set()
        if self.fail:
            raise RuntimeError("boom")
        return RunSkipped()


def test_scheduler_service_runs_maintenance() -> None:
    maintenance = _FakeMaintenance()
    scheduler = SchedulerService(maintenance=cast(Any, maintenance), interval_seconds=1)

    assert scheduler.start() is True
    assert maintenance.ran.wait(timeout=3)
    scheduler.stop()

    assert maintenance.calls >= 1
    assert scheduler.running is False


def test_scheduler_service_survives_failed_run() -> None:
    maintenance = _FakeMaintenance(fail=True)
    scheduler = SchedulerService(maintenance=cast(Any, maintenance), interval_seconds=1)

    scheduler.start()
    time.sleep(1.3)
    scheduler.stop()

    assert maintenance.calls >= 2


def test_scheduler_service_waits_initial_delay() -> None:
    maintenance = _FakeMaintenance()
    scheduler = SchedulerService(
        maintenance=cast(Any, maintenance),
        interval_seconds=60,
        initial_delay_seconds=0.5,
    )

    scheduler.start()
    try:
        assert maintenance.ran.wait(timeout=0.2) is False
        assert maintenance.ran.wait(timeout=3)
    finally:
        scheduler.stop()

    assert maintenance.calls == 1


def test_scheduler_process_lock_allows_single_instance(tmp_path: Path) -> None:
    lock_path = tmp_path / "maintenance.lock"
    first = SchedulerService(
        maintenance=cast(Any, _FakeMaintenance()),
        interval_seconds=60,
        initial_delay_seconds=60,
        lock_path=lock_path,
    )
    second = SchedulerService(
        maintenance=cast(Any, _FakeMaintenance()),
        interval_seconds=60,
        initial_delay_seconds=60,
        lock_path=lock_path,
    )

    try:
        assert first.start() is True
        assert second.start() is False
        assert lock_path.read_text(encoding="utf-8").strip().isdigit()
    finally:
        first.stop()
        second.stop()

    third = SchedulerService(
        maintenance=cast(Any, _FakeMaintenance()),
        interval_seconds=60,
        initial_delay_seconds=60,
        lock_path=lock_path,
    )
    try:
        assert third.start() is True
    finally:
        third.stop()


def test_load_settings_defaults(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("VODKEEP_ARTIFACT_CANDIDATE_URLS", raising=False)
    monkeypatch.delenv("VODKEEP_ARTIFACT_FETCH_RETRIES", raising=False)

    settings = load_settings()

    assert settings.data_dir == data_dir.resolve()
    assert settings.db_path == data_dir.resolve() / "state.db"
    assert settings.object_store_dir == data_dir.resolve() / "objects"
    assert settings.log_dir == data_dir.resolve() / "logs"
    assert settings.artifact_candidate_urls == list(DEFAULT_ARTIFACT_CANDIDATE_URLS)
    assert settings.artifact_memory_ttl_seconds == 14_400
    assert settings.artifact_fetch_retries == 2
    assert settings.artifact_min_bytes == 1_000
    assert settings.artifact_max_bytes == 50 * 1024 * 1024
    assert settings.artifact_required_magic == "PK"
    assert settings.health_probe_timeout_seconds == 10.0
    assert settings.video_cache_backend == "sqlite"
    assert settings.migrate_legacy_on_startup is True
    assert settings.scheduler_enabled is False
    assert settings.maintenance_initial_delay_seconds == 30.0


def test_load_settings_parses_env_values(
    data_dir: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _ = data_dir
    custom_db = tmp_path / "elsewhere" / "cache.db"
    monkeypatch.setenv("VODKEEP_ENABLE_SCHEDULER", "yes")
    monkeypatch.setenv("VODKEEP_DB_PATH", str(custom_db))
    monkeypatch.setenv(
        "VODKEEP_ARTIFACT_CANDIDATE_URLS",
        '["https://one.example/a.jar", "https://two.example/b.jar"]',
    )
    monkeypatch.setenv("VODKEEP_ARTIFACT_REQUIRED_MAGIC", "")
    monkeypatch.setenv("VODKEEP_MIGRATE_LEGACY_ON_STARTUP", "off")
    monkeypatch.setenv("VODKEEP_VIDEO_CACHE_BACKEND", " NONE ")
    monkeypatch.setenv(
        "VODKEEP_LIVE_SOURCES",
        '{"cctv": "https://live.example/cctv.m3u", '
        '"tv": {"url": "https://live.example/tv.m3u", "ua": "okhttp/4.1", '
        '"epg": "https://epg.example/tv.xml"}}',
    )
    monkeypatch.setenv("VODKEEP_MAINTENANCE_INTERVAL_SECONDS", "900")
    monkeypatch.setenv("VODKEEP_MAINTENANCE_INITIAL_DELAY_SECONDS", "5")
    monkeypatch.setenv("VODKEEP_LOG_FILE_MAX_BYTES", "2048")
    monkeypatch.setenv("VODKEEP_TELEMETRY_SINK", "LOG")

    settings = load_settings()

    assert settings.scheduler_enabled is True
    assert settings.db_path == custom_db.resolve()
    assert settings.artifact_candidate_urls == [
        "https://one.example/a.jar",
        "https://two.example/b.jar",
    ]
    assert settings.artifact_required_magic is None
    assert settings.migrate_legacy_on_startup is False
    assert settings.video_cache_backend == "none"
    assert settings.live_sources["cctv"].url == "https://live.example/cctv.m3u"
    assert settings.live_sources["cctv"].ua is None
    assert settings.live_sources["tv"].ua == "okhttp/4.1"
    assert settings.live_sources["tv"].epg == "https://epg.example/tv.xml"
    assert settings.maintenance_interval_seconds == 900
    assert settings.maintenance_initial_delay_seconds == 5.0
    assert settings.log_file_max_bytes == 2048
    assert settings.telemetry_sink == "log"


def test_load_settings_accepts_comma_separated_candidates(
    data_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _ = data_dir
    monkeypatch.setenv(
        "VODKEEP_ARTIFACT_CANDIDATE_URLS",
        " https://one.example/a.jar , https://two.example/b.jar,",
    )

    settings = load_settings()

    assert settings.artifact_candidate_urls == [
        "https://one.example/a.jar",
        "https://two.example/b.jar",
    ]


def test_load_settings_rejects_non_http_candidates(
    data_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _ = data_dir
    monkeypatch.setenv("VODKEEP_ARTIFACT_CANDIDATE_URLS", "ftp://one.example/a.jar")

    with pytest.raises(ValueError):
        load_settings()


def test_load_settings_rejects_inverted_artifact_bounds(
    data_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _ = data_dir
    monkeypatch.setenv("VODKEEP_ARTIFACT_MIN_BYTES", "5000")
    monkeypatch.setenv("VODKEEP_ARTIFACT_MAX_BYTES", "4000")

    with pytest.raises(ValueError, match="ARTIFACT_MIN_BYTES"):
        load_settings()


def test_load_settings_rejects_unknown_cache_backend(
    data_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _ = data_dir
    monkeypatch.setenv("VODKEEP_VIDEO_CACHE_BACKEND", "redis")

    with pytest.raises(ValueError):
        load_settings()
