from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.error import URLError

import pytest
from fastapi.testclient import TestClient

from vodkeep.app import main as main_module
from vodkeep.app.dependencies import reset_cached_dependencies
from vodkeep.app.main import create_app
from vodkeep.app.services import artifact_resolver as artifact_module
from vodkeep.app.services import health_probe as probe_module
from vodkeep.app.services.health_probe import HeadResponse

URL_A = "https://mirror-a.example/jar/custom_spider.jar"


@contextmanager
def _configured_client(
    data_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    *,
    video_cache_backend: str = "sqlite",
) -> Iterator[TestClient]:
    monkeypatch.setenv("VODKEEP_DATA_DIR", str(data_dir))
    monkeypatch.setenv("VODKEEP_VIDEO_CACHE_BACKEND", video_cache_backend)
    reset_cached_dependencies()
    try:
        with TestClient(create_app()) as test_client:
            yield test_client
    finally:
        reset_cached_dependencies()


def _serve_jar(monkeypatch: pytest.MonkeyPatch, payload: bytes) -> list[str]:
    calls: list[str] = []

    def fake_download(url: str, *, timeout_seconds: float, max_bytes: int) -> bytes:
        _ = (timeout_seconds, max_bytes)
        calls.append(url)
        if url != URL_A:
            raise URLError("unreachable")
        return payload

    monkeypatch.setattr(artifact_module, "_download", fake_download)
    return calls


def _fail_downloads(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_download(url: str, *, timeout_seconds: float, max_bytes: int) -> bytes:
        _ = (url, timeout_seconds, max_bytes)
        raise URLError("unreachable")

    monkeypatch.setattr(artifact_module, "_download", fake_download)


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_artifact_endpoint_serves_remote_then_cached(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    make_jar: Callable[..., bytes],
) -> None:
    jar = make_jar("api")
    calls = _serve_jar(monkeypatch, jar)

    first = client.get("/artifact")
    second = client.get("/artifact")

    assert first.status_code == 200
    assert first.content == jar
    assert first.headers["content-type"] == "application/java-archive"
    assert first.headers["X-Artifact-Tier"] == "remote"
    assert first.headers["X-Artifact-Source"] == URL_A
    assert first.headers["X-Artifact-Success"] == "true"
    assert first.headers["X-Artifact-Cached"] == "false"
    assert second.headers["X-Artifact-Cached"] == "true"
    assert second.headers["X-Artifact-Checksum"] == first.headers["X-Artifact-Checksum"]
    assert calls == [URL_A]

    refreshed = client.get("/artifact", params={"refresh": "1"})
    assert refreshed.headers["X-Artifact-Cached"] == "false"
    assert calls == [URL_A, URL_A]


def test_artifact_endpoint_degrades_to_fallback(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _fail_downloads(monkeypatch)

    response = client.get("/artifact")

    assert response.status_code == 200
    assert response.content.startswith(b"PK")
    assert response.headers["X-Artifact-Tier"] == "embedded_fallback"
    assert response.headers["X-Artifact-Success"] == "false"


def test_artifact_status_requires_prior_resolution(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    make_jar: Callable[..., bytes],
) -> None:
    assert client.get("/artifact/status").status_code == 404

    _serve_jar(monkeypatch, make_jar("status"))
    client.get("/artifact")
    response = client.get("/artifact/status")

    assert response.status_code == 200
    body = response.json()
    assert body["source_tier"] == "remote"
    assert body["success"] is True
    assert body["tried"] == 1


def test_artifact_health_requires_url(client: TestClient) -> None:
    response = client.get("/artifact/health")
    assert response.status_code == 400
    assert "url" in response.json()["detail"]


def test_artifact_health_probes_url(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_head(url: str, *, timeout_seconds: float) -> HeadResponse:
        assert url == "https://x.example/spider.jar"
        assert timeout_seconds == 10.0
        return HeadResponse(status_code=200, headers={"Content-Length": "4096"})

    monkeypatch.setattr(probe_module, "_head", fake_head)

    response = client.get(
        "/artifact/health",
        params={"url": "https://x.example/spider.jar;abcdef"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["accessible"] is True
    assert body["content_length"] == 4096
    assert body["url"] == "https://x.example/spider.jar"


def test_maintenance_run_and_status(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    make_jar: Callable[..., bytes],
) -> None:
    _serve_jar(monkeypatch, make_jar("maintenance"))

    missing = client.get("/maintenance/status")
    assert missing.status_code == 404

    run = client.post("/maintenance/run")
    assert run.status_code == 200
    body = run.json()
    assert body["success"] is True
    assert body["skipped"] is False
    stats = body["stats"]
    assert [task["name"] for task in stats["tasks"]] == [
        "artifact_refresh",
        "cache_cleanup_expired",
        "cache_validate_size",
        "cache_migrate_legacy",
        "live_channels_refresh",
    ]
    statuses = {task["name"]: task["status"] for task in stats["tasks"]}
    assert statuses["artifact_refresh"] == "success"
    assert statuses["cache_migrate_legacy"] == "success"
    assert statuses["live_channels_refresh"] == "skipped"
    assert stats["duration"] >= 0
    assert stats["db_queries"] > 0

    status = client.get("/maintenance/status")
    assert status.status_code == 200
    assert status.json()["stats"]["run_id"] == stats["run_id"]

    again = client.post("/maintenance/run")
    again_statuses = {task["name"]: task["status"] for task in again.json()["stats"]["tasks"]}
    assert again_statuses["cache_migrate_legacy"] == "skipped"

    forced = client.post("/maintenance/run", params={"migrate": "1"})
    forced_statuses = {task["name"]: task["status"] for task in forced.json()["stats"]["tasks"]}
    assert forced_statuses["cache_migrate_legacy"] == "success"


def test_maintenance_run_reports_failed_artifact_refresh(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _fail_downloads(monkeypatch)

    body = client.post("/maintenance/run").json()

    assert body["success"] is True
    assert "artifact_refresh" in body["message"]
    assert body["stats"]["tasks"][0]["status"] == "failed"


def test_video_cache_stats_and_cleanup(client: TestClient) -> None:
    stats = client.get("/video-cache/stats")
    assert stats.status_code == 200
    assert stats.json()["total_size"] == 0
    assert stats.json()["file_count"] == 0
    assert stats.json()["usage_percent"] == 0.0

    cleanup = client.post("/video-cache/cleanup")
    assert cleanup.status_code == 200
    assert cleanup.json()["removed"] == 0
    assert cleanup.json()["evicted"] == 0


def test_video_cache_unsupported_backend(
    data_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    with _configured_client(data_dir, monkeypatch, video_cache_backend="none") as client:
        stats = client.get("/video-cache/stats")
        cleanup = client.post("/video-cache/cleanup")

    assert stats.status_code == 400
    assert stats.json()["unsupported"] is True
    assert cleanup.status_code == 400
    assert cleanup.json()["unsupported"] is True


def test_lifespan_starts_scheduler_with_configured_delay(
    data_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    started: list[dict[str, object]] = []
    stopped: list[bool] = []

    class _RecordingScheduler:
        def __init__(self, **kwargs: object) -> None:
            started.append(kwargs)

        def start(self) -> bool:
            return True

        def stop(self) -> None:
            stopped.append(True)

    monkeypatch.setattr(main_module, "SchedulerService", _RecordingScheduler)
    monkeypatch.setenv("VODKEEP_ENABLE_SCHEDULER", "1")
    monkeypatch.setenv("VODKEEP_MAINTENANCE_INTERVAL_SECONDS", "600")
    monkeypatch.setenv("VODKEEP_MAINTENANCE_INITIAL_DELAY_SECONDS", "45")

    with _configured_client(data_dir, monkeypatch) as client:
        assert client.get("/health").status_code == 200

    assert len(started) == 1
    assert started[0]["interval_seconds"] == 600
    assert started[0]["initial_delay_seconds"] == 45.0
    assert started[0]["lock_path"] == data_dir.resolve() / "maintenance.lock"
    assert stopped == [True]
