from __future__ import annotations

import io
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from vodkeep.app.dependencies import reset_cached_dependencies
from vodkeep.app.main import create_app

CANDIDATE_URLS = (
    "https://mirror-a.example/jar/custom_spider.jar",
    "https://mirror-b.example/jar/custom_spider.jar",
)


def _build_jar(marker: str = "spider", *, padding: int = 4096) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
        info = zipfile.ZipInfo("META-INF/MANIFEST.MF", date_time=(2024, 1, 1, 0, 0, 0))
        archive.writestr(info, f"Manifest-Version: 1.0\nMarker: {marker}\n\n")
        archive.writestr(
            zipfile.ZipInfo("assets/padding.bin", date_time=(2024, 1, 1, 0, 0, 0)),
            b"\x00" * padding,
        )
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    monkeypatch.setenv("VODKEEP_ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("VODKEEP_TELEMETRY_ENABLED", "0")
    monkeypatch.setenv("VODKEEP_ARTIFACT_CANDIDATE_URLS", ",".join(CANDIDATE_URLS))
    monkeypatch.setenv("VODKEEP_ARTIFACT_FETCH_RETRIES", "0")


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    runtime_dir = tmp_path / "runtime-data"
    runtime_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("VODKEEP_DATA_DIR", str(runtime_dir))
    return runtime_dir


@pytest.fixture
def client(data_dir: Path) -> Iterator[TestClient]:
    _ = data_dir
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()


@pytest.fixture
def make_jar() -> Callable[..., bytes]:
    return _build_jar
