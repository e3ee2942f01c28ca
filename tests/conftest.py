from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import reset_cached_dependencies
from backend.app.main import create_app
from backend.app.repositories.database import Database
from backend.app.repositories.video_repository import VideoRepository


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    for name in (
        "VIBE_DIGEST_YOUTUBE_API_KEY",
        "VIBE_DIGEST_GOOGLE_API_KEY",
        "VIBE_DIGEST_SUPADATA_API_KEY",
        "VIBE_DIGEST_ADMIN_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def repository(tmp_path: Path) -> VideoRepository:
    db = Database(tmp_path / "catalog.db")
    db.initialize()
    return VideoRepository(db)


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    runtime_dir = tmp_path / "runtime-data"
    runtime_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("VIBE_DIGEST_DATA_DIR", str(runtime_dir))
    monkeypatch.setenv("VIBE_DIGEST_DISCOVERY_PAUSE_SECONDS", "0")
    monkeypatch.setenv("VIBE_DIGEST_TELEMETRY_SINK", "none")
    return runtime_dir


@pytest.fixture
def client(data_dir: Path) -> Iterator[TestClient]:
    _ = data_dir
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
