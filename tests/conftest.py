from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from tubedesk.dependencies import reset_cached_dependencies
from tubedesk.main import create_app
from tubedesk.repositories.database import Database


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    for name in (
        "TUBEDESK_YOUTUBE_ACCESS_TOKEN",
        "TUBEDESK_YOUTUBE_CHANNEL_ID",
        "TUBEDESK_TELEMETRY_SINK",
        "TUBEDESK_TELEMETRY_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "tubedesk.db")
    db.initialize()
    return db


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("TUBEDESK_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TUBEDESK_TELEMETRY_SINK", "memory")
    monkeypatch.setenv("TUBEDESK_SYNC_PAGE_DELAY_SECONDS", "0")
    monkeypatch.setenv("TUBEDESK_SYNC_RETRY_BASE_DELAY_SECONDS", "0")
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
