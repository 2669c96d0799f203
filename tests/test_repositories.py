from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from tubedesk.repositories.catalog_repository import (
    CatalogRepository,
    CatalogStoreError,
    CatalogStoreUnavailableError,
    StoredVideo,
    StoredVideoMetadata,
)
from tubedesk.repositories.database import Database, utc_timestamp
from tubedesk.repositories.youtube_quota_repository import QuotaRecord, YouTubeQuotaRepository


def _video(youtube_id: str = "vid_001", **overrides: object) -> StoredVideo:
    fields: dict[str, object] = {
        "user_id": "user-1",
        "youtube_id": youtube_id,
        "title": "Sourdough Basics",
        "description": "Feeding the starter.",
        "duration_seconds": 640,
        "published_at": "2026-03-01T10:00:00Z",
        "video_type": "regular",
        "tags": ("bread", "baking"),
    }
    fields.update(overrides)
    return StoredVideo(**fields)  # type: ignore[arg-type]


def test_quota_repository_increment_accumulates_per_day(database: Database) -> None:
    repository = YouTubeQuotaRepository(database)
    day = date(2026, 5, 4)

    assert repository.get(user_id="user-1", day=day) is None

    first = repository.increment(user_id="user-1", day=day, cost=2)
    second = repository.increment(user_id="user-1", day=day, cost=3)
    other_day = repository.increment(user_id="user-1", day=date(2026, 5, 5), cost=1)
    other_user = repository.get(user_id="user-2", day=day)

    assert first.requests_used == 2
    assert second.requests_used == 5
    assert other_day.requests_used == 1
    assert other_user is None


def test_quota_repository_set_overwrites_counter(database: Database) -> None:
    repository = YouTubeQuotaRepository(database)
    day = date(2026, 5, 4)
    repository.increment(user_id="user-1", day=day, cost=7)

    repository.set(QuotaRecord(user_id="user-1", date=day, requests_used=10_000))

    stored = repository.get(user_id="user-1", day=day)
    assert stored == QuotaRecord(user_id="user-1", date=day, requests_used=10_000)


def test_catalog_insert_sets_dashboard_statuses(database: Database) -> None:
    repository = CatalogRepository(database)

    repository.insert_video(
        _video(),
        metadata=StoredVideoMetadata(views_count=12, thumbnail_url="https://img/maxres.jpg"),
    )

    stored = repository.get_video(user_id="user-1", youtube_id="vid_001")
    assert stored is not None
    assert stored.configuration_status == "NOT_CONFIGURED"
    assert stored.update_status == "ACTIVE_FOR_UPDATE"
    assert stored.tags == ("bread", "baking")
    assert stored.youtube_url == "https://www.youtube.com/watch?v=vid_001"
    assert stored.created_at is not None

    metadata = repository.get_metadata(user_id="user-1", youtube_id="vid_001")
    assert metadata == StoredVideoMetadata(views_count=12, thumbnail_url="https://img/maxres.jpg")
    assert repository.count_videos(user_id="user-1") == 1
    assert repository.count_videos(user_id="user-2") == 0


def test_catalog_update_keeps_statuses_and_created_at(database: Database) -> None:
    repository = CatalogRepository(database)
    repository.insert_video(_video())
    with database.connection() as conn:
        conn.execute(
            "UPDATE catalog_videos SET configuration_status = 'CONFIGURED' WHERE youtube_id = ?",
            ("vid_001",),
        )
    original = repository.get_video(user_id="user-1", youtube_id="vid_001")
    assert original is not None

    repository.update_video(
        _video(title="Sourdough Basics (2026 edit)", configuration_status="NOT_CONFIGURED"),
        metadata=StoredVideoMetadata(views_count=99),
    )

    updated = repository.get_video(user_id="user-1", youtube_id="vid_001")
    assert updated is not None
    assert updated.title == "Sourdough Basics (2026 edit)"
    assert updated.configuration_status == "CONFIGURED"
    assert updated.created_at == original.created_at
    metadata = repository.get_metadata(user_id="user-1", youtube_id="vid_001")
    assert metadata is not None
    assert metadata.views_count == 99


def test_catalog_update_of_missing_video_raises(database: Database) -> None:
    repository = CatalogRepository(database)

    with pytest.raises(CatalogStoreError):
        repository.update_video(_video("missing"))


def test_catalog_list_videos_newest_first(database: Database) -> None:
    repository = CatalogRepository(database)
    repository.insert_video(_video("old", published_at="2025-01-01T00:00:00Z"))
    repository.insert_video(_video("new", published_at="2026-01-01T00:00:00Z"))

    listed = repository.list_videos(user_id="user-1", limit=10)

    assert [video.youtube_id for video in listed] == ["new", "old"]


def test_catalog_unreachable_store_raises_unavailable(tmp_path: Path) -> None:
    blocked_dir = tmp_path / "not-a-file.db"
    blocked_dir.mkdir()
    repository = CatalogRepository(Database(blocked_dir))

    with pytest.raises(CatalogStoreUnavailableError):
        repository.get_video(user_id="user-1", youtube_id="vid_001")


def test_timestamps_are_normalized_to_utc() -> None:
    local = datetime(2026, 5, 4, 14, 30, tzinfo=timezone(timedelta(hours=2)))

    assert utc_timestamp(local) == "2026-05-04T12:30:00+00:00"
