from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from tubedesk.repositories.catalog_repository import (
    CatalogRepository,
    CatalogStoreError,
    CatalogStoreUnavailableError,
    StoredVideo,
    StoredVideoMetadata,
)
from tubedesk.repositories.database import Database
from tubedesk.services.ingestion import (
    EmptyPageStreak,
    IngestionInterruptedError,
    IngestionReducer,
)
from tubedesk.services.page_fetcher import NetworkError
from tubedesk.services.sync_types import CatalogItem, IngestionFilters, PageResult


def _item(youtube_id: str, *, video_type: str = "regular", title: str | None = None) -> CatalogItem:
    return CatalogItem(
        youtube_id=youtube_id,
        title=title or f"Episode {youtube_id}",
        published_at="2026-04-01T08:00:00Z",
        duration_seconds=30 if video_type == "short" else 600,
        description=f"Notes for {youtube_id}",
        video_type=video_type,  # type: ignore[arg-type]
        views_count=10,
        thumbnail_url=f"https://img.test/{youtube_id}.jpg",
    )


def _page(*items: CatalogItem) -> PageResult:
    return PageResult(items=tuple(items), next_cursor=None, items_returned=len(items))


def _rows(database: Database) -> list[tuple[object, ...]]:
    with database.connection() as conn:
        videos = conn.execute("SELECT * FROM catalog_videos ORDER BY youtube_id").fetchall()
        metadata = conn.execute(
            "SELECT * FROM catalog_video_metadata ORDER BY youtube_id"
        ).fetchall()
    return [tuple(row) for row in [*videos, *metadata]]


class _FlakyStore(CatalogRepository):
    def __init__(self, db: Database, *, failing_id: str) -> None:
        super().__init__(db)
        self._failing_id = failing_id

    def insert_video(
        self,
        video: StoredVideo,
        *,
        metadata: StoredVideoMetadata | None = None,
    ) -> StoredVideo:
        if video.youtube_id == self._failing_id:
            raise CatalogStoreError("constraint failed")
        return super().insert_video(video, metadata=metadata)


class _LockedOnInsertStore(CatalogRepository):
    def __init__(self, db: Database, *, locked_id: str) -> None:
        super().__init__(db)
        self._locked_id = locked_id

    def insert_video(
        self,
        video: StoredVideo,
        *,
        metadata: StoredVideoMetadata | None = None,
    ) -> StoredVideo:
        if video.youtube_id == self._locked_id:
            raise CatalogStoreUnavailableError("database is locked")
        return super().insert_video(video, metadata=metadata)


class _UnreachableStore(CatalogRepository):
    def get_video(self, *, user_id: str, youtube_id: str) -> StoredVideo | None:
        raise CatalogStoreUnavailableError("database is locked")


@pytest.mark.asyncio
async def test_ingest_counts_new_updated_and_unchanged(database: Database) -> None:
    reducer = IngestionReducer(CatalogRepository(database), user_id="user-1")
    await reducer.ingest(_page(_item("a"), _item("b")), IngestionFilters())

    outcome = await reducer.ingest(
        _page(_item("a"), _item("b", title="Episode b (remastered)"), _item("c")),
        IngestionFilters(),
    )

    assert outcome.new_count == 1
    assert outcome.updated_count == 1
    assert outcome.unchanged_count == 1
    assert outcome.processed == 3
    assert outcome.errors == ()


@pytest.mark.asyncio
async def test_ingest_same_page_twice_is_idempotent(database: Database) -> None:
    reducer = IngestionReducer(CatalogRepository(database), user_id="user-1")
    page = _page(_item("a"), _item("b"), _item("s1", video_type="short"))

    first = await reducer.ingest(page, IngestionFilters())
    rows_after_first = _rows(database)
    second = await reducer.ingest(page, IngestionFilters())

    assert first.new_count == 3
    assert second.new_count == 0
    assert second.updated_count == 0
    assert second.unchanged_count == 3
    assert _rows(database) == rows_after_first


@pytest.mark.asyncio
async def test_ingest_filters_by_video_type(database: Database) -> None:
    repository = CatalogRepository(database)
    reducer = IngestionReducer(repository, user_id="user-1")

    outcome = await reducer.ingest(
        _page(_item("a"), _item("s1", video_type="short"), _item("s2", video_type="short")),
        IngestionFilters(include_regular=False, include_shorts=True),
    )

    assert outcome.new_count == 2
    assert repository.get_video(user_id="user-1", youtube_id="a") is None


@pytest.mark.asyncio
async def test_ingest_skips_metadata_when_disabled(database: Database) -> None:
    repository = CatalogRepository(database)
    reducer = IngestionReducer(repository, user_id="user-1")

    await reducer.ingest(_page(_item("a")), IngestionFilters(), sync_metadata=False)

    assert repository.get_video(user_id="user-1", youtube_id="a") is not None
    assert repository.get_metadata(user_id="user-1", youtube_id="a") is None


@pytest.mark.asyncio
async def test_ingest_refreshes_metadata_of_unchanged_videos(database: Database) -> None:
    repository = CatalogRepository(database)
    reducer = IngestionReducer(repository, user_id="user-1")
    await reducer.ingest(_page(_item("a")), IngestionFilters())
    stored_before = repository.get_video(user_id="user-1", youtube_id="a")

    outcome = await reducer.ingest(
        _page(replace(_item("a"), views_count=99, likes_count=7)),
        IngestionFilters(),
    )
    await reducer.ingest(
        _page(replace(_item("a"), views_count=500)),
        IngestionFilters(),
        sync_metadata=False,
    )

    assert outcome.unchanged_count == 1
    assert outcome.updated_count == 0
    metadata = repository.get_metadata(user_id="user-1", youtube_id="a")
    assert metadata is not None
    assert metadata.views_count == 99
    assert metadata.likes_count == 7
    assert repository.get_video(user_id="user-1", youtube_id="a") == stored_before


@pytest.mark.asyncio
async def test_item_failures_are_recorded_and_page_continues(database: Database) -> None:
    reducer = IngestionReducer(_FlakyStore(database, failing_id="b"), user_id="user-1")

    outcome = await reducer.ingest(
        _page(_item("a"), _item("b", title="Broken upload"), _item("c")),
        IngestionFilters(),
    )

    assert outcome.new_count == 2
    assert outcome.processed == 2
    assert outcome.errors == ("Broken upload: constraint failed",)


@pytest.mark.asyncio
async def test_unreachable_store_aborts_page_as_network_error(tmp_path: Path) -> None:
    reducer = IngestionReducer(_UnreachableStore(Database(tmp_path / "x.db")), user_id="user-1")

    with pytest.raises(NetworkError):
        await reducer.ingest(_page(_item("a")), IngestionFilters())


@pytest.mark.asyncio
async def test_unreachable_store_reports_progress_made_before_failure(
    database: Database,
) -> None:
    page = _page(_item("a"), _item("s1", video_type="short"), _item("c"), _item("d"))
    filters = IngestionFilters(include_shorts=False)
    locked = IngestionReducer(_LockedOnInsertStore(database, locked_id="c"), user_id="user-1")

    with pytest.raises(IngestionInterruptedError) as excinfo:
        await locked.ingest(page, filters)

    assert isinstance(excinfo.value, NetworkError)
    assert excinfo.value.partial.new_count == 1
    assert excinfo.value.resume_index == 2

    reducer = IngestionReducer(CatalogRepository(database), user_id="user-1")
    rest = await reducer.ingest(page, filters, start_index=excinfo.value.resume_index)

    assert rest.new_count == 2
    assert rest.unchanged_count == 0


def test_empty_page_streak_counts_pages_without_new_items() -> None:
    streak = EmptyPageStreak()

    streak = streak.advance(0).advance(0)
    assert streak.count == 2
    assert streak.reached(2) is True

    streak = streak.advance(3)
    assert streak.count == 0
    assert streak.reached(1) is False
