from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from tubedesk.repositories.catalog_repository import (
    CatalogStoreError,
    CatalogStoreUnavailableError,
    StoredVideo,
    StoredVideoMetadata,
)
from tubedesk.services.page_fetcher import NetworkError
from tubedesk.services.sync_types import (
    CatalogItem,
    IngestionFilters,
    IngestionOutcome,
    PageResult,
)

LOGGER = logging.getLogger("tubedesk.ingestion")


class CatalogStore(Protocol):
    def get_video(self, *, user_id: str, youtube_id: str) -> StoredVideo | None:
        ...

    def insert_video(
        self,
        video: StoredVideo,
        *,
        metadata: StoredVideoMetadata | None = None,
    ) -> StoredVideo:
        ...

    def update_video(
        self,
        video: StoredVideo,
        *,
        metadata: StoredVideoMetadata | None = None,
    ) -> StoredVideo:
        ...

    def get_metadata(self, *, user_id: str, youtube_id: str) -> StoredVideoMetadata | None:
        ...

    def upsert_metadata(
        self,
        *,
        user_id: str,
        youtube_id: str,
        metadata: StoredVideoMetadata,
    ) -> None:
        ...


class IngestionInterruptedError(NetworkError):
    """The store became unreachable partway through a page.

    ``partial`` counts the items handled before the failure and ``resume_index`` is the
    position in ``page.items`` to continue from.
    """

    def __init__(self, message: str, *, partial: IngestionOutcome, resume_index: int) -> None:
        super().__init__(message)
        self.partial = partial
        self.resume_index = resume_index


@dataclass(frozen=True)
class EmptyPageStreak:
    count: int = 0

    def advance(self, new_in_page: int) -> EmptyPageStreak:
        if new_in_page == 0:
            return EmptyPageStreak(self.count + 1)
        return EmptyPageStreak(0)

    def reached(self, max_empty_pages: int) -> bool:
        return self.count >= max_empty_pages


class IngestionReducer:
    """Folds one fetched page into the catalog store.

    Items are looked up by external id and either inserted, updated when a tracked field
    differs, or skipped. A failing item is recorded and the rest of the page continues.
    """

    def __init__(self, store: CatalogStore, *, user_id: str) -> None:
        self._store = store
        self._user_id = user_id

    async def ingest(
        self,
        page: PageResult,
        filters: IngestionFilters,
        *,
        sync_metadata: bool = True,
        start_index: int = 0,
    ) -> IngestionOutcome:
        new_count = 0
        updated_count = 0
        unchanged_count = 0
        errors: list[str] = []

        for index in range(max(0, start_index), len(page.items)):
            item = page.items[index]
            if not filters.accepts(item):
                continue
            try:
                result = await self._ingest_item(item, sync_metadata=sync_metadata)
            except CatalogStoreUnavailableError as exc:
                LOGGER.error(
                    "catalog store unavailable user_id=%s youtube_id=%s index=%s error=%s",
                    self._user_id,
                    item.youtube_id,
                    index,
                    exc,
                )
                raise IngestionInterruptedError(
                    f"Catalog store unavailable: {exc}",
                    partial=IngestionOutcome(
                        new_count=new_count,
                        updated_count=updated_count,
                        unchanged_count=unchanged_count,
                        errors=tuple(errors),
                    ),
                    resume_index=index,
                ) from exc
            except CatalogStoreError as exc:
                LOGGER.warning(
                    "catalog item failed user_id=%s youtube_id=%s error=%s",
                    self._user_id,
                    item.youtube_id,
                    exc,
                )
                errors.append(f"{item.title}: {exc}")
                continue

            if result == "new":
                new_count += 1
            elif result == "updated":
                updated_count += 1
            else:
                unchanged_count += 1

        outcome = IngestionOutcome(
            new_count=new_count,
            updated_count=updated_count,
            unchanged_count=unchanged_count,
            errors=tuple(errors),
        )
        LOGGER.info(
            "catalog page ingested user_id=%s new=%s updated=%s unchanged=%s errors=%s",
            self._user_id,
            outcome.new_count,
            outcome.updated_count,
            outcome.unchanged_count,
            len(outcome.errors),
        )
        return outcome

    async def _ingest_item(self, item: CatalogItem, *, sync_metadata: bool) -> str:
        existing = await asyncio.to_thread(
            self._store.get_video,
            user_id=self._user_id,
            youtube_id=item.youtube_id,
        )
        metadata = _metadata_for(item) if sync_metadata else None

        if existing is None:
            await asyncio.to_thread(
                self._store.insert_video,
                _stored_video_for(self._user_id, item),
                metadata=metadata,
            )
            return "new"

        if not _tracked_fields_differ(existing, item):
            if metadata is not None:
                await self._refresh_metadata(item, metadata)
            return "unchanged"

        await asyncio.to_thread(
            self._store.update_video,
            _stored_video_for(self._user_id, item, existing=existing),
            metadata=metadata,
        )
        return "updated"

    async def _refresh_metadata(self, item: CatalogItem, metadata: StoredVideoMetadata) -> None:
        # Only the metadata row is written.
        stored = await asyncio.to_thread(
            self._store.get_metadata,
            user_id=self._user_id,
            youtube_id=item.youtube_id,
        )
        if stored == metadata:
            return
        await asyncio.to_thread(
            self._store.upsert_metadata,
            user_id=self._user_id,
            youtube_id=item.youtube_id,
            metadata=metadata,
        )
        LOGGER.debug(
            "catalog metadata refreshed user_id=%s youtube_id=%s",
            self._user_id,
            item.youtube_id,
        )


def _tracked_fields_differ(existing: StoredVideo, item: CatalogItem) -> bool:
    return (
        existing.title != item.title
        or existing.description != item.description
        or existing.duration_seconds != item.duration_seconds
        or existing.published_at != item.published_at
    )


def _stored_video_for(
    user_id: str,
    item: CatalogItem,
    *,
    existing: StoredVideo | None = None,
) -> StoredVideo:
    if existing is None:
        return StoredVideo(
            user_id=user_id,
            youtube_id=item.youtube_id,
            title=item.title,
            description=item.description,
            duration_seconds=item.duration_seconds,
            published_at=item.published_at,
            video_type=item.video_type,
            category_id=item.category_id,
            tags=item.tags,
        )
    return StoredVideo(
        user_id=user_id,
        youtube_id=item.youtube_id,
        title=item.title,
        description=item.description,
        duration_seconds=item.duration_seconds,
        published_at=item.published_at,
        video_type=item.video_type,
        category_id=item.category_id,
        tags=item.tags,
        configuration_status=existing.configuration_status,
        update_status=existing.update_status,
        created_at=existing.created_at,
        updated_at=existing.updated_at,
    )


def _metadata_for(item: CatalogItem) -> StoredVideoMetadata:
    return StoredVideoMetadata(
        views_count=item.views_count,
        likes_count=item.likes_count,
        comments_count=item.comments_count,
        privacy_status=item.privacy_status,
        thumbnail_url=item.thumbnail_url,
    )
