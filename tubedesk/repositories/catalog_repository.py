from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TypeVar, cast

from tubedesk.repositories.database import Database, utc_timestamp

CONFIGURATION_STATUS_NOT_CONFIGURED = "NOT_CONFIGURED"
UPDATE_STATUS_ACTIVE_FOR_UPDATE = "ACTIVE_FOR_UPDATE"

_T = TypeVar("_T")


class CatalogStoreError(Exception):
    pass


class CatalogStoreUnavailableError(CatalogStoreError):
    pass


@dataclass(frozen=True)
class StoredVideo:
    user_id: str
    youtube_id: str
    title: str
    description: str
    duration_seconds: int
    published_at: str
    video_type: str
    category_id: str | None = None
    tags: tuple[str, ...] = ()
    configuration_status: str = CONFIGURATION_STATUS_NOT_CONFIGURED
    update_status: str = UPDATE_STATUS_ACTIVE_FOR_UPDATE
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def youtube_url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.youtube_id}"


@dataclass(frozen=True)
class StoredVideoMetadata:
    views_count: int | None = None
    likes_count: int | None = None
    comments_count: int | None = None
    privacy_status: str | None = None
    thumbnail_url: str | None = None


class CatalogRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_video(self, *, user_id: str, youtube_id: str) -> StoredVideo | None:
        def _query(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return cast(
                sqlite3.Row | None,
                conn.execute(
                    """
                    SELECT *
                    FROM catalog_videos
                    WHERE user_id = ? AND youtube_id = ?
                    """,
                    (user_id, youtube_id),
                ).fetchone(),
            )

        row = self._run(_query)
        if row is None:
            return None
        return _row_to_video(row)

    def insert_video(
        self,
        video: StoredVideo,
        *,
        metadata: StoredVideoMetadata | None = None,
    ) -> StoredVideo:
        now_iso = utc_timestamp()

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO catalog_videos
                (
                    user_id,
                    youtube_id,
                    youtube_url,
                    title,
                    description,
                    duration_seconds,
                    published_at,
                    video_type,
                    category_id,
                    tags_json,
                    configuration_status,
                    update_status,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    video.user_id,
                    video.youtube_id,
                    video.youtube_url,
                    video.title,
                    video.description,
                    video.duration_seconds,
                    video.published_at,
                    video.video_type,
                    video.category_id,
                    json.dumps(list(video.tags)),
                    video.configuration_status,
                    video.update_status,
                    now_iso,
                    now_iso,
                ),
            )
            if metadata is not None:
                _upsert_metadata(
                    conn,
                    user_id=video.user_id,
                    youtube_id=video.youtube_id,
                    metadata=metadata,
                    now_iso=now_iso,
                )

        self._run(_insert)
        return _with_timestamps(video, created_at=now_iso, updated_at=now_iso)

    def update_video(
        self,
        video: StoredVideo,
        *,
        metadata: StoredVideoMetadata | None = None,
    ) -> StoredVideo:
        now_iso = utc_timestamp()

        # Configuration and update status belong to the dashboard and are left untouched.
        def _update(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                UPDATE catalog_videos
                SET
                    title = ?,
                    description = ?,
                    duration_seconds = ?,
                    published_at = ?,
                    video_type = ?,
                    category_id = ?,
                    tags_json = ?,
                    updated_at = ?
                WHERE user_id = ? AND youtube_id = ?
                """,
                (
                    video.title,
                    video.description,
                    video.duration_seconds,
                    video.published_at,
                    video.video_type,
                    video.category_id,
                    json.dumps(list(video.tags)),
                    now_iso,
                    video.user_id,
                    video.youtube_id,
                ),
            )
            if cursor.rowcount and metadata is not None:
                _upsert_metadata(
                    conn,
                    user_id=video.user_id,
                    youtube_id=video.youtube_id,
                    metadata=metadata,
                    now_iso=now_iso,
                )
            return cursor.rowcount

        updated_rows = self._run(_update)
        if updated_rows == 0:
            raise CatalogStoreError(f"Video {video.youtube_id} is not stored for this user")
        return _with_timestamps(video, created_at=video.created_at, updated_at=now_iso)

    def get_metadata(self, *, user_id: str, youtube_id: str) -> StoredVideoMetadata | None:
        def _query(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return cast(
                sqlite3.Row | None,
                conn.execute(
                    """
                    SELECT views_count, likes_count, comments_count, privacy_status, thumbnail_url
                    FROM catalog_video_metadata
                    WHERE user_id = ? AND youtube_id = ?
                    """,
                    (user_id, youtube_id),
                ).fetchone(),
            )

        row = self._run(_query)
        if row is None:
            return None
        return StoredVideoMetadata(
            views_count=_to_optional_int(row["views_count"]),
            likes_count=_to_optional_int(row["likes_count"]),
            comments_count=_to_optional_int(row["comments_count"]),
            privacy_status=_to_optional_str(row["privacy_status"]),
            thumbnail_url=_to_optional_str(row["thumbnail_url"]),
        )

    def upsert_metadata(
        self,
        *,
        user_id: str,
        youtube_id: str,
        metadata: StoredVideoMetadata,
    ) -> None:
        now_iso = utc_timestamp()

        def _upsert(conn: sqlite3.Connection) -> None:
            _upsert_metadata(
                conn,
                user_id=user_id,
                youtube_id=youtube_id,
                metadata=metadata,
                now_iso=now_iso,
            )

        self._run(_upsert)

    def list_videos(self, *, user_id: str, limit: int) -> list[StoredVideo]:
        def _query(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                """
                SELECT *
                FROM catalog_videos
                WHERE user_id = ?
                ORDER BY published_at DESC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()

        return [_row_to_video(row) for row in self._run(_query)]

    def count_videos(self, *, user_id: str) -> int:
        def _query(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM catalog_videos WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            return int(row["total"]) if row is not None else 0

        return self._run(_query)

    def _run(self, operation: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._translate_errors():
            with self._db.connection() as conn:
                return operation(conn)

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.OperationalError as exc:
            if _is_unavailable_error(exc):
                raise CatalogStoreUnavailableError(str(exc)) from exc
            raise CatalogStoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise CatalogStoreError(str(exc)) from exc


def _upsert_metadata(
    conn: sqlite3.Connection,
    *,
    user_id: str,
    youtube_id: str,
    metadata: StoredVideoMetadata,
    now_iso: str,
) -> None:
    conn.execute(
        """
        INSERT INTO catalog_video_metadata
        (
            user_id,
            youtube_id,
            views_count,
            likes_count,
            comments_count,
            privacy_status,
            thumbnail_url,
            updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, youtube_id) DO UPDATE SET
            views_count = excluded.views_count,
            likes_count = excluded.likes_count,
            comments_count = excluded.comments_count,
            privacy_status = excluded.privacy_status,
            thumbnail_url = excluded.thumbnail_url,
            updated_at = excluded.updated_at
        """,
        (
            user_id,
            youtube_id,
            metadata.views_count,
            metadata.likes_count,
            metadata.comments_count,
            metadata.privacy_status,
            metadata.thumbnail_url,
            now_iso,
        ),
    )


def _is_unavailable_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    markers = (
        "unable to open database",
        "database is locked",
        "disk i/o error",
    )
    return any(marker in message for marker in markers)


def _with_timestamps(
    video: StoredVideo,
    *,
    created_at: str | None,
    updated_at: str,
) -> StoredVideo:
    return StoredVideo(
        user_id=video.user_id,
        youtube_id=video.youtube_id,
        title=video.title,
        description=video.description,
        duration_seconds=video.duration_seconds,
        published_at=video.published_at,
        video_type=video.video_type,
        category_id=video.category_id,
        tags=video.tags,
        configuration_status=video.configuration_status,
        update_status=video.update_status,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_video(row: sqlite3.Row) -> StoredVideo:
    return StoredVideo(
        user_id=str(row["user_id"]),
        youtube_id=str(row["youtube_id"]),
        title=str(row["title"]),
        description=str(row["description"]),
        duration_seconds=int(row["duration_seconds"]),
        published_at=str(row["published_at"]),
        video_type=str(row["video_type"]),
        category_id=_to_optional_str(row["category_id"]),
        tags=_decode_tags(row["tags_json"]),
        configuration_status=str(row["configuration_status"]),
        update_status=str(row["update_status"]),
        created_at=_to_optional_str(row["created_at"]),
        updated_at=_to_optional_str(row["updated_at"]),
    )


def _decode_tags(raw: object) -> tuple[str, ...]:
    if not isinstance(raw, str):
        return ()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return ()
    if not isinstance(parsed, list):
        return ()
    return tuple(item for item in cast(list[object], parsed) if isinstance(item, str))


def _to_optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _to_optional_int(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except ValueError:
        return None
