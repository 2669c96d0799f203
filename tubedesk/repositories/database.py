from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS youtube_quota_daily (
    user_id TEXT NOT NULL,
    date_utc TEXT NOT NULL,
    requests_used INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, date_utc)
);

CREATE TABLE IF NOT EXISTS catalog_videos (
    user_id TEXT NOT NULL,
    youtube_id TEXT NOT NULL,
    youtube_url TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    published_at TEXT NOT NULL,
    video_type TEXT NOT NULL,
    category_id TEXT NULL,
    tags_json TEXT NOT NULL,
    configuration_status TEXT NOT NULL,
    update_status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, youtube_id)
);

CREATE INDEX IF NOT EXISTS idx_catalog_videos_user_published
ON catalog_videos(user_id, published_at DESC);

CREATE TABLE IF NOT EXISTS catalog_video_metadata (
    user_id TEXT NOT NULL,
    youtube_id TEXT NOT NULL,
    views_count INTEGER NULL,
    likes_count INTEGER NULL,
    comments_count INTEGER NULL,
    privacy_status TEXT NULL,
    thumbnail_url TEXT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, youtube_id),
    FOREIGN KEY(user_id, youtube_id) REFERENCES catalog_videos(user_id, youtube_id)
);
"""


def utc_timestamp(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp stored in the `updated_at` and `created_at` columns."""
    return (now or datetime.now(UTC)).astimezone(UTC).isoformat()


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)
