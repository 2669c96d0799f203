from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from tubedesk.repositories.database import Database, utc_timestamp


@dataclass(frozen=True)
class QuotaRecord:
    user_id: str
    date: date
    requests_used: int


class YouTubeQuotaRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, *, user_id: str, day: date) -> QuotaRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT requests_used
                FROM youtube_quota_daily
                WHERE user_id = ? AND date_utc = ?
                """,
                (user_id, day.isoformat()),
            ).fetchone()

        if row is None:
            return None
        return QuotaRecord(user_id=user_id, date=day, requests_used=int(row["requests_used"]))

    def set(self, record: QuotaRecord) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO youtube_quota_daily (user_id, date_utc, requests_used, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date_utc) DO UPDATE SET
                    requests_used = excluded.requests_used,
                    updated_at = excluded.updated_at
                """,
                (
                    record.user_id,
                    record.date.isoformat(),
                    max(0, record.requests_used),
                    utc_timestamp(),
                ),
            )

    def increment(self, *, user_id: str, day: date, cost: int) -> QuotaRecord:
        units = max(0, cost)
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO youtube_quota_daily (user_id, date_utc, requests_used, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, date_utc) DO UPDATE SET
                    requests_used = youtube_quota_daily.requests_used + excluded.requests_used,
                    updated_at = excluded.updated_at
                """,
                (user_id, day.isoformat(), units, utc_timestamp()),
            )
            row = conn.execute(
                """
                SELECT requests_used
                FROM youtube_quota_daily
                WHERE user_id = ? AND date_utc = ?
                """,
                (user_id, day.isoformat()),
            ).fetchone()

        requests_used = int(row["requests_used"]) if row is not None else units
        return QuotaRecord(user_id=user_id, date=day, requests_used=requests_used)
