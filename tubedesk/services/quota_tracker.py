from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol

from tubedesk.repositories.youtube_quota_repository import QuotaRecord
from tubedesk.services.sync_types import SyncConfiguration

LOGGER = logging.getLogger("tubedesk.quota")
DEFAULT_DAILY_LIMIT = 10_000


class QuotaStore(Protocol):
    def get(self, *, user_id: str, day: date) -> QuotaRecord | None:
        ...

    def set(self, record: QuotaRecord) -> None:
        ...

    def increment(self, *, user_id: str, day: date, cost: int) -> QuotaRecord:
        ...


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    requests_used: int
    daily_limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(self.daily_limit - self.requests_used, 0)


@dataclass(frozen=True)
class QuotaStatus:
    date_utc: str
    requests_used: int
    daily_limit: int
    remaining: int
    percentage_used: int
    warning: bool
    exceeded: bool
    reset_at: datetime


def _utc_now() -> datetime:
    return datetime.now(UTC)


class QuotaTracker:
    def __init__(
        self,
        store: QuotaStore,
        *,
        user_id: str,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        warning_percent: float = 0.8,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._daily_limit = max(0, daily_limit)
        self._warning_percent = warning_percent
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    def reset_at(self) -> datetime:
        now = self._now()
        next_day = now.date() + timedelta(days=1)
        return datetime.combine(next_day, time.min, tzinfo=UTC)

    def check_and_reserve(self, cost: int) -> QuotaDecision:
        requests_used = self._requests_used_today()
        allowed = requests_used + max(0, cost) <= self._daily_limit
        if not allowed:
            LOGGER.info(
                "quota check denied user_id=%s used=%s cost=%s limit=%s",
                self._user_id,
                requests_used,
                cost,
                self._daily_limit,
            )
        return QuotaDecision(
            allowed=allowed,
            requests_used=requests_used,
            daily_limit=self._daily_limit,
            reset_at=self.reset_at(),
        )

    def record_usage(self, cost: int) -> QuotaRecord:
        record = self._store.increment(user_id=self._user_id, day=self._today(), cost=cost)
        LOGGER.debug(
            "quota usage recorded user_id=%s cost=%s used=%s",
            self._user_id,
            cost,
            record.requests_used,
        )
        return record

    def mark_exhausted(self) -> None:
        day = self._today()
        current = self._store.get(user_id=self._user_id, day=day)
        used = current.requests_used if current is not None else 0
        if used >= self._daily_limit:
            return
        self._store.set(QuotaRecord(user_id=self._user_id, date=day, requests_used=self._daily_limit))
        LOGGER.warning(
            "quota marked exhausted by upstream user_id=%s previous_used=%s limit=%s",
            self._user_id,
            used,
            self._daily_limit,
        )

    def status(self) -> QuotaStatus:
        day = self._today()
        requests_used = self._requests_used_today()
        percentage_used = (
            round((requests_used / self._daily_limit) * 100) if self._daily_limit > 0 else 100
        )
        warning_threshold = self._daily_limit * self._warning_percent
        return QuotaStatus(
            date_utc=day.isoformat(),
            requests_used=requests_used,
            daily_limit=self._daily_limit,
            remaining=max(self._daily_limit - requests_used, 0),
            percentage_used=percentage_used,
            warning=self._daily_limit > 0 and requests_used >= warning_threshold,
            exceeded=requests_used >= self._daily_limit,
            reset_at=self.reset_at(),
        )

    def _requests_used_today(self) -> int:
        record = self._store.get(user_id=self._user_id, day=self._today())
        if record is None:
            return 0
        return record.requests_used

    def _today(self) -> date:
        return self._now().date()

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=UTC)
        return now.astimezone(UTC)


def fit_to_quota(
    config: SyncConfiguration,
    remaining: int,
    *,
    page_size: int,
    page_cost: int,
) -> SyncConfiguration:
    """Shrinks an incremental run to the pages today's remaining quota can pay for.

    At least one page is always kept so an exhausted quota still surfaces as a quota error
    from the fetcher. Full and deep runs are open-ended and left alone.
    """
    if config.mode != "incremental" or page_cost <= 0:
        return config
    page_items = max(1, min(config.max_items, page_size))
    affordable_pages = max(1, remaining // page_cost)
    max_items = min(config.max_items, affordable_pages * page_items)
    if max_items == config.max_items:
        return config
    LOGGER.info(
        "incremental batch reduced to fit quota remaining=%s max_items=%s->%s",
        remaining,
        config.max_items,
        max_items,
    )
    return replace(config, max_items=max_items)
