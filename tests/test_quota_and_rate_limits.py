from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from tubedesk.repositories.database import Database
from tubedesk.repositories.youtube_quota_repository import QuotaRecord, YouTubeQuotaRepository
from tubedesk.services.quota_tracker import QuotaTracker, fit_to_quota
from tubedesk.services.rate_limiter import (
    YOUTUBE_SYNC_LIMITER_KEY,
    FixedWindowRateLimiter,
    RateLimiterRegistry,
)
from tubedesk.services.sync_types import SyncConfiguration


class _ManualClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _tracker(database: Database, *, daily_limit: int = 10, now: datetime | None = None) -> QuotaTracker:
    fixed_now = now or datetime(2026, 5, 4, 15, 30, tzinfo=UTC)
    return QuotaTracker(
        YouTubeQuotaRepository(database),
        user_id="user-1",
        daily_limit=daily_limit,
        clock=lambda: fixed_now,
    )


def test_quota_tracker_allows_until_limit_would_be_exceeded(database: Database) -> None:
    tracker = _tracker(database)

    assert tracker.check_and_reserve(10).allowed is True
    tracker.record_usage(9)

    allowed = tracker.check_and_reserve(1)
    denied = tracker.check_and_reserve(2)

    assert allowed.allowed is True
    assert denied.allowed is False
    assert denied.requests_used == 9
    assert denied.remaining == 1
    assert denied.reset_at == datetime(2026, 5, 5, 0, 0, tzinfo=UTC)


def test_quota_tracker_check_does_not_consume(database: Database) -> None:
    tracker = _tracker(database)

    for _ in range(5):
        tracker.check_and_reserve(3)

    assert tracker.status().requests_used == 0


def test_quota_tracker_rolls_over_at_utc_midnight(database: Database) -> None:
    repository = YouTubeQuotaRepository(database)
    repository.set(QuotaRecord(user_id="user-1", date=date(2026, 5, 4), requests_used=10))

    yesterday = _tracker(database, now=datetime(2026, 5, 4, 23, 59, tzinfo=UTC))
    today = _tracker(database, now=datetime(2026, 5, 5, 0, 1, tzinfo=UTC))

    assert yesterday.check_and_reserve(1).allowed is False
    assert today.check_and_reserve(1).allowed is True
    assert repository.get(user_id="user-1", day=date(2026, 5, 4)) is not None


def test_quota_tracker_mark_exhausted_blocks_remaining_day(database: Database) -> None:
    tracker = _tracker(database, daily_limit=100)
    tracker.record_usage(4)

    tracker.mark_exhausted()

    status = tracker.status()
    assert status.requests_used == 100
    assert status.exceeded is True
    assert tracker.check_and_reserve(1).allowed is False


def test_quota_status_reports_warning_threshold(database: Database) -> None:
    tracker = _tracker(database, daily_limit=10)
    tracker.record_usage(8)

    status = tracker.status()

    assert status.date_utc == "2026-05-04"
    assert status.percentage_used == 80
    assert status.remaining == 2
    assert status.warning is True
    assert status.exceeded is False


def test_rate_limiter_limits_within_window_and_resets() -> None:
    clock = _ManualClock()
    limiter = FixedWindowRateLimiter(
        YOUTUBE_SYNC_LIMITER_KEY,
        max_requests=2,
        window_seconds=60,
        clock=clock,
    )

    assert limiter.check_limit() is False
    limiter.increment_count()
    limiter.increment_count()
    assert limiter.check_limit() is True
    assert limiter.remaining() == 0

    clock.now += 45
    assert limiter.remaining_time_seconds() == pytest.approx(15.0)
    decision = limiter.decision()
    assert decision.limited is True
    assert decision.retry_after_seconds == 15

    clock.now += 15
    assert limiter.check_limit() is False
    assert limiter.remaining() == 2
    assert limiter.remaining_time_seconds() == pytest.approx(60.0)


def test_rate_limiter_check_never_counts() -> None:
    limiter = FixedWindowRateLimiter(
        YOUTUBE_SYNC_LIMITER_KEY,
        max_requests=1,
        window_seconds=60,
        clock=_ManualClock(),
    )

    for _ in range(10):
        assert limiter.check_limit() is False


def test_rate_limiter_registry_keeps_keys_isolated() -> None:
    registry = RateLimiterRegistry(
        {
            YOUTUBE_SYNC_LIMITER_KEY: (1, 60.0),
            "ai-processing": (5, 60.0),
        },
        clock=_ManualClock(),
    )

    sync_limiter = registry.get(YOUTUBE_SYNC_LIMITER_KEY)
    sync_limiter.increment_count()

    assert registry.get(YOUTUBE_SYNC_LIMITER_KEY) is sync_limiter
    assert sync_limiter.check_limit() is True
    assert registry.get("ai-processing").check_limit() is False
    with pytest.raises(KeyError):
        registry.get("unknown")


def test_incremental_batch_shrinks_to_remaining_quota() -> None:
    config = SyncConfiguration(mode="incremental", max_items=200)

    fitted = fit_to_quota(config, 7, page_size=50, page_cost=2)
    untouched = fit_to_quota(config, 9_000, page_size=50, page_cost=2)
    exhausted = fit_to_quota(config, 0, page_size=50, page_cost=2)

    assert fitted.max_items == 150
    assert untouched is config
    assert exhausted.max_items == 50


def test_open_ended_runs_are_not_shrunk_by_quota() -> None:
    config = SyncConfiguration(mode="deep", max_items=200, max_empty_pages=25)

    assert fit_to_quota(config, 1, page_size=50, page_cost=2) is config
