from __future__ import annotations

from datetime import UTC, datetime, timedelta

from tubedesk.models.sync_contracts import ProgressSnapshot
from tubedesk.services.progress_reporter import ProgressReporter, build_snapshot
from tubedesk.services.sync_types import (
    BatchSyncState,
    PageStats,
    SyncConfiguration,
    SyncFailure,
    SyncTotals,
)

NOW = datetime(2026, 5, 4, 12, 0, tzinfo=UTC)


def _state(**overrides: object) -> BatchSyncState:
    state = BatchSyncState(phase="running", pages_processed=2, start_time=0.0)
    state.totals = SyncTotals(processed=100, new=60, updated=10, errors=1)
    for key, value in overrides.items():
        setattr(state, key, value)
    return state


def test_snapshot_derives_speed_and_eta_from_total_estimate() -> None:
    state = _state(
        total_estimate=400,
        last_page_stats=PageStats(
            videos_in_page=50,
            new_in_page=20,
            updated_in_page=5,
            is_empty_page=False,
            total_channel_videos=400,
        ),
    )

    snapshot = build_snapshot(
        state,
        SyncConfiguration(mode="full"),
        page_size=50,
        elapsed_seconds=120.0,
        now=NOW,
    )

    assert snapshot.step == "fetching"
    assert snapshot.current == 100
    assert snapshot.total == 400
    assert snapshot.total_pages == 8
    assert snapshot.progress_percentage == 25
    assert snapshot.processing_speed.videos_per_minute == 50.0
    assert snapshot.processing_speed.elapsed_time_ms == 120_000
    assert snapshot.processing_speed.eta == NOW + timedelta(minutes=6)
    assert snapshot.page_stats is not None
    assert snapshot.page_stats.new_in_page == 20


def test_snapshot_without_estimate_has_no_eta() -> None:
    snapshot = build_snapshot(
        _state(),
        SyncConfiguration(mode="deep"),
        page_size=50,
        elapsed_seconds=60.0,
        now=NOW,
    )

    assert snapshot.total is None
    assert snapshot.total_pages is None
    assert snapshot.processing_speed.eta is None
    assert snapshot.progress_percentage == 0


def test_incremental_snapshot_uses_max_items_as_total() -> None:
    state = _state(totals=SyncTotals(processed=25, new=25), pages_processed=1)

    snapshot = build_snapshot(
        state,
        SyncConfiguration(mode="incremental", max_items=50),
        page_size=25,
        elapsed_seconds=0.0,
        now=NOW,
    )

    assert snapshot.total == 50
    assert snapshot.total_pages == 2
    assert snapshot.progress_percentage == 50
    assert snapshot.processing_speed.videos_per_minute == 0.0


def test_error_snapshot_carries_failure_details() -> None:
    state = _state(
        phase="error",
        failure=SyncFailure(
            kind="quota_exceeded",
            message="YouTube API daily quota exhausted",
            reset_at="2026-05-05T00:00:00+00:00",
        ),
        errors=["Broken upload: constraint failed", "YouTube API daily quota exhausted"],
    )

    snapshot = build_snapshot(
        state,
        SyncConfiguration(mode="full"),
        page_size=50,
        elapsed_seconds=10.0,
        now=NOW,
    )

    assert snapshot.step == "error"
    assert snapshot.message == "YouTube API daily quota exhausted"
    assert snapshot.failure is not None
    assert snapshot.failure.reset_at == "2026-05-05T00:00:00+00:00"
    assert len(snapshot.errors) == 2


def test_reporter_isolates_failing_subscribers() -> None:
    reporter = ProgressReporter()
    received: list[ProgressSnapshot] = []

    def _broken(_snapshot: ProgressSnapshot) -> None:
        raise RuntimeError("ui went away")

    reporter.subscribe(_broken)
    unsubscribe = reporter.subscribe(received.append)
    snapshot = build_snapshot(
        _state(),
        SyncConfiguration(),
        page_size=50,
        elapsed_seconds=1.0,
        now=NOW,
    )

    reporter.publish(snapshot)
    unsubscribe()
    reporter.publish(snapshot)

    assert received == [snapshot]
