from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from threading import Lock

from tubedesk.models.sync_contracts import (
    FailureModel,
    PageStatsModel,
    ProcessingSpeed,
    ProgressSnapshot,
    SyncStepName,
    TotalsModel,
)
from tubedesk.services.sync_types import BatchSyncState, SyncConfiguration

LOGGER = logging.getLogger("tubedesk.progress")

SnapshotSubscriber = Callable[[ProgressSnapshot], None]

_STEP_BY_PHASE: dict[str, SyncStepName] = {
    "idle": "starting",
    "running": "fetching",
    "paused": "paused",
    "stopping": "stopping",
    "completed": "completed",
    "error": "error",
}


class ProgressReporter:
    """Fan-out of progress snapshots to subscribers.

    Snapshots are not retained; a subscriber only sees what is published after it subscribed.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: list[SnapshotSubscriber] = []

    def subscribe(self, callback: SnapshotSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(snapshot)
            except Exception:
                LOGGER.exception(
                    "progress subscriber failed phase=%s page=%s",
                    snapshot.phase,
                    snapshot.current_page,
                )


def build_snapshot(
    state: BatchSyncState,
    config: SyncConfiguration,
    *,
    page_size: int,
    elapsed_seconds: float,
    now: datetime | None = None,
    message: str | None = None,
) -> ProgressSnapshot:
    current_time = now or datetime.now(UTC)
    processed = state.totals.processed
    total_estimate = _effective_total(state, config)
    total_pages = _expected_pages(state, config, page_size=page_size, total=total_estimate)

    elapsed_minutes = elapsed_seconds / 60.0
    videos_per_minute = round(processed / elapsed_minutes, 1) if elapsed_minutes > 0 else 0.0

    eta: datetime | None = None
    if state.total_estimate is not None and videos_per_minute > 0:
        remaining_videos = max(total_estimate or 0, processed) - processed
        eta = current_time + timedelta(minutes=remaining_videos / videos_per_minute)

    page_stats = None
    if state.last_page_stats is not None:
        stats = state.last_page_stats
        page_stats = PageStatsModel(
            videos_in_page=stats.videos_in_page,
            new_in_page=stats.new_in_page,
            updated_in_page=stats.updated_in_page,
            is_empty_page=stats.is_empty_page,
            total_channel_videos=stats.total_channel_videos,
        )

    failure = None
    if state.failure is not None:
        failure = FailureModel(
            kind=state.failure.kind,
            message=state.failure.message,
            reset_at=state.failure.reset_at,
            retry_after_seconds=state.failure.retry_after_seconds,
        )

    return ProgressSnapshot(
        step=_STEP_BY_PHASE[state.phase],
        phase=state.phase,
        current=processed,
        total=total_estimate,
        message=message or _default_message(state),
        errors=tuple(state.errors),
        current_page=state.pages_processed,
        total_pages=total_pages,
        videos_processed=processed,
        total_videos_estimated=state.total_estimate,
        processing_speed=ProcessingSpeed(
            videos_per_minute=videos_per_minute,
            elapsed_time_ms=max(0, int(elapsed_seconds * 1000)),
            eta=eta,
        ),
        page_stats=page_stats,
        totals=TotalsModel(
            processed=state.totals.processed,
            new=state.totals.new,
            updated=state.totals.updated,
            errors=state.totals.errors,
        ),
        pages_processed=state.pages_processed,
        empty_page_streak=state.empty_page_streak,
        cursor=state.cursor,
        progress_percentage=_progress_percentage(
            state,
            total=total_estimate,
            total_pages=total_pages,
        ),
        stop_reason=state.stop_reason,
        failure=failure,
    )


def _effective_total(state: BatchSyncState, config: SyncConfiguration) -> int | None:
    if config.mode == "incremental":
        if state.total_estimate is None:
            return config.max_items
        return min(config.max_items, state.total_estimate)
    return state.total_estimate


def _expected_pages(
    state: BatchSyncState,
    config: SyncConfiguration,
    *,
    page_size: int,
    total: int | None,
) -> int | None:
    effective_page_size = page_size
    if config.mode == "incremental":
        effective_page_size = min(config.max_items, page_size)
    if total is None or effective_page_size <= 0:
        return None
    return max(math.ceil(total / effective_page_size), state.pages_processed)


def _progress_percentage(
    state: BatchSyncState,
    *,
    total: int | None,
    total_pages: int | None,
) -> int:
    if state.phase == "completed":
        return 100
    if total:
        ratio = state.totals.processed / total
    elif total_pages:
        ratio = state.pages_processed / total_pages
    else:
        return 0
    return max(0, min(100, int(ratio * 100)))


def _default_message(state: BatchSyncState) -> str:
    if state.phase == "error" and state.failure is not None:
        return state.failure.message
    if state.phase == "completed":
        return (
            f"Sync completed: {state.totals.new} new, {state.totals.updated} updated "
            f"across {state.pages_processed} pages"
        )
    if state.phase == "paused":
        return f"Sync paused after page {state.pages_processed}"
    if state.phase == "stopping":
        return "Stopping after the current page"
    if state.pages_processed == 0:
        return "Starting catalog sync"
    return f"Processed page {state.pages_processed} ({state.totals.processed} videos)"
