from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from time import monotonic
from typing import Protocol, TypeVar
from uuid import uuid4

import structlog

from tubedesk.models.sync_contracts import ProgressSnapshot
from tubedesk.services.ingestion import EmptyPageStreak, IngestionInterruptedError
from tubedesk.services.page_fetcher import (
    CatalogFetchError,
    NetworkError,
    RateLimitedError,
    UnknownFetchError,
)
from tubedesk.services.progress_reporter import ProgressReporter, build_snapshot
from tubedesk.services.sync_types import (
    TERMINAL_PHASES,
    BatchSyncState,
    IngestionFilters,
    IngestionOutcome,
    PageResult,
    PageStats,
    SyncConfiguration,
    SyncStateError,
)
from tubedesk.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubedesk.sync")

DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_PAGES = 100
DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_PAGE_DELAY_SECONDS = 0.8

STOP_REASON_REQUESTED = "stop_requested"
STOP_REASON_NO_NEXT_PAGE = "no_next_page"
STOP_REASON_MAX_ITEMS = "max_items_reached"
STOP_REASON_EMPTY_PAGES = "empty_page_limit"
STOP_REASON_MAX_PAGES = "max_pages_reached"

_T = TypeVar("_T")


class PageSource(Protocol):
    async def fetch_page(
        self,
        cursor: str | None,
        config: SyncConfiguration,
        *,
        page_size: int,
    ) -> PageResult:
        ...


class PageIngestor(Protocol):
    async def ingest(
        self,
        page: PageResult,
        filters: IngestionFilters,
        *,
        sync_metadata: bool = True,
        start_index: int = 0,
    ) -> IngestionOutcome:
        ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


class BatchSyncController:
    """Drives one catalog sync run page by page.

    Phases move ``idle -> running <-> paused -> stopping -> completed | error``. ``pause()``,
    ``resume()`` and ``stop()`` only set flags; the loop observes them between pages, so a
    page already being fetched is still ingested. An instance runs once; start a new run with
    a new controller.
    """

    def __init__(
        self,
        fetcher: PageSource,
        ingestor: PageIngestor,
        reporter: ProgressReporter,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS,
        telemetry: TelemetryClient | None = None,
        user_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = monotonic,
        wall_clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._fetcher = fetcher
        self._ingestor = ingestor
        self._reporter = reporter
        self._page_size = max(1, page_size)
        self._max_pages = max(1, max_pages)
        self._retry_max_attempts = max(1, retry_max_attempts)
        self._retry_base_delay_seconds = max(0.0, retry_base_delay_seconds)
        self._page_delay_seconds = max(0.0, page_delay_seconds)
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._user_id = user_id
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock

        self._run_id = uuid4().hex
        self._state = BatchSyncState()
        self._config: SyncConfiguration | None = None
        self._started = False
        self._pause_requested = False
        self._stop_requested = False
        self._resume_event = asyncio.Event()

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def state(self) -> BatchSyncState:
        return self._state

    @property
    def config(self) -> SyncConfiguration | None:
        return self._config

    def effective_page_size(self, config: SyncConfiguration) -> int:
        if config.mode == "incremental":
            return min(config.max_items, self._page_size)
        return self._page_size

    async def run(self, config: SyncConfiguration) -> ProgressSnapshot:
        if self._started:
            raise SyncStateError("This sync run has already been started; create a new one.")
        config.validate()
        self._started = True
        self._config = config

        with structlog.contextvars.bound_contextvars(sync_run_id=self._run_id):
            self._state.phase = "running"
            self._state.start_time = self._clock()
            LOGGER.info(
                "sync run started user_id=%s mode=%s max_items=%s max_empty_pages=%s",
                self._user_id or "-",
                config.mode,
                config.max_items,
                config.max_empty_pages,
            )
            self._telemetry.emit(
                "sync.run.start",
                run_id=self._run_id,
                user_id=self._user_id,
                mode=config.mode,
                max_items=config.max_items,
                max_empty_pages=config.max_empty_pages,
                sync_metadata=config.sync_metadata,
            )
            self._publish()

            try:
                await self._run_pages(config)
            except CatalogFetchError as exc:
                self._fail(exc)
            except Exception as exc:
                LOGGER.exception("sync run crashed user_id=%s", self._user_id or "-")
                self._fail(UnknownFetchError(f"Unexpected sync failure: {exc}"))

        return self.snapshot()

    def pause(self) -> None:
        if self._state.phase != "running" or self._stop_requested:
            raise SyncStateError(f"Cannot pause a sync run that is {self._state.phase}.")
        self._pause_requested = True
        self._resume_event.clear()
        LOGGER.info("sync pause requested run_id=%s", self._run_id)

    def resume(self) -> None:
        if self._state.phase == "paused" or (
            self._state.phase == "running" and self._pause_requested
        ):
            self._pause_requested = False
            self._resume_event.set()
            LOGGER.info("sync resume requested run_id=%s", self._run_id)
            return
        raise SyncStateError(f"Cannot resume a sync run that is {self._state.phase}.")

    def stop(self) -> None:
        if self._state.phase in TERMINAL_PHASES or self._stop_requested:
            return
        if self._state.phase == "idle":
            raise SyncStateError("Cannot stop a sync run that has not started.")
        self._stop_requested = True
        self._state.phase = "stopping"
        # Wakes a paused loop so it can finish.
        self._resume_event.set()
        LOGGER.info("sync stop requested run_id=%s", self._run_id)

    def snapshot(self, message: str | None = None) -> ProgressSnapshot:
        config = self._config or SyncConfiguration()
        return build_snapshot(
            self._state,
            config,
            page_size=self._page_size,
            elapsed_seconds=self._elapsed_seconds(),
            now=self._wall_clock(),
            message=message,
        )

    async def _run_pages(self, config: SyncConfiguration) -> None:
        filters = IngestionFilters(
            include_regular=config.include_regular,
            include_shorts=config.include_shorts,
        )
        page_size = self.effective_page_size(config)

        while True:
            if self._pause_requested and not self._stop_requested:
                await self._wait_while_paused()
            if self._stop_requested:
                self._complete(STOP_REASON_REQUESTED)
                return

            cursor = self._state.cursor
            page = await self._with_retry(
                "fetch",
                lambda: self._fetcher.fetch_page(cursor, config, page_size=page_size),
            )
            outcome = await self._ingest_page(page, filters, sync_metadata=config.sync_metadata)
            self._apply_page(cursor, page, outcome)

            stop_reason = self._evaluate_stop(config, page, page_size=page_size)
            if stop_reason is not None:
                self._complete(stop_reason)
                return
            if self._page_delay_seconds > 0:
                await self._sleep(self._page_delay_seconds)

    async def _wait_while_paused(self) -> None:
        self._state.phase = "paused"
        LOGGER.info(
            "sync paused run_id=%s pages=%s cursor=%s",
            self._run_id,
            self._state.pages_processed,
            self._state.cursor or "-",
        )
        self._publish()
        await self._resume_event.wait()
        if not self._stop_requested:
            self._state.phase = "running"
            self._publish()

    async def _ingest_page(
        self,
        page: PageResult,
        filters: IngestionFilters,
        *,
        sync_metadata: bool,
    ) -> IngestionOutcome:
        partial = IngestionOutcome()
        resume_index = 0

        # A retry continues from the item that failed; earlier items keep their counts.
        async def _attempt() -> IngestionOutcome:
            nonlocal partial, resume_index
            try:
                outcome = await self._ingestor.ingest(
                    page,
                    filters,
                    sync_metadata=sync_metadata,
                    start_index=resume_index,
                )
            except IngestionInterruptedError as exc:
                partial = partial.merge(exc.partial)
                resume_index = exc.resume_index
                raise
            return partial.merge(outcome)

        return await self._with_retry("ingest", _attempt)

    async def _with_retry(self, label: str, operation: Callable[[], Awaitable[_T]]) -> _T:
        attempt = 1
        while True:
            try:
                return await operation()
            except (RateLimitedError, NetworkError) as exc:
                if attempt >= self._retry_max_attempts:
                    LOGGER.error(
                        "sync %s retries exhausted run_id=%s attempts=%s error=%s",
                        label,
                        self._run_id,
                        attempt,
                        exc,
                    )
                    raise
                delay = self._retry_base_delay_seconds * (2 ** (attempt - 1))
                if isinstance(exc, RateLimitedError):
                    delay = max(delay, exc.retry_after_seconds)
                LOGGER.warning(
                    "sync %s transient failure run_id=%s attempt=%s retry_in=%.2fs error=%s",
                    label,
                    self._run_id,
                    attempt,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1

    def _apply_page(
        self,
        cursor: str | None,
        page: PageResult,
        outcome: IngestionOutcome,
    ) -> None:
        state = self._state
        state.cursors_consumed.append(cursor)
        state.pages_processed += 1
        state.totals = state.totals.add(outcome)
        state.errors.extend(outcome.errors)
        streak = EmptyPageStreak(state.empty_page_streak).advance(outcome.new_count)
        state.empty_page_streak = streak.count
        state.cursor = page.next_cursor
        if page.total_estimate is not None:
            state.total_estimate = page.total_estimate
        state.last_page_stats = PageStats(
            videos_in_page=len(page.items),
            new_in_page=outcome.new_count,
            updated_in_page=outcome.updated_count,
            is_empty_page=outcome.new_count == 0,
            total_channel_videos=state.total_estimate,
            videos_returned_by_api=page.items_returned,
        )

        LOGGER.info(
            "sync page processed run_id=%s page=%s new=%s updated=%s streak=%s has_next=%s",
            self._run_id,
            state.pages_processed,
            outcome.new_count,
            outcome.updated_count,
            state.empty_page_streak,
            page.next_cursor is not None,
        )
        self._telemetry.emit(
            "sync.run.page",
            run_id=self._run_id,
            page=state.pages_processed,
            videos_in_page=len(page.items),
            new_in_page=outcome.new_count,
            updated_in_page=outcome.updated_count,
            item_errors=len(outcome.errors),
            empty_page_streak=state.empty_page_streak,
        )
        self._publish()

    def _evaluate_stop(
        self,
        config: SyncConfiguration,
        page: PageResult,
        *,
        page_size: int,
    ) -> str | None:
        state = self._state
        if self._stop_requested:
            return STOP_REASON_REQUESTED
        if page.next_cursor is None:
            return STOP_REASON_NO_NEXT_PAGE
        if config.mode == "incremental":
            if state.pages_processed * page_size >= config.max_items:
                return STOP_REASON_MAX_ITEMS
        elif EmptyPageStreak(state.empty_page_streak).reached(config.max_empty_pages):
            return STOP_REASON_EMPTY_PAGES
        if state.pages_processed >= self._max_pages:
            return STOP_REASON_MAX_PAGES
        return None

    def _complete(self, reason: str) -> None:
        self._state.phase = "completed"
        self._state.stop_reason = reason
        totals = self._state.totals
        LOGGER.info(
            "sync run completed run_id=%s reason=%s pages=%s processed=%s new=%s updated=%s",
            self._run_id,
            reason,
            self._state.pages_processed,
            totals.processed,
            totals.new,
            totals.updated,
        )
        self._telemetry.emit(
            "sync.run.finish",
            run_id=self._run_id,
            stop_reason=reason,
            pages=self._state.pages_processed,
            processed=totals.processed,
            new=totals.new,
            updated=totals.updated,
            errors=totals.errors,
            duration_ms=int(self._elapsed_seconds() * 1000),
        )
        self._publish()

    def _fail(self, exc: CatalogFetchError) -> None:
        failure = exc.to_failure()
        self._state.phase = "error"
        self._state.failure = failure
        self._state.errors.append(failure.message)
        LOGGER.error(
            "sync run failed run_id=%s kind=%s pages=%s error=%s",
            self._run_id,
            failure.kind,
            self._state.pages_processed,
            failure.message,
        )
        self._telemetry.emit(
            "sync.run.error",
            run_id=self._run_id,
            failure_kind=failure.kind,
            message=failure.message,
            pages=self._state.pages_processed,
        )
        self._publish()

    def _publish(self) -> None:
        self._reporter.publish(self.snapshot())

    def _elapsed_seconds(self) -> float:
        if self._state.start_time is None:
            return 0.0
        return max(0.0, self._clock() - self._state.start_time)
