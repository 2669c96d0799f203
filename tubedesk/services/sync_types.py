from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

SyncMode = Literal["incremental", "full", "deep"]
VideoType = Literal["regular", "short"]
SyncPhase = Literal["idle", "running", "paused", "stopping", "completed", "error"]
FailureKind = Literal[
    "quota_exceeded",
    "rate_limited",
    "auth_expired",
    "network",
    "unknown",
]

SYNC_MODES: frozenset[str] = frozenset({"incremental", "full", "deep"})
TERMINAL_PHASES: frozenset[str] = frozenset({"completed", "error"})


class SyncError(Exception):
    pass


class SyncConfigurationError(SyncError):
    pass


class SyncStateError(SyncError):
    pass


@dataclass(frozen=True)
class SyncConfiguration:
    mode: SyncMode = "incremental"
    include_regular: bool = True
    include_shorts: bool = True
    sync_metadata: bool = True
    max_items: int = 50
    max_empty_pages: int = 5

    def validate(self) -> None:
        if self.mode not in SYNC_MODES:
            raise SyncConfigurationError(
                f"Unsupported sync mode {self.mode!r}; expected one of: incremental, full, deep."
            )
        if not (self.include_regular or self.include_shorts):
            raise SyncConfigurationError(
                "At least one of include_regular or include_shorts must be enabled."
            )
        if self.max_items < 1:
            raise SyncConfigurationError("max_items must be at least 1.")
        if self.max_empty_pages < 1:
            raise SyncConfigurationError("max_empty_pages must be at least 1.")


@dataclass(frozen=True)
class CatalogItem:
    youtube_id: str
    title: str
    published_at: str
    duration_seconds: int
    description: str
    video_type: VideoType
    category_id: str | None = None
    tags: tuple[str, ...] = ()
    views_count: int | None = None
    likes_count: int | None = None
    comments_count: int | None = None
    privacy_status: str | None = None
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class PageResult:
    items: tuple[CatalogItem, ...]
    next_cursor: str | None
    total_estimate: int | None = None
    items_returned: int = 0


@dataclass(frozen=True)
class IngestionFilters:
    include_regular: bool = True
    include_shorts: bool = True

    def accepts(self, item: CatalogItem) -> bool:
        if item.video_type == "short":
            return self.include_shorts
        return self.include_regular


@dataclass(frozen=True)
class IngestionOutcome:
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    errors: tuple[str, ...] = ()

    @property
    def processed(self) -> int:
        return self.new_count + self.updated_count + self.unchanged_count

    def merge(self, other: IngestionOutcome) -> IngestionOutcome:
        return IngestionOutcome(
            new_count=self.new_count + other.new_count,
            updated_count=self.updated_count + other.updated_count,
            unchanged_count=self.unchanged_count + other.unchanged_count,
            errors=self.errors + other.errors,
        )


@dataclass(frozen=True)
class SyncTotals:
    processed: int = 0
    new: int = 0
    updated: int = 0
    errors: int = 0

    def add(self, outcome: IngestionOutcome) -> SyncTotals:
        return SyncTotals(
            processed=self.processed + outcome.processed,
            new=self.new + outcome.new_count,
            updated=self.updated + outcome.updated_count,
            errors=self.errors + len(outcome.errors),
        )


@dataclass(frozen=True)
class PageStats:
    videos_in_page: int
    new_in_page: int
    updated_in_page: int
    is_empty_page: bool
    total_channel_videos: int | None = None
    videos_returned_by_api: int = 0


@dataclass(frozen=True)
class SyncFailure:
    kind: FailureKind
    message: str
    reset_at: str | None = None
    retry_after_seconds: int | None = None


@dataclass
class BatchSyncState:
    phase: SyncPhase = "idle"
    pages_processed: int = 0
    empty_page_streak: int = 0
    totals: SyncTotals = field(default_factory=SyncTotals)
    errors: list[str] = field(default_factory=list)
    start_time: float | None = None
    cursor: str | None = None
    cursors_consumed: list[str | None] = field(default_factory=list)
    total_estimate: int | None = None
    last_page_stats: PageStats | None = None
    stop_reason: str | None = None
    failure: SyncFailure | None = None
