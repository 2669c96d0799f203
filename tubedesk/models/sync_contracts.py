from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from tubedesk.services.sync_types import SyncConfiguration

SyncModeName = Literal["incremental", "full", "deep"]
SyncPhaseName = Literal["idle", "running", "paused", "stopping", "completed", "error"]
SyncStepName = Literal["starting", "fetching", "paused", "stopping", "completed", "error"]


class SyncStartRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: SyncModeName = "incremental"
    include_regular: bool = True
    include_shorts: bool = True
    sync_metadata: bool = True
    max_items: int = Field(default=50, ge=1)
    deep_scan: bool = False
    max_empty_pages: int | None = Field(default=None, ge=1)

    def to_configuration(
        self,
        *,
        default_full_empty_pages: int,
        default_deep_empty_pages: int,
    ) -> SyncConfiguration:
        mode: SyncModeName = "deep" if self.deep_scan else self.mode
        if self.max_empty_pages is not None:
            max_empty_pages = self.max_empty_pages
        elif mode == "deep":
            max_empty_pages = default_deep_empty_pages
        else:
            max_empty_pages = default_full_empty_pages
        return SyncConfiguration(
            mode=mode,
            include_regular=self.include_regular,
            include_shorts=self.include_shorts,
            sync_metadata=self.sync_metadata,
            max_items=self.max_items,
            max_empty_pages=max_empty_pages,
        )


class ProcessingSpeed(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    videos_per_minute: float
    elapsed_time_ms: int
    eta: datetime | None = None


class PageStatsModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    videos_in_page: int
    new_in_page: int
    updated_in_page: int
    is_empty_page: bool
    total_channel_videos: int | None = None


class TotalsModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    processed: int = 0
    new: int = 0
    updated: int = 0
    errors: int = 0


class FailureModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: str
    message: str
    reset_at: str | None = None
    retry_after_seconds: int | None = None


def _default_errors() -> tuple[str, ...]:
    return ()


class ProgressSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    step: SyncStepName
    phase: SyncPhaseName
    current: int
    total: int | None = None
    message: str
    errors: tuple[str, ...] = Field(default_factory=_default_errors)
    current_page: int
    total_pages: int | None = None
    videos_processed: int
    total_videos_estimated: int | None = None
    processing_speed: ProcessingSpeed
    page_stats: PageStatsModel | None = None
    totals: TotalsModel = Field(default_factory=TotalsModel)
    pages_processed: int = 0
    empty_page_streak: int = 0
    cursor: str | None = None
    progress_percentage: int = 0
    stop_reason: str | None = None
    failure: FailureModel | None = None


class QuotaStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date_utc: str
    requests_used: int
    daily_limit: int
    remaining: int
    percentage_used: int
    warning: bool
    exceeded: bool
    reset_at: datetime
