from __future__ import annotations

from functools import lru_cache

import httpx

from tubedesk.config import AppSettings, load_settings
from tubedesk.repositories.catalog_repository import CatalogRepository
from tubedesk.repositories.database import Database
from tubedesk.repositories.youtube_quota_repository import YouTubeQuotaRepository
from tubedesk.services.batch_sync_controller import BatchSyncController
from tubedesk.services.ingestion import IngestionReducer
from tubedesk.services.page_fetcher import CatalogPageFetcher, StaticAccessTokenProvider
from tubedesk.services.progress_reporter import ProgressReporter
from tubedesk.services.quota_tracker import QuotaTracker
from tubedesk.services.rate_limiter import YOUTUBE_SYNC_LIMITER_KEY, RateLimiterRegistry
from tubedesk.services.sync_service import CatalogSyncService
from tubedesk.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_rate_limiters() -> RateLimiterRegistry:
    return RateLimiterRegistry(get_settings().rate_limits())


@lru_cache(maxsize=1)
def get_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=get_settings().youtube_http_timeout_seconds)


def build_quota_tracker(user_id: str) -> QuotaTracker:
    settings = get_settings()
    return QuotaTracker(
        YouTubeQuotaRepository(get_database()),
        user_id=user_id,
        daily_limit=settings.youtube_daily_quota_limit,
        warning_percent=settings.youtube_quota_warning_percent,
    )


def build_sync_controller(
    user_id: str,
    reporter: ProgressReporter,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> BatchSyncController:
    settings = get_settings()
    fetcher = CatalogPageFetcher(
        http_client or get_http_client(),
        StaticAccessTokenProvider(settings.youtube_access_token),
        build_quota_tracker(user_id),
        get_rate_limiters().get(YOUTUBE_SYNC_LIMITER_KEY),
        base_url=settings.youtube_api_base_url,
        channel_id=settings.youtube_channel_id,
        page_cost=settings.sync_page_cost,
        short_max_duration_seconds=settings.sync_short_max_duration_seconds,
    )
    return BatchSyncController(
        fetcher,
        IngestionReducer(CatalogRepository(get_database()), user_id=user_id),
        reporter,
        page_size=settings.sync_page_size,
        max_pages=settings.sync_max_pages,
        retry_max_attempts=settings.sync_retry_max_attempts,
        retry_base_delay_seconds=settings.sync_retry_base_delay_seconds,
        page_delay_seconds=settings.sync_page_delay_seconds,
        telemetry=get_telemetry(),
        user_id=user_id,
    )


@lru_cache(maxsize=1)
def get_sync_service() -> CatalogSyncService:
    settings = get_settings()
    return CatalogSyncService(
        controller_factory=build_sync_controller,
        quota_tracker_factory=build_quota_tracker,
        page_size=settings.sync_page_size,
        page_cost=settings.sync_page_cost,
    )


def reset_cached_dependencies() -> None:
    get_sync_service.cache_clear()
    get_http_client.cache_clear()
    get_rate_limiters.cache_clear()
    get_telemetry.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
