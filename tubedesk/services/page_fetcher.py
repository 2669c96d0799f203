from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Protocol, cast

import httpx

from tubedesk.services.quota_tracker import QuotaTracker
from tubedesk.services.rate_limiter import FixedWindowRateLimiter
from tubedesk.services.sync_types import (
    CatalogItem,
    FailureKind,
    PageResult,
    SyncConfiguration,
    SyncFailure,
    VideoType,
)

LOGGER = logging.getLogger("tubedesk.page_fetcher")

DEFAULT_YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3"
DEFAULT_PAGE_COST = 2
DEFAULT_SHORT_MAX_DURATION_SECONDS = 60
MAX_PAGE_SIZE = 50
CHANNEL_RESOLUTION_COST = 1
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
QUOTA_ERROR_REASONS: frozenset[str] = frozenset({"quotaexceeded", "dailylimitexceeded"})
RATE_LIMIT_ERROR_REASONS: frozenset[str] = frozenset(
    {"ratelimitexceeded", "userratelimitexceeded"}
)
THUMBNAIL_QUALITY_ORDER: tuple[str, ...] = ("maxres", "standard", "high", "medium", "default")


class CatalogFetchError(Exception):
    kind: FailureKind = "unknown"
    transient: bool = False

    def to_failure(self) -> SyncFailure:
        return SyncFailure(kind=self.kind, message=str(self))


class QuotaExceededError(CatalogFetchError):
    kind: FailureKind = "quota_exceeded"

    def __init__(self, message: str, *, reset_at: datetime) -> None:
        super().__init__(message)
        self.reset_at = reset_at

    def to_failure(self) -> SyncFailure:
        return SyncFailure(kind=self.kind, message=str(self), reset_at=self.reset_at.isoformat())


class RateLimitedError(CatalogFetchError):
    kind: FailureKind = "rate_limited"
    transient = True

    def __init__(self, message: str, *, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(0.0, retry_after_seconds)

    def to_failure(self) -> SyncFailure:
        return SyncFailure(
            kind=self.kind,
            message=str(self),
            retry_after_seconds=math.ceil(self.retry_after_seconds),
        )


class AuthExpiredError(CatalogFetchError):
    kind: FailureKind = "auth_expired"


class NetworkError(CatalogFetchError):
    kind: FailureKind = "network"
    transient = True


class UnknownFetchError(CatalogFetchError):
    kind: FailureKind = "unknown"


class AccessTokenProvider(Protocol):
    async def get_access_token(self) -> str:
        ...

    async def handle_auth_expired(self) -> None:
        ...


class StaticAccessTokenProvider:
    def __init__(self, access_token: str | None) -> None:
        self._access_token = access_token

    async def get_access_token(self) -> str:
        if not self._access_token:
            raise AuthExpiredError(
                "No YouTube access token configured; reconnect the YouTube account."
            )
        return self._access_token

    async def handle_auth_expired(self) -> None:
        LOGGER.warning("youtube access token rejected; credentials must be refreshed out-of-band")


class CatalogPageFetcher:
    """Reads one page of a channel's uploads, newest first.

    Every page is gated by the daily quota and the sync rate limiter before any request leaves
    the process. Failures surface as ``CatalogFetchError`` subclasses; nothing is retried here.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: AccessTokenProvider,
        quota_tracker: QuotaTracker,
        rate_limiter: FixedWindowRateLimiter,
        *,
        base_url: str = DEFAULT_YOUTUBE_API_BASE_URL,
        channel_id: str | None = None,
        page_cost: int = DEFAULT_PAGE_COST,
        short_max_duration_seconds: int = DEFAULT_SHORT_MAX_DURATION_SECONDS,
    ) -> None:
        self._http_client = http_client
        self._token_provider = token_provider
        self._quota_tracker = quota_tracker
        self._rate_limiter = rate_limiter
        self._base_url = base_url.rstrip("/")
        self._channel_id = channel_id
        self._page_cost = max(0, page_cost)
        self._short_max_duration_seconds = short_max_duration_seconds
        self._uploads_playlist_id = _uploads_playlist_for_channel(channel_id)

    @property
    def page_cost(self) -> int:
        return self._page_cost

    async def fetch_page(
        self,
        cursor: str | None,
        config: SyncConfiguration,
        *,
        page_size: int = MAX_PAGE_SIZE,
    ) -> PageResult:
        try:
            return await self._fetch_page(cursor, config, page_size=page_size)
        except AuthExpiredError:
            await self._token_provider.handle_auth_expired()
            raise

    async def _fetch_page(
        self,
        cursor: str | None,
        config: SyncConfiguration,
        *,
        page_size: int,
    ) -> PageResult:
        playlist_id = await self._resolve_uploads_playlist_id()
        self._ensure_dispatch_allowed(self._page_cost)
        access_token = await self._token_provider.get_access_token()

        list_params: dict[str, str | int] = {
            "part": "contentDetails",
            "playlistId": playlist_id,
            "maxResults": max(1, min(MAX_PAGE_SIZE, page_size)),
        }
        if cursor is not None:
            list_params["pageToken"] = cursor
        list_payload = await self._get_json("playlistItems", list_params, access_token)

        video_ids: list[str] = []
        for raw_item in _as_list(list_payload.get("items")):
            content_details = _as_dict(_as_dict(raw_item).get("contentDetails"))
            video_id = content_details.get("videoId")
            if isinstance(video_id, str) and video_id.strip():
                video_ids.append(video_id)

        items: list[CatalogItem] = []
        if video_ids:
            parts = "snippet,contentDetails"
            if config.sync_metadata:
                parts += ",statistics,status"
            details_payload = await self._get_json(
                "videos",
                {"part": parts, "id": ",".join(video_ids), "maxResults": MAX_PAGE_SIZE},
                access_token,
            )
            details_by_id: dict[str, dict[str, Any]] = {}
            for raw_detail in _as_list(details_payload.get("items")):
                detail = _as_dict(raw_detail)
                detail_id = detail.get("id")
                if isinstance(detail_id, str):
                    details_by_id[detail_id] = detail

            for video_id in video_ids:
                detail = details_by_id.get(video_id)
                if detail is None:
                    # Deleted or private uploads stay listed in the playlist without details.
                    LOGGER.debug("youtube details missing video_id=%s", video_id)
                    continue
                items.append(self._map_item(video_id, detail))

        self._rate_limiter.increment_count()
        self._quota_tracker.record_usage(self._page_cost)

        page_info = _as_dict(list_payload.get("pageInfo"))
        raw_next = list_payload.get("nextPageToken")
        next_cursor = raw_next if isinstance(raw_next, str) and raw_next.strip() else None
        LOGGER.info(
            "youtube page fetched cursor=%s listed=%s mapped=%s has_next=%s",
            cursor or "-",
            len(video_ids),
            len(items),
            next_cursor is not None,
        )
        return PageResult(
            items=tuple(items),
            next_cursor=next_cursor,
            total_estimate=_coerce_int(page_info.get("totalResults")),
            items_returned=len(video_ids),
        )

    async def _resolve_uploads_playlist_id(self) -> str:
        if self._uploads_playlist_id is not None:
            return self._uploads_playlist_id

        self._ensure_dispatch_allowed(CHANNEL_RESOLUTION_COST)
        access_token = await self._token_provider.get_access_token()
        payload = await self._get_json(
            "channels",
            {"part": "contentDetails", "mine": "true", "maxResults": 1},
            access_token,
        )
        self._rate_limiter.increment_count()
        self._quota_tracker.record_usage(CHANNEL_RESOLUTION_COST)

        items = _as_list(payload.get("items"))
        if not items:
            raise UnknownFetchError("Authenticated account has no YouTube channel")
        first_item = _as_dict(items[0])
        content_details = _as_dict(first_item.get("contentDetails"))
        related = _as_dict(content_details.get("relatedPlaylists"))
        uploads = related.get("uploads")
        if not isinstance(uploads, str) or not uploads.strip():
            raise UnknownFetchError("Channel response did not include an uploads playlist")

        raw_channel_id = first_item.get("id")
        if isinstance(raw_channel_id, str):
            self._channel_id = raw_channel_id
        self._uploads_playlist_id = uploads
        return uploads

    def _ensure_dispatch_allowed(self, cost: int) -> None:
        decision = self._quota_tracker.check_and_reserve(cost)
        if not decision.allowed:
            raise QuotaExceededError(
                (
                    "YouTube API daily quota exhausted "
                    f"({decision.requests_used}/{decision.daily_limit} used)"
                ),
                reset_at=decision.reset_at,
            )
        if self._rate_limiter.check_limit():
            retry_after = self._rate_limiter.remaining_time_seconds()
            raise RateLimitedError(
                f"Local rate limit reached for {self._rate_limiter.key}",
                retry_after_seconds=retry_after,
            )

    async def _get_json(
        self,
        resource: str,
        params: dict[str, str | int],
        access_token: str,
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                f"{self._base_url}/{resource}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TransportError as exc:
            raise NetworkError(
                f"YouTube API {resource} request failed: {_summarize_exception_message(exc)}"
            ) from exc

        if response.status_code >= 400:
            raise self._translate_error_response(resource, response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise UnknownFetchError(f"YouTube API {resource} returned invalid JSON") from exc
        return _as_dict(payload)

    def _translate_error_response(
        self,
        resource: str,
        response: httpx.Response,
    ) -> CatalogFetchError:
        status_code = response.status_code
        error_payload = _extract_error_payload(response)
        reasons = _extract_error_reasons(error_payload)
        message = _extract_error_message(error_payload) or f"HTTP {status_code}"
        LOGGER.warning(
            "youtube api error resource=%s status=%s reasons=%s",
            resource,
            status_code,
            ",".join(sorted(reasons)) or "-",
        )

        if status_code == 401:
            return AuthExpiredError(f"YouTube rejected the access token: {message}")
        if status_code == 403 and reasons & QUOTA_ERROR_REASONS:
            self._quota_tracker.mark_exhausted()
            return QuotaExceededError(
                f"YouTube API quota exceeded: {message}",
                reset_at=self._quota_tracker.reset_at(),
            )
        if status_code == 429 or (status_code == 403 and reasons & RATE_LIMIT_ERROR_REASONS):
            retry_after = _parse_retry_after_seconds(response.headers.get("Retry-After"))
            return RateLimitedError(
                f"YouTube API rate limited: {message}",
                retry_after_seconds=retry_after if retry_after is not None else 1.0,
            )
        if status_code == 403:
            return AuthExpiredError(f"YouTube denied access: {message}")
        if status_code >= 500:
            return NetworkError(f"YouTube API unavailable ({status_code}): {message}")
        return UnknownFetchError(f"YouTube API {resource} failed ({status_code}): {message}")

    def _map_item(self, video_id: str, detail: dict[str, Any]) -> CatalogItem:
        snippet = _as_dict(detail.get("snippet"))
        content_details = _as_dict(detail.get("contentDetails"))
        statistics = _as_dict(detail.get("statistics"))
        status = _as_dict(detail.get("status"))

        duration_seconds = _parse_iso8601_duration_seconds(content_details.get("duration")) or 0
        video_type: VideoType = (
            "short" if duration_seconds <= self._short_max_duration_seconds else "regular"
        )
        raw_title = snippet.get("title")
        raw_published_at = snippet.get("publishedAt")
        raw_description = snippet.get("description")

        return CatalogItem(
            youtube_id=video_id,
            title=raw_title if isinstance(raw_title, str) else video_id,
            published_at=raw_published_at if isinstance(raw_published_at, str) else "",
            duration_seconds=duration_seconds,
            description=raw_description if isinstance(raw_description, str) else "",
            video_type=video_type,
            category_id=_coerce_nonempty_string(snippet.get("categoryId")),
            tags=_extract_string_list(snippet.get("tags")),
            views_count=_coerce_int(statistics.get("viewCount")),
            likes_count=_coerce_int(statistics.get("likeCount")),
            comments_count=_coerce_int(statistics.get("commentCount")),
            privacy_status=_coerce_nonempty_string(status.get("privacyStatus")),
            thumbnail_url=_best_thumbnail_url(snippet),
        )


def _uploads_playlist_for_channel(channel_id: str | None) -> str | None:
    if channel_id is None:
        return None
    normalized = channel_id.strip()
    if normalized.startswith("UC") and len(normalized) > 2:
        return f"UU{normalized[2:]}"
    return None


def _extract_error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return _as_dict(_as_dict(payload).get("error"))


def _extract_error_reasons(error_payload: dict[str, Any]) -> set[str]:
    reasons: set[str] = set()
    for raw_error in _as_list(error_payload.get("errors")):
        reason = _as_dict(raw_error).get("reason")
        if isinstance(reason, str) and reason.strip():
            reasons.add(reason.strip().lower())
    return reasons


def _extract_error_message(error_payload: dict[str, Any]) -> str | None:
    return _coerce_nonempty_string(error_payload.get("message"))


def _parse_retry_after_seconds(raw_value: str | None) -> float | None:
    if raw_value is None:
        return None
    try:
        return max(0.0, float(raw_value.strip()))
    except ValueError:
        return None


def _parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _best_thumbnail_url(snippet: dict[str, Any]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for quality in THUMBNAIL_QUALITY_ORDER:
        url_value = _as_dict(thumbnails.get(quality)).get("url")
        if isinstance(url_value, str) and url_value.strip():
            return url_value
    return None


def _extract_string_list(raw_value: object) -> tuple[str, ...]:
    if not isinstance(raw_value, list):
        return ()
    values: list[str] = []
    for raw_item in cast(list[Any], raw_value):
        if isinstance(raw_item, str) and raw_item.strip():
            values.append(raw_item)
    return tuple(values)


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
