from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".tubedesk"
_DERIVED_PATHS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("tubedesk.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = ("data_dir", *(name for name, _ in _DERIVED_PATHS))
_BOOLEAN_FIELDS: tuple[str, ...] = ("telemetry_enabled",)


def _under_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _coerce_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value, default)
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _blank_to_none(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


class AppSettings(BaseSettings):
    """Runtime configuration, read from `TUBEDESK_*` environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_prefix="TUBEDESK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root directory for the catalog database and logs.",
    )
    db_path: Path = Field(
        default=_under_data_dir(Path("tubedesk.db")),
        description="SQLite database path. Defaults to `${TUBEDESK_DATA_DIR}/tubedesk.db`.",
    )

    # YouTube Data API.
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="Base URL of the YouTube Data API v3.",
    )
    youtube_channel_id: str | None = Field(
        default=None,
        description="Channel to sync. When unset, the authenticated account's channel is used.",
    )
    youtube_access_token: str | None = Field(
        default=None,
        description="OAuth bearer token for the YouTube Data API. Refresh happens elsewhere.",
    )
    youtube_http_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for YouTube Data API requests.",
    )
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        ge=0,
        description="Daily YouTube Data API quota budget per user.",
    )
    youtube_quota_warning_percent: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Report a quota warning once usage reaches this fraction of the limit.",
    )

    # Sync engine.
    sync_page_size: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Items requested per page (the API caps this at 50).",
    )
    sync_page_cost: int = Field(
        default=2,
        ge=0,
        description="Quota units charged per page (one list call plus one details call).",
    )
    sync_short_max_duration_seconds: int = Field(
        default=60,
        ge=0,
        description="Videos at or below this duration are classified as shorts.",
    )
    sync_max_pages: int = Field(
        default=100,
        ge=1,
        description="Safety cap on pages fetched by a single run.",
    )
    sync_full_max_empty_pages: int = Field(
        default=5,
        ge=1,
        description="Default empty-page streak that ends a full sync.",
    )
    sync_deep_max_empty_pages: int = Field(
        default=25,
        ge=1,
        description="Default empty-page streak that ends a deep scan.",
    )
    sync_retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per page for transient failures before the run errors out.",
    )
    sync_retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay for exponential backoff between transient retries.",
    )
    sync_page_delay_seconds: float = Field(
        default=0.8,
        ge=0.0,
        description="Pause between consecutive page fetches.",
    )

    # Local rate limiting.
    youtube_sync_rate_limit_max_requests: int = Field(
        default=100,
        ge=1,
        description="Page fetches allowed per window for the `youtube-sync` limiter.",
    )
    youtube_sync_rate_limit_window_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Window length for the `youtube-sync` limiter.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_under_data_dir(Path("logs")),
        description="Directory for log files. Defaults to `${TUBEDESK_DATA_DIR}/logs`.",
    )
    log_level: str = Field(default="INFO", description="Console log level.")

    # Telemetry.
    telemetry_enabled: bool = Field(default=True, description="Emit sync telemetry events.")
    telemetry_sink: Literal["none", "log", "memory"] = Field(
        default="log",
        description="`log` writes structured events to the telemetry log; `none` drops them.",
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TUBEDESK_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log", "memory"}:
            return normalized
        raise ValueError("TUBEDESK_TELEMETRY_SINK must be one of: none, log, memory.")

    @field_validator("youtube_api_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("TUBEDESK_YOUTUBE_API_BASE_URL must be a non-empty string.")
        return value.strip().rstrip("/")

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _coerce_bool(value, default=default_value)

    @field_validator("youtube_channel_id", "youtube_access_token", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _blank_to_none(value)

    def rate_limits(self) -> dict[str, tuple[int, float]]:
        return {
            "youtube-sync": (
                self.youtube_sync_rate_limit_max_requests,
                self.youtube_sync_rate_limit_window_seconds,
            ),
        }


def _derive_paths(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DERIVED_PATHS:
        if field_name not in settings.model_fields_set:
            updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def load_settings() -> AppSettings:
    settings = _derive_paths(AppSettings())
    return settings.model_copy(
        update={name: _resolve_path(getattr(settings, name)) for name in _PATH_FIELDS}
    )
