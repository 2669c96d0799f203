from __future__ import annotations

import logging
from pathlib import Path

import pytest

from tubedesk.config import load_settings
from tubedesk.logging_config import LOG_FILE_NAME, configure_application_logging
from tubedesk.models.sync_contracts import SyncStartRequest
from tubedesk.telemetry import InMemoryTelemetrySink, TelemetryClient, build_telemetry_client


def test_settings_derive_paths_from_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEDESK_DATA_DIR", str(tmp_path / "data"))

    settings = load_settings()

    assert settings.db_path == (tmp_path / "data" / "tubedesk.db").resolve()
    assert settings.log_dir == (tmp_path / "data" / "logs").resolve()
    assert settings.youtube_daily_quota_limit == 10_000
    assert settings.sync_page_delay_seconds == pytest.approx(0.8)
    assert settings.sync_full_max_empty_pages == 5
    assert settings.sync_deep_max_empty_pages == 25


def test_explicit_db_path_is_kept(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEDESK_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TUBEDESK_DB_PATH", str(tmp_path / "elsewhere.db"))

    settings = load_settings()

    assert settings.db_path == (tmp_path / "elsewhere.db").resolve()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("0", False), ("off", False), ("YES", True), ("maybe", True)],
)
def test_boolean_env_values_fall_back_to_default(
    monkeypatch: pytest.MonkeyPatch,
    raw: str,
    expected: bool,
) -> None:
    monkeypatch.setenv("TUBEDESK_TELEMETRY_ENABLED", raw)

    assert load_settings().telemetry_enabled is expected


def test_blank_credentials_are_treated_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEDESK_YOUTUBE_ACCESS_TOKEN", "   ")

    assert load_settings().youtube_access_token is None


def test_rate_limits_configure_the_sync_limiter(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEDESK_YOUTUBE_SYNC_RATE_LIMIT_MAX_REQUESTS", "7")

    limits = load_settings().rate_limits()

    assert limits == {"youtube-sync": (7, 60.0)}


def test_start_request_maps_deep_scan_and_empty_page_defaults() -> None:
    deep = SyncStartRequest(mode="full", deep_scan=True).to_configuration(
        default_full_empty_pages=5,
        default_deep_empty_pages=25,
    )
    full = SyncStartRequest(mode="full").to_configuration(
        default_full_empty_pages=5,
        default_deep_empty_pages=25,
    )
    explicit = SyncStartRequest(mode="deep", max_empty_pages=2).to_configuration(
        default_full_empty_pages=5,
        default_deep_empty_pages=25,
    )

    assert (deep.mode, deep.max_empty_pages) == ("deep", 25)
    assert (full.mode, full.max_empty_pages) == ("full", 5)
    assert explicit.max_empty_pages == 2


def test_telemetry_redacts_credentials_and_trims_values() -> None:
    sink = InMemoryTelemetrySink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "sync.run.error",
        run_id="run-1",
        access_token="ya29.secret",
        message="x" * 500,
        pages=3,
        config={"mode": "full"},
    )

    event_name, attributes = sink.events[0]
    assert event_name == "sync.run.error"
    assert attributes["run_id"] == "run-1"
    assert attributes["access_token"] == "[redacted]"
    assert attributes["pages"] == 3
    assert attributes["config"] == "dict"
    message = attributes["message"]
    assert isinstance(message, str)
    assert message.endswith("...")
    assert len(message) == 203


def test_disabled_or_unknown_sinks_do_not_emit() -> None:
    assert build_telemetry_client(enabled=False, sink="log").enabled is False
    assert build_telemetry_client(enabled=True, sink="none").enabled is False
    assert build_telemetry_client(enabled=True, sink="carrier-pigeon").enabled is False
    assert build_telemetry_client(enabled=True, sink="memory").enabled is True


def test_logging_writes_json_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEDESK_DATA_DIR", str(tmp_path))

    log_file = configure_application_logging(load_settings())
    logging.getLogger("tubedesk.sync").info("sync page processed page=%s", 7)
    for handler in logging.getLogger("tubedesk").handlers:
        handler.flush()

    assert log_file.name == LOG_FILE_NAME
    contents = log_file.read_text(encoding="utf-8")
    assert "sync page processed page=7" in contents
    assert '"logger": "tubedesk.sync"' in contents
