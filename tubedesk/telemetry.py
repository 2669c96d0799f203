from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "tubedesk.telemetry"

TelemetryValue = bool | int | float | str | None
TelemetrySinkName = Literal["none", "log", "memory"]

_REDACTED_KEY_FRAGMENTS: tuple[str, ...] = (
    "access_token",
    "authorization",
    "cookie",
    "credential",
    "description",
    "password",
    "secret",
    "token",
)
_MAX_VALUE_LENGTH = 200


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class NullTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        del event_name, attributes


class LogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass
class InMemoryTelemetrySink:
    events: list[tuple[str, dict[str, TelemetryValue]]] = field(default_factory=list)

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self.events.append((event_name, dict(attributes)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NullTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(event_name=event_name, attributes=_clean_attributes(attributes))


def build_telemetry_client(*, enabled: bool, sink: str) -> TelemetryClient:
    normalized = sink.strip().lower()
    if not enabled or normalized == "none":
        return TelemetryClient.disabled()
    if normalized == "log":
        return TelemetryClient(enabled=True, sink=LogTelemetrySink())
    if normalized == "memory":
        return TelemetryClient(enabled=True, sink=InMemoryTelemetrySink())

    logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
        "unknown telemetry sink %s; telemetry disabled",
        sink,
    )
    return TelemetryClient.disabled()


def _clean_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    cleaned: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(fragment in key for fragment in _REDACTED_KEY_FRAGMENTS):
            cleaned[key] = "[redacted]"
        else:
            cleaned[key] = _clean_value(raw_value)
    return cleaned


def _clean_value(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LENGTH:
            return collapsed[:_MAX_VALUE_LENGTH] + "..."
        return collapsed
    return type(value).__name__
