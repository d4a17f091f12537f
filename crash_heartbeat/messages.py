"""Tagged messages exchanged between supervisor clients and a supervisor."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

UNKNOWN_PROCESS_ID = "unknown"

_REPORT_CONFIG_TYPES = frozenset({"report-config", "fetch-config"})

# Canonical wire name first, then accepted aliases.
_PROCESS_ID_KEYS = ("processId", "tabId", "process_id")
_TIMESTAMP_KEYS = ("timestamp", "ts")
_TIMEOUT_KEYS = ("timeoutMs", "timeout_ms")
_CHECK_INTERVAL_KEYS = ("checkIntervalMs", "check_interval_ms")


@dataclass(frozen=True)
class ConfigMessage:
    timeout_ms: int | None = None
    check_interval_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "config"}
        if self.timeout_ms is not None:
            payload["timeoutMs"] = self.timeout_ms
        if self.check_interval_ms is not None:
            payload["checkIntervalMs"] = self.check_interval_ms
        return payload


@dataclass(frozen=True)
class ReportConfigMessage:
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**self.params, "type": "report-config"}


@dataclass(frozen=True)
class HeartbeatMessage:
    process_id: str
    timestamp: int | None = None
    page: str | None = None
    meta: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "heartbeat", "processId": self.process_id}
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        if self.page is not None:
            payload["page"] = self.page
        if self.meta is not None:
            payload["meta"] = dict(self.meta)
        return payload


@dataclass(frozen=True)
class ExitMessage:
    process_id: str
    timestamp: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "exit", "processId": self.process_id}
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        return payload


Message = Union[ConfigMessage, ReportConfigMessage, HeartbeatMessage, ExitMessage]


def parse_message(raw: object) -> Message | None:
    """Decode one wire object; unknown or malformed input yields ``None``."""
    if isinstance(raw, (ConfigMessage, ReportConfigMessage, HeartbeatMessage, ExitMessage)):
        return raw
    if not isinstance(raw, Mapping):
        return None

    kind = raw.get("type")
    if kind == "config":
        return ConfigMessage(
            timeout_ms=_optional_int(_first(raw, _TIMEOUT_KEYS)),
            check_interval_ms=_optional_int(_first(raw, _CHECK_INTERVAL_KEYS)),
        )
    if kind in _REPORT_CONFIG_TYPES:
        params = {str(key): value for key, value in raw.items() if key != "type"}
        return ReportConfigMessage(params=params)
    if kind == "heartbeat":
        meta = raw.get("meta")
        page = raw.get("page")
        return HeartbeatMessage(
            process_id=_process_id(_first(raw, _PROCESS_ID_KEYS)),
            timestamp=_optional_int(_first(raw, _TIMESTAMP_KEYS)),
            page=page if isinstance(page, str) else None,
            meta=dict(meta) if isinstance(meta, Mapping) else None,
        )
    if kind == "exit":
        return ExitMessage(
            process_id=_process_id(_first(raw, _PROCESS_ID_KEYS)),
            timestamp=_optional_int(_first(raw, _TIMESTAMP_KEYS)),
        )
    return None


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> object:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


def _process_id(value: object) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return UNKNOWN_PROCESS_ID
