from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_STORAGE_KEY = "__session_heartbeat__"
DEFAULT_IDENTITY_KEY = "__session_tab_id__"
MIN_CHECK_INTERVAL_MS = 500


@dataclass(frozen=True)
class CrashHeartbeatConfig:
    """Heartbeat cadence and staleness thresholds shared by both detection variants."""

    heartbeat_interval_ms: int = 3000
    timeout_ms: int = 15000
    check_interval_ms: int = 3000
    storage_key: str = DEFAULT_STORAGE_KEY
    identity_key: str = DEFAULT_IDENTITY_KEY
    page: str = ""

    def __post_init__(self) -> None:
        storage_key = (self.storage_key or "").strip()
        identity_key = (self.identity_key or "").strip()
        if int(self.heartbeat_interval_ms) < 1:
            raise ValueError("heartbeat_interval_ms must be >= 1")
        if int(self.timeout_ms) < 0:
            raise ValueError("timeout_ms must be >= 0")
        if int(self.check_interval_ms) < 1:
            raise ValueError("check_interval_ms must be >= 1")
        if not storage_key:
            raise ValueError("storage_key must be a non-empty string")
        if not identity_key:
            raise ValueError("identity_key must be a non-empty string")

        object.__setattr__(self, "heartbeat_interval_ms", int(self.heartbeat_interval_ms))
        object.__setattr__(self, "timeout_ms", int(self.timeout_ms))
        object.__setattr__(self, "check_interval_ms", int(self.check_interval_ms))
        object.__setattr__(self, "storage_key", storage_key)
        object.__setattr__(self, "identity_key", identity_key)
        object.__setattr__(self, "page", str(self.page or ""))

    @property
    def effective_check_interval_ms(self) -> int:
        return max(MIN_CHECK_INTERVAL_MS, self.check_interval_ms)


def load_config_from_env(env: Mapping[str, str] | None = None) -> CrashHeartbeatConfig:
    """Build a config from ``CRASH_HEARTBEAT_*`` variables, falling back to defaults."""
    source_env = dict(os.environ if env is None else env)
    defaults = CrashHeartbeatConfig()

    return CrashHeartbeatConfig(
        heartbeat_interval_ms=_parse_int(
            source_env.get("CRASH_HEARTBEAT_HEARTBEAT_INTERVAL_MS"),
            default=defaults.heartbeat_interval_ms,
            field_name="CRASH_HEARTBEAT_HEARTBEAT_INTERVAL_MS",
        ),
        timeout_ms=_parse_int(
            source_env.get("CRASH_HEARTBEAT_TIMEOUT_MS"),
            default=defaults.timeout_ms,
            field_name="CRASH_HEARTBEAT_TIMEOUT_MS",
        ),
        check_interval_ms=_parse_int(
            source_env.get("CRASH_HEARTBEAT_CHECK_INTERVAL_MS"),
            default=defaults.check_interval_ms,
            field_name="CRASH_HEARTBEAT_CHECK_INTERVAL_MS",
        ),
        storage_key=source_env.get("CRASH_HEARTBEAT_STORAGE_KEY", defaults.storage_key),
        page=source_env.get("CRASH_HEARTBEAT_PAGE", defaults.page),
    )


def _parse_int(raw: str | None, *, default: int, field_name: str) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{field_name} must be an integer") from exc
