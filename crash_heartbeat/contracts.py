from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol


@dataclass(frozen=True)
class HeartbeatRecord:
    process_id: str
    timestamp_ms: int
    page: str = ""
    normal_exit: bool = False
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AbnormalExitPayload:
    """A stale record as handed to abnormal-exit callbacks."""

    process_id: str
    timestamp_ms: int
    diff_ms: int
    page: str = ""
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: HeartbeatRecord, *, diff_ms: int) -> "AbnormalExitPayload":
        return cls(
            process_id=record.process_id,
            timestamp_ms=record.timestamp_ms,
            diff_ms=int(diff_ms),
            page=record.page,
            meta=dict(record.meta),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process_id,
            "timestamp_ms": self.timestamp_ms,
            "diff_ms": self.diff_ms,
            "page": self.page,
            "meta": dict(self.meta),
        }


class IdentityProvider(Protocol):
    def get_stable_id(self) -> str:
        """Return the opaque id of this process; never raises."""


class ReportSink(Protocol):
    def deliver(self, payload: Mapping[str, Any]) -> None:
        """Deliver one structured report, fire-and-forget."""


class MessageChannel(Protocol):
    def post(self, message: Mapping[str, Any]) -> None:
        """Forward one tagged message to the supervisor."""
