from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from threading import RLock
from typing import Any, Mapping

from .config import DEFAULT_STORAGE_KEY
from .contracts import HeartbeatRecord
from .storage import KeyValueStorage

logger = logging.getLogger(__name__)


class SharedHeartbeatStore:
    """Heartbeat records of every peer, kept under one well-known storage key.

    Each operation reads the whole map, changes one key and writes the whole
    map back. Peers race without a lock; since a process only writes its own
    key meaningfully, a lost update is corrected on the next pass. Storage and
    decode failures are swallowed: a failed read is an empty map and a failed
    write is a lost heartbeat.
    """

    def __init__(self, storage: KeyValueStorage | None, *, key: str = DEFAULT_STORAGE_KEY) -> None:
        self._storage = storage
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    def load_all(self) -> dict[str, HeartbeatRecord]:
        if self._storage is None:
            return {}
        try:
            raw = self._storage.get_item(self._key)
        except Exception:
            logger.debug("heartbeat storage read failed", exc_info=True)
            return {}
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("discarding corrupt heartbeat map under %s", self._key)
            return {}
        return _coerce_record_map(payload)

    def save_all(self, records: Mapping[str, HeartbeatRecord]) -> bool:
        if self._storage is None:
            return False
        try:
            serialized = json.dumps(
                {key: _record_to_payload(rec) for key, rec in records.items()},
                sort_keys=True,
                separators=(",", ":"),
            )
            self._storage.set_item(self._key, serialized)
        except Exception:
            logger.debug("heartbeat storage write failed", exc_info=True)
            return False
        return True

    def get(self, process_id: str) -> HeartbeatRecord | None:
        return self.load_all().get(process_id)

    def write_heartbeat(
        self,
        process_id: str,
        *,
        now_ms: int,
        page: str | None = None,
        meta: Mapping[str, Any] | None = None,
        normal_exit: bool = False,
    ) -> HeartbeatRecord | None:
        """Merge one pulse into the stored map; ``None`` when the write was lost."""
        records = self.load_all()
        record = merge_heartbeat(
            records.get(process_id),
            process_id=process_id,
            now_ms=now_ms,
            page=page,
            meta=meta,
            normal_exit=normal_exit,
        )
        records[process_id] = record
        if not self.save_all(records):
            return None
        return record

    def mark_normal_exit(self, process_id: str) -> bool:
        records = self.load_all()
        existing = records.get(process_id)
        if existing is None:
            return False
        records[process_id] = replace(existing, normal_exit=True)
        return self.save_all(records)


def merge_heartbeat(
    existing: HeartbeatRecord | None,
    *,
    process_id: str,
    now_ms: int,
    page: str | None,
    meta: Mapping[str, Any] | None,
    normal_exit: bool,
) -> HeartbeatRecord:
    """Fold one pulse into the previous record of the same process.

    The timestamp never moves backwards. ``page=None`` and ``meta=None`` keep
    what was stored; a ``meta`` mapping is merged over the stored bag.
    """
    if existing is None:
        return HeartbeatRecord(
            process_id=process_id,
            timestamp_ms=int(now_ms),
            page=page or "",
            normal_exit=bool(normal_exit),
            meta=dict(meta or {}),
        )
    merged_meta = dict(existing.meta)
    if meta is not None:
        merged_meta.update(meta)
    return HeartbeatRecord(
        process_id=process_id,
        timestamp_ms=max(int(now_ms), existing.timestamp_ms),
        page=existing.page if page is None else page,
        normal_exit=bool(normal_exit),
        meta=merged_meta,
    )


@dataclass(frozen=True)
class TrackedClient:
    process_id: str
    last_beat_ms: int
    first_seen_ms: int
    page: str = ""
    meta: dict[str, Any] = field(default_factory=dict)

    def as_record(self) -> HeartbeatRecord:
        return HeartbeatRecord(
            process_id=self.process_id,
            timestamp_ms=self.last_beat_ms,
            page=self.page,
            meta=dict(self.meta),
        )


class WatchSet:
    """RLock-protected in-memory map of clients a supervisor is watching."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._clients: dict[str, TrackedClient] = {}

    def beat(
        self,
        process_id: str,
        *,
        now_ms: int,
        page: str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> bool:
        """Refresh or create an entry; True when the client was not tracked before."""
        with self._lock:
            existing = self._clients.get(process_id)
            if existing is None:
                self._clients[process_id] = TrackedClient(
                    process_id=process_id,
                    last_beat_ms=int(now_ms),
                    first_seen_ms=int(now_ms),
                    page=page or "",
                    meta=dict(meta or {}),
                )
                return True
            merged_meta = dict(existing.meta)
            if meta is not None:
                merged_meta.update(meta)
            self._clients[process_id] = replace(
                existing,
                last_beat_ms=max(int(now_ms), existing.last_beat_ms),
                page=existing.page if page is None else page,
                meta=merged_meta,
            )
            return False

    def remove(self, process_id: str) -> bool:
        with self._lock:
            return self._clients.pop(process_id, None) is not None

    def get(self, process_id: str) -> TrackedClient | None:
        with self._lock:
            return self._clients.get(process_id)

    def items(self) -> list[TrackedClient]:
        with self._lock:
            return list(self._clients.values())

    def clear(self) -> None:
        with self._lock:
            self._clients.clear()

    def snapshot(self) -> dict[str, TrackedClient]:
        with self._lock:
            return dict(self._clients)

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, process_id: object) -> bool:
        with self._lock:
            return process_id in self._clients


def _record_to_payload(record: HeartbeatRecord) -> dict[str, object]:
    return {
        "process_id": record.process_id,
        "timestamp_ms": int(record.timestamp_ms),
        "page": record.page,
        "normal_exit": bool(record.normal_exit),
        "meta": dict(record.meta),
    }


def _coerce_bool(value: object, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    return default


def _coerce_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _coerce_str(value: object, *, default: str = "") -> str:
    if isinstance(value, str):
        return value
    return default


def _coerce_record_map(value: object) -> dict[str, HeartbeatRecord]:
    if not isinstance(value, dict):
        return {}

    records: dict[str, HeartbeatRecord] = {}
    for key, raw in value.items():
        if not isinstance(key, str) or not isinstance(raw, dict):
            continue
        process_id = _coerce_str(raw.get("process_id"), default=key) or key
        meta = raw.get("meta")
        records[key] = HeartbeatRecord(
            process_id=process_id,
            timestamp_ms=_coerce_int(raw.get("timestamp_ms"), default=0),
            page=_coerce_str(raw.get("page")),
            normal_exit=_coerce_bool(raw.get("normal_exit"), default=False),
            meta=dict(meta) if isinstance(meta, dict) else {},
        )
    return records
