"""Staleness classification shared by the peer and supervisor variants."""

from __future__ import annotations

import logging
from typing import Callable, Literal

from .contracts import AbnormalExitPayload, HeartbeatRecord
from .store import SharedHeartbeatStore

logger = logging.getLogger(__name__)

Classification = Literal["live", "normal-exit", "abnormal"]
AbnormalExitCallback = Callable[[AbnormalExitPayload], None]


def classify_record(record: HeartbeatRecord, *, now_ms: int, timeout_ms: int) -> Classification:
    """Classify one record; the age must strictly exceed ``timeout_ms`` to count.

    A peer that wrote just before crashing and is inspected within
    ``timeout_ms`` stays ``live`` for now; that false negative is accepted.
    """
    if record.normal_exit:
        return "normal-exit"
    if int(now_ms) - record.timestamp_ms > int(timeout_ms):
        return "abnormal"
    return "live"


def check_abnormal_exit(
    store: SharedHeartbeatStore,
    *,
    current_id: str,
    timeout_ms: int,
    now_ms: int,
    on_abnormal_exit: AbnormalExitCallback | None = None,
) -> list[AbnormalExitPayload]:
    """Audit every peer record except ``current_id``'s own.

    Normal exits are dropped silently, stale records are reported once and
    dropped, everything else is left untouched. The map is written back only
    when something was removed.
    """
    records = store.load_all()
    reported: list[AbnormalExitPayload] = []
    changed = False

    for key, record in list(records.items()):
        if key == current_id or record.process_id == current_id:
            continue
        verdict = classify_record(record, now_ms=now_ms, timeout_ms=timeout_ms)
        if verdict == "normal-exit":
            del records[key]
            changed = True
        elif verdict == "abnormal":
            payload = AbnormalExitPayload.from_record(
                record,
                diff_ms=int(now_ms) - record.timestamp_ms,
            )
            logger.warning(
                "abnormal exit detected for %s (diff=%sms)",
                payload.process_id,
                payload.diff_ms,
            )
            reported.append(payload)
            _notify(on_abnormal_exit, payload)
            del records[key]
            changed = True

    if changed:
        store.save_all(records)
    return reported


def _notify(callback: AbnormalExitCallback | None, payload: AbnormalExitPayload) -> None:
    if callback is None:
        return
    try:
        callback(payload)
    except Exception:
        logger.debug("abnormal-exit callback failed for %s", payload.process_id, exc_info=True)
