from __future__ import annotations

import logging
import random
import string
import time
from threading import Lock

from .config import DEFAULT_IDENTITY_KEY
from .contracts import IdentityProvider
from .storage import KeyValueStorage

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def generate_process_id(now_ms: int | None = None) -> str:
    """Return ``<ms>-<random base36>``, unique enough for one browsing/session scope."""
    stamp = int(time.time() * 1000) if now_ms is None else int(now_ms)
    suffix = "".join(random.choice(_BASE36) for _ in range(11))
    return f"{stamp}-{suffix}"


class SessionIdentityProvider(IdentityProvider):
    """Stable id persisted in session-scoped storage.

    The id survives reloads only as long as ``storage`` does. When storage is
    missing or failing a fresh id is generated and kept for this provider's
    lifetime, so one process never reports under two ids.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None,
        *,
        key: str = DEFAULT_IDENTITY_KEY,
    ) -> None:
        self._storage = storage
        self._key = key
        self._lock = Lock()
        self._fallback_id: str | None = None

    def get_stable_id(self) -> str:
        with self._lock:
            candidate = generate_process_id()
            if self._storage is None:
                return self._fallback_locked(candidate)
            try:
                existing = self._storage.get_item(self._key)
                if existing:
                    return existing
                self._storage.set_item(self._key, candidate)
                return candidate
            except Exception:
                logger.debug("identity storage unavailable; using ephemeral id", exc_info=True)
                return self._fallback_locked(candidate)

    def _fallback_locked(self, candidate: str) -> str:
        if self._fallback_id is None:
            self._fallback_id = candidate
        return self._fallback_id
