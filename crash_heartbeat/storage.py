from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import RLock, get_ident
from typing import Protocol

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> str | None:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...


class InMemoryKeyValueStorage(KeyValueStorage):
    """RLock-protected process-local string storage."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = str(value)


class JsonFileKeyValueStorage(KeyValueStorage):
    """String storage kept in one JSON object file that several processes share.

    Every call rereads the file, so writes from other processes become visible
    on the next access. There is no cross-process lock: concurrent writers
    race and the last ``os.replace`` wins. Reads propagate IO and decode
    errors; a write over corrupt content replaces it with a fresh object.
    """

    def __init__(self, path: str | Path) -> None:
        self._lock = RLock()
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get_item(self, key: str) -> str | None:
        with self._lock:
            value = self._read_locked().get(key)
            return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            items = self._read_for_write_locked()
            items[key] = str(value)
            self._write_locked(items)

    def _read_locked(self) -> dict[str, object]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not text.strip():
            return {}
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("invalid JSON payload type; expected object")
        return payload

    def _read_for_write_locked(self) -> dict[str, object]:
        try:
            return self._read_locked()
        except ValueError:
            logger.warning("overwriting corrupt storage file %s", self._path)
            return {}

    def _write_locked(self, items: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._path.with_name(f"{self._path.name}.{os.getpid()}.{get_ident()}.tmp")
        serialized = json.dumps(items, sort_keys=True, separators=(",", ":"))
        tmp_file.write_text(serialized, encoding="utf-8")
        tmp_file.replace(self._path)
