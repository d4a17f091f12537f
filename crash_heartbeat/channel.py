from __future__ import annotations

import json
import logging
from threading import Lock
from typing import IO, Any, Iterable, Mapping

from .contracts import MessageChannel
from .supervisor import Supervisor

logger = logging.getLogger(__name__)


class DirectChannel(MessageChannel):
    """Posts straight into a supervisor living in the same process."""

    def __init__(self, supervisor: Supervisor) -> None:
        self._supervisor = supervisor

    def post(self, message: Mapping[str, Any]) -> None:
        self._supervisor.handle_message(dict(message))


class JsonLinesChannel(MessageChannel):
    """Writes one JSON object per line, e.g. to a supervisor subprocess's stdin."""

    def __init__(self, stream: IO[str]) -> None:
        self._stream = stream
        self._lock = Lock()

    def post(self, message: Mapping[str, Any]) -> None:
        line = json.dumps(dict(message), sort_keys=True, separators=(",", ":"), default=str)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


def serve_json_lines(supervisor: Supervisor, lines: Iterable[str]) -> int:
    """Feed JSON-line messages to ``supervisor`` until ``lines`` is exhausted.

    Blank and undecodable lines are skipped. Returns the number of messages
    the supervisor accepted.
    """
    accepted = 0
    for line in lines:
        text = line.strip()
        if not text:
            continue
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("skipping undecodable message line")
            continue
        if supervisor.handle_message(raw):
            accepted += 1
    return accepted
