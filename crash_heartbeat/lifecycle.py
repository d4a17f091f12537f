from __future__ import annotations

import atexit
import logging
from threading import RLock
from typing import Callable, Literal, cast

logger = logging.getLogger(__name__)

LifecycleSignal = Literal[
    "becoming-hidden",
    "unloading",
    "page-hidden",
    "becoming-visible",
    "page-shown",
]

LEAVING_SIGNALS: tuple[LifecycleSignal, ...] = ("becoming-hidden", "unloading", "page-hidden")
RESUMING_SIGNALS: tuple[LifecycleSignal, ...] = ("becoming-visible", "page-shown")

_VALID_SIGNALS: tuple[LifecycleSignal, ...] = LEAVING_SIGNALS + RESUMING_SIGNALS

LifecycleHandler = Callable[[LifecycleSignal], None]
Unsubscribe = Callable[[], None]


class LifecycleSignalBus:
    """Fan-out of host lifecycle signals to independently registered handlers.

    A failing handler never prevents the others from running; hosts do not
    guarantee which signals fire, so every handler gets its own chance.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: dict[LifecycleSignal, list[LifecycleHandler]] = {
            signal: [] for signal in _VALID_SIGNALS
        }
        self._handler_failures = 0

    @property
    def handler_failures(self) -> int:
        with self._lock:
            return self._handler_failures

    def subscribe(self, signal: LifecycleSignal, handler: LifecycleHandler) -> Unsubscribe:
        normalized = _validate_signal(signal)
        with self._lock:
            self._handlers[normalized].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers[normalized]
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def emit(self, signal: LifecycleSignal) -> int:
        """Run every handler for ``signal``; returns how many completed."""
        normalized = _validate_signal(signal)
        with self._lock:
            handlers = list(self._handlers[normalized])
        completed = 0
        for handler in handlers:
            try:
                handler(normalized)
                completed += 1
            except Exception:
                with self._lock:
                    self._handler_failures += 1
                logger.debug("lifecycle handler failed for %s", normalized, exc_info=True)
        return completed

    def handler_count(self, signal: LifecycleSignal | None = None) -> int:
        with self._lock:
            if signal is None:
                return sum(len(handlers) for handlers in self._handlers.values())
            return len(self._handlers[_validate_signal(signal)])


def bind_interpreter_exit(bus: LifecycleSignalBus) -> Unsubscribe:
    """Emit ``unloading`` when the interpreter shuts down normally.

    ``atexit`` hooks do not run when the process is killed by a signal or
    aborts, which is exactly the exit the heartbeat is meant to catch.
    """

    def _on_exit() -> None:
        bus.emit("unloading")

    atexit.register(_on_exit)

    def _unbind() -> None:
        atexit.unregister(_on_exit)

    return _unbind


def _validate_signal(signal: str) -> LifecycleSignal:
    if signal not in _VALID_SIGNALS:
        raise ValueError(f"unsupported lifecycle signal: {signal!r}")
    return cast(LifecycleSignal, signal)
