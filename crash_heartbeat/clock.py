"""Millisecond clocks and interval timers.

Real timers run each interval on a daemon thread. ``VirtualClock`` fires the
same timers deterministically from ``advance()`` on the caller's thread.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

NowMs = Callable[[], int]
IntervalCallback = Callable[[], None]


class TimerHandle(Protocol):
    @property
    def active(self) -> bool:
        ...

    def cancel(self) -> None:
        ...


class TimerFactory(Protocol):
    def start_interval(
        self,
        interval_ms: int,
        callback: IntervalCallback,
        *,
        name: str = "interval",
    ) -> TimerHandle:
        ...


def system_now_ms() -> int:
    return int(time.time() * 1000)


class ThreadTimerFactory:
    def start_interval(
        self,
        interval_ms: int,
        callback: IntervalCallback,
        *,
        name: str = "interval",
    ) -> TimerHandle:
        return _ThreadIntervalTimer(interval_ms, callback, name=name)


class _ThreadIntervalTimer:
    def __init__(self, interval_ms: int, callback: IntervalCallback, *, name: str) -> None:
        self._interval_s = max(1, int(interval_ms)) / 1000.0
        self._callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)
        self._thread.start()

    @property
    def active(self) -> bool:
        return not self._stopped.is_set() and self._thread.is_alive()

    def cancel(self) -> None:
        # Never joins: the callback may be waiting on a lock the canceller holds.
        self._stopped.set()

    def _loop(self) -> None:
        while not self._stopped.wait(timeout=self._interval_s):
            try:
                self._callback()
            except Exception:
                logger.debug("interval callback failed on %s", self._thread.name, exc_info=True)


class VirtualClock:
    """Manually advanced clock that doubles as a deterministic timer factory."""

    def __init__(self, start_ms: int = 0) -> None:
        self._now = int(start_ms)
        self._timers: list[_VirtualIntervalTimer] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def now_ms(self) -> int:
        with self._lock:
            return self._now

    def start_interval(
        self,
        interval_ms: int,
        callback: IntervalCallback,
        *,
        name: str = "interval",
    ) -> TimerHandle:
        with self._lock:
            timer = _VirtualIntervalTimer(
                interval_ms=max(1, int(interval_ms)),
                callback=callback,
                name=name,
                next_due_ms=self._now + max(1, int(interval_ms)),
                seq=next(self._seq),
            )
            self._timers.append(timer)
            return timer

    def advance(self, duration_ms: int) -> None:
        with self._lock:
            target = self._now + max(0, int(duration_ms))
            while True:
                due = [t for t in self._timers if t.active and t.next_due_ms <= target]
                if not due:
                    break
                timer = min(due, key=lambda t: (t.next_due_ms, t.seq))
                self._now = timer.next_due_ms
                timer.next_due_ms += timer.interval_ms
                timer.fire()
            self._now = target
            self._timers = [t for t in self._timers if t.active]

    def advance_to(self, target_ms: int) -> None:
        self.advance(int(target_ms) - self.now_ms())

    def active_timers(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if t.active)


class _VirtualIntervalTimer:
    def __init__(
        self,
        *,
        interval_ms: int,
        callback: IntervalCallback,
        name: str,
        next_due_ms: int,
        seq: int,
    ) -> None:
        self.interval_ms = interval_ms
        self.name = name
        self.next_due_ms = next_due_ms
        self.seq = seq
        self._callback = callback
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def fire(self) -> None:
        try:
            self._callback()
        except Exception:
            logger.debug("virtual interval callback failed on %s", self.name, exc_info=True)
