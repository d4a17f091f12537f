"""Heartbeat emitters that run inside each monitored process.

``PeerHeartbeatEmitter`` writes into storage shared with its peers;
``SupervisorClient`` forwards the same pulses to a supervisor over a message
channel. Both swallow every storage or channel failure: a liveness monitor
must never become a crash source itself.
"""

from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Mapping

from .clock import NowMs, ThreadTimerFactory, TimerFactory, TimerHandle, system_now_ms
from .contracts import MessageChannel
from .lifecycle import (
    LEAVING_SIGNALS,
    RESUMING_SIGNALS,
    LifecycleSignal,
    LifecycleSignalBus,
    Unsubscribe,
)
from .messages import ConfigMessage, ExitMessage, HeartbeatMessage, ReportConfigMessage
from .store import SharedHeartbeatStore

logger = logging.getLogger(__name__)


class _IntervalEmitter:
    def __init__(
        self,
        *,
        heartbeat_interval_ms: int,
        timers: TimerFactory | None,
        now_ms: NowMs | None,
        timer_name: str,
    ) -> None:
        if int(heartbeat_interval_ms) < 1:
            raise ValueError("heartbeat_interval_ms must be >= 1")
        self._interval_ms = int(heartbeat_interval_ms)
        self._timers = timers or ThreadTimerFactory()
        self._now_ms = now_ms or system_now_ms
        self._timer_name = timer_name
        self._lock = RLock()
        self._timer: TimerHandle | None = None
        self._generation = 0
        self._unsubscribers: list[Unsubscribe] = []
        self._beats = 0
        self._beat_failures = 0

    @property
    def heartbeat_interval_ms(self) -> int:
        return self._interval_ms

    @property
    def running(self) -> bool:
        with self._lock:
            return self._timer is not None

    @property
    def beats(self) -> int:
        with self._lock:
            return self._beats

    @property
    def beat_failures(self) -> int:
        with self._lock:
            return self._beat_failures

    def start(self) -> None:
        """Beat now, then every interval. Restarts rather than stacks timers."""
        with self._lock:
            self._cancel_timer_locked()
            generation = self._generation
            self._timer = self._timers.start_interval(
                self._interval_ms,
                lambda: self._on_interval(generation),
                name=self._timer_name,
            )
            self._safe_beat()

    def stop(self) -> None:
        """Cancel the interval and make one last-chance write. No-op when stopped."""
        with self._lock:
            if self._timer is None:
                return
            try:
                self._cancel_timer_locked()
            finally:
                try:
                    self._final_write()
                except Exception:
                    logger.debug("final heartbeat write failed", exc_info=True)

    def bind_lifecycle(self, bus: LifecycleSignalBus) -> None:
        """Wire every leaving signal to ``stop`` and every resuming signal to ``start``."""
        self.unbind_lifecycle()
        unsubscribers = [bus.subscribe(signal, self._on_leaving) for signal in LEAVING_SIGNALS]
        unsubscribers += [bus.subscribe(signal, self._on_resuming) for signal in RESUMING_SIGNALS]
        with self._lock:
            self._unsubscribers = unsubscribers

    def unbind_lifecycle(self) -> None:
        with self._lock:
            unsubscribers = self._unsubscribers
            self._unsubscribers = []
        for unsubscribe in unsubscribers:
            unsubscribe()

    def _on_leaving(self, signal: LifecycleSignal) -> None:
        logger.debug("%s: stopping heartbeat on %s", self._timer_name, signal)
        self.stop()

    def _on_resuming(self, signal: LifecycleSignal) -> None:
        logger.debug("%s: restarting heartbeat on %s", self._timer_name, signal)
        self.start()

    def _on_interval(self, generation: int) -> None:
        with self._lock:
            # A tick queued behind a restart or stop belongs to a cancelled timer.
            if generation != self._generation or self._timer is None:
                return
            self._safe_beat()

    def _cancel_timer_locked(self) -> None:
        self._generation += 1
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _safe_beat(self) -> None:
        self._beats += 1
        try:
            self._beat()
        except Exception:
            self._beat_failures += 1
            logger.debug("heartbeat write failed", exc_info=True)

    def _beat(self) -> None:
        raise NotImplementedError

    def _final_write(self) -> None:
        raise NotImplementedError


class PeerHeartbeatEmitter(_IntervalEmitter):
    """Writes this process's record into the shared heartbeat store."""

    def __init__(
        self,
        *,
        store: SharedHeartbeatStore,
        process_id: str,
        page: str = "",
        meta: Mapping[str, Any] | None = None,
        heartbeat_interval_ms: int = 3000,
        timers: TimerFactory | None = None,
        now_ms: NowMs | None = None,
    ) -> None:
        super().__init__(
            heartbeat_interval_ms=heartbeat_interval_ms,
            timers=timers,
            now_ms=now_ms,
            timer_name="peer-heartbeat",
        )
        self._store = store
        self._process_id = process_id
        self._page = page
        self._pending_meta: dict[str, Any] | None = dict(meta) if meta is not None else None

    @property
    def process_id(self) -> str:
        return self._process_id

    def update_meta(self, meta: Mapping[str, Any]) -> None:
        """Attach diagnostic metadata to the next heartbeat write."""
        with self._lock:
            pending = dict(self._pending_meta or {})
            pending.update(meta)
            self._pending_meta = pending

    def _beat(self) -> None:
        record = self._store.write_heartbeat(
            self._process_id,
            now_ms=self._now_ms(),
            page=self._page,
            meta=self._pending_meta,
            normal_exit=False,
        )
        if record is None:
            raise OSError("heartbeat write was not persisted")
        self._pending_meta = None

    def _final_write(self) -> None:
        try:
            self._beat()
        finally:
            self._store.mark_normal_exit(self._process_id)


class SupervisorClient(_IntervalEmitter):
    """Forwards heartbeats to a supervisor process.

    Without a channel every post is a silent no-op, which is how a host
    without a reachable supervisor degrades.
    """

    def __init__(
        self,
        *,
        channel: MessageChannel | None,
        process_id: str,
        page: str | None = None,
        meta: Mapping[str, Any] | None = None,
        heartbeat_interval_ms: int = 5000,
        timers: TimerFactory | None = None,
        now_ms: NowMs | None = None,
    ) -> None:
        super().__init__(
            heartbeat_interval_ms=heartbeat_interval_ms,
            timers=timers,
            now_ms=now_ms,
            timer_name="supervisor-heartbeat",
        )
        self._channel = channel
        self._process_id = process_id
        self._page = page
        self._pending_meta: dict[str, Any] | None = dict(meta) if meta is not None else None

    @property
    def process_id(self) -> str:
        return self._process_id

    def connect(
        self,
        *,
        timeout_ms: int | None = None,
        check_interval_ms: int | None = None,
        report_params: Mapping[str, Any] | None = None,
        lifecycle: LifecycleSignalBus | None = None,
    ) -> None:
        """Configure the supervisor, start beating, then follow host lifecycle signals."""
        self.post(ConfigMessage(timeout_ms=timeout_ms, check_interval_ms=check_interval_ms).to_dict())
        if report_params is not None:
            self.set_report_params(report_params)
        self.start()
        if lifecycle is not None:
            self.bind_lifecycle(lifecycle)

    def set_report_params(self, params: Mapping[str, Any]) -> None:
        self.post(ReportConfigMessage(params=dict(params)).to_dict())

    def update_meta(self, meta: Mapping[str, Any]) -> None:
        with self._lock:
            pending = dict(self._pending_meta or {})
            pending.update(meta)
            self._pending_meta = pending

    def normal_exit(self) -> None:
        self.stop()

    def post(self, message: Mapping[str, Any]) -> bool:
        if self._channel is None:
            return False
        try:
            self._channel.post(message)
        except Exception:
            logger.debug("posting %s to supervisor failed", message.get("type"), exc_info=True)
            return False
        return True

    def _beat(self) -> None:
        meta = self._pending_meta
        message = HeartbeatMessage(
            process_id=self._process_id,
            timestamp=self._now_ms(),
            page=self._page,
            meta=meta,
        )
        if self.post(message.to_dict()):
            self._pending_meta = None

    def _final_write(self) -> None:
        self.post(ExitMessage(process_id=self._process_id, timestamp=self._now_ms()).to_dict())
