"""Long-lived supervisor that watches forwarded heartbeats.

The checker timer only runs while at least one client is tracked:

* ``idle``: nothing tracked, no timer.
* ``watching``: one or more clients tracked, timer ticking every
  ``check_interval_ms`` (never faster than ``MIN_CHECK_INTERVAL_MS``).

Ticks, messages and reconfiguration all serialize on one lock, so a tick that
has started always finishes under the thresholds it started with.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from threading import RLock
from typing import Any, Callable, Literal, Mapping

from .clock import NowMs, ThreadTimerFactory, TimerFactory, TimerHandle, system_now_ms
from .config import CrashHeartbeatConfig
from .contracts import AbnormalExitPayload
from .detector import classify_record
from .messages import (
    ConfigMessage,
    ExitMessage,
    HeartbeatMessage,
    ReportConfigMessage,
    parse_message,
)
from .report import ReportDispatcher
from .store import WatchSet

logger = logging.getLogger(__name__)

SupervisorState = Literal["idle", "watching", "shutdown"]
AbnormalExitHook = Callable[[AbnormalExitPayload, "dict[str, Any] | None"], None]


@dataclass(frozen=True)
class SupervisorStatus:
    state: SupervisorState
    tracked: tuple[str, ...]
    timeout_ms: int
    check_interval_ms: int
    timer_active: bool
    ticks: int
    abnormal_exits: int
    normal_exits: int
    ignored_messages: int
    last_tick_ms: int | None
    last_abnormal_process_id: str | None


class Supervisor:
    def __init__(
        self,
        *,
        config: CrashHeartbeatConfig | None = None,
        dispatcher: ReportDispatcher | None = None,
        timers: TimerFactory | None = None,
        now_ms: NowMs | None = None,
        on_abnormal_exit: AbnormalExitHook | None = None,
    ) -> None:
        self._config = config or CrashHeartbeatConfig()
        self._now_ms = now_ms or system_now_ms
        self._dispatcher = dispatcher or ReportDispatcher(now_ms=self._now_ms)
        self._timers = timers or ThreadTimerFactory()
        self._on_abnormal_exit = on_abnormal_exit
        self._watch = WatchSet()
        self._lock = RLock()
        self._timer: TimerHandle | None = None
        self._generation = 0
        self._shutdown = False
        self._ticks = 0
        self._abnormal_exits = 0
        self._normal_exits = 0
        self._ignored_messages = 0
        self._last_tick_ms: int | None = None
        self._last_abnormal_process_id: str | None = None

    @property
    def config(self) -> CrashHeartbeatConfig:
        with self._lock:
            return self._config

    @property
    def dispatcher(self) -> ReportDispatcher:
        return self._dispatcher

    @property
    def watch_set(self) -> WatchSet:
        return self._watch

    def handle_message(self, raw: object) -> bool:
        """Apply one wire message; unknown, malformed or late messages are ignored."""
        message = parse_message(raw)
        if message is None or self._is_shutdown():
            with self._lock:
                self._ignored_messages += 1
            return False

        if isinstance(message, HeartbeatMessage):
            self.heartbeat(message.process_id, page=message.page, meta=message.meta)
        elif isinstance(message, ExitMessage):
            self.exit(message.process_id)
        elif isinstance(message, ConfigMessage):
            try:
                self.reconfigure(
                    timeout_ms=message.timeout_ms,
                    check_interval_ms=message.check_interval_ms,
                )
            except ValueError:
                logger.debug("ignoring invalid config message", exc_info=True)
                with self._lock:
                    self._ignored_messages += 1
                return False
        elif isinstance(message, ReportConfigMessage):
            self.configure_reports(message.params)
        return True

    def heartbeat(
        self,
        process_id: str,
        *,
        page: str | None = None,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        """Record a pulse at the supervisor's own clock and make sure watching runs."""
        with self._lock:
            if self._shutdown:
                return
            if self._watch.beat(process_id, now_ms=self._now_ms(), page=page, meta=meta):
                logger.debug("tracking client %s", process_id)
            self._ensure_checker_locked()

    def exit(self, process_id: str) -> bool:
        """Drop a client that announced a clean shutdown, without waiting for staleness."""
        with self._lock:
            removed = self._watch.remove(process_id)
            if removed:
                self._normal_exits += 1
                logger.debug("client %s exited normally", process_id)
            self._stop_checker_if_idle_locked()
            return removed

    def reconfigure(
        self,
        *,
        timeout_ms: int | None = None,
        check_interval_ms: int | None = None,
    ) -> CrashHeartbeatConfig:
        changes: dict[str, int] = {}
        if timeout_ms is not None:
            changes["timeout_ms"] = int(timeout_ms)
        if check_interval_ms is not None:
            changes["check_interval_ms"] = int(check_interval_ms)
        with self._lock:
            updated = replace(self._config, **changes)
            self._config = updated
            self._cancel_checker_locked()
            if len(self._watch) > 0 and not self._shutdown:
                self._ensure_checker_locked()
            logger.debug(
                "reconfigured: timeout=%sms check_interval=%sms",
                updated.timeout_ms,
                updated.effective_check_interval_ms,
            )
            return updated

    def configure_reports(self, params: Mapping[str, Any]) -> None:
        self._dispatcher.configure(params)

    def tick(self) -> list[AbnormalExitPayload]:
        """Run one staleness pass over every tracked client."""
        with self._lock:
            config = self._config
            now = self._now_ms()
            self._ticks += 1
            self._last_tick_ms = now
            reported: list[AbnormalExitPayload] = []

            for client in self._watch.items():
                record = client.as_record()
                verdict = classify_record(record, now_ms=now, timeout_ms=config.timeout_ms)
                if verdict != "abnormal":
                    continue
                payload = AbnormalExitPayload.from_record(record, diff_ms=now - record.timestamp_ms)
                logger.warning(
                    "detected possible crash of %s (diff=%sms)",
                    payload.process_id,
                    payload.diff_ms,
                )
                self._watch.remove(client.process_id)
                self._abnormal_exits += 1
                self._last_abnormal_process_id = client.process_id
                report = self._dispatcher.dispatch(payload)
                self._notify(payload, report)
                reported.append(payload)

            self._stop_checker_if_idle_locked()
            return reported

    def get_status(self) -> SupervisorStatus:
        with self._lock:
            return SupervisorStatus(
                state=self._state_locked(),
                tracked=tuple(sorted(client.process_id for client in self._watch.items())),
                timeout_ms=self._config.timeout_ms,
                check_interval_ms=self._config.effective_check_interval_ms,
                timer_active=self._timer is not None and self._timer.active,
                ticks=self._ticks,
                abnormal_exits=self._abnormal_exits,
                normal_exits=self._normal_exits,
                ignored_messages=self._ignored_messages,
                last_tick_ms=self._last_tick_ms,
                last_abnormal_process_id=self._last_abnormal_process_id,
            )

    def shutdown(self) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            self._cancel_checker_locked()
            self._watch.clear()

    def _is_shutdown(self) -> bool:
        with self._lock:
            return self._shutdown

    def _state_locked(self) -> SupervisorState:
        if self._shutdown:
            return "shutdown"
        if self._timer is not None:
            return "watching"
        return "idle"

    def _ensure_checker_locked(self) -> None:
        if self._timer is not None:
            return
        generation = self._generation
        self._timer = self._timers.start_interval(
            self._config.effective_check_interval_ms,
            lambda: self._on_interval(generation),
            name="crash-checker",
        )
        logger.debug("checker started (every %sms)", self._config.effective_check_interval_ms)

    def _cancel_checker_locked(self) -> None:
        self._generation += 1
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _stop_checker_if_idle_locked(self) -> None:
        if len(self._watch) == 0 and self._timer is not None:
            self._cancel_checker_locked()
            logger.debug("checker stopped; no clients left")

    def _on_interval(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return
            self.tick()

    def _notify(self, payload: AbnormalExitPayload, report: dict[str, Any] | None) -> None:
        if self._on_abnormal_exit is None:
            return
        try:
            self._on_abnormal_exit(payload, report)
        except Exception:
            logger.debug("abnormal-exit hook failed for %s", payload.process_id, exc_info=True)
