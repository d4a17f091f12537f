from __future__ import annotations

from typing import Any, Mapping

from .clock import NowMs, TimerFactory, system_now_ms
from .config import CrashHeartbeatConfig
from .contracts import AbnormalExitPayload, IdentityProvider
from .detector import AbnormalExitCallback, check_abnormal_exit
from .emitter import PeerHeartbeatEmitter
from .identity import SessionIdentityProvider
from .lifecycle import LifecycleSignalBus
from .report import ReportDispatcher
from .storage import InMemoryKeyValueStorage, KeyValueStorage
from .store import SharedHeartbeatStore


class CrashHeartbeatMonitor:
    """Peer-checked crash detection for one process.

    Every peer writes its own heartbeat into ``storage`` and audits the
    others. Construction has no side effects beyond resolving the process id;
    ``init()`` runs the startup audit and starts beating.
    """

    def __init__(
        self,
        *,
        storage: KeyValueStorage | None,
        identity: IdentityProvider | None = None,
        config: CrashHeartbeatConfig | None = None,
        dispatcher: ReportDispatcher | None = None,
        on_abnormal_exit: AbnormalExitCallback | None = None,
        meta: Mapping[str, Any] | None = None,
        timers: TimerFactory | None = None,
        now_ms: NowMs | None = None,
    ) -> None:
        self._config = config or CrashHeartbeatConfig()
        self._now_ms = now_ms or system_now_ms
        self._identity = identity or SessionIdentityProvider(
            InMemoryKeyValueStorage(),
            key=self._config.identity_key,
        )
        self._dispatcher = dispatcher
        self._on_abnormal_exit = on_abnormal_exit
        self._store = SharedHeartbeatStore(storage, key=self._config.storage_key)
        self._process_id = self._identity.get_stable_id()
        self._emitter = PeerHeartbeatEmitter(
            store=self._store,
            process_id=self._process_id,
            page=self._config.page,
            meta=meta,
            heartbeat_interval_ms=self._config.heartbeat_interval_ms,
            timers=timers,
            now_ms=self._now_ms,
        )

    @property
    def process_id(self) -> str:
        return self._process_id

    @property
    def store(self) -> SharedHeartbeatStore:
        return self._store

    @property
    def emitter(self) -> PeerHeartbeatEmitter:
        return self._emitter

    def init(self, *, lifecycle: LifecycleSignalBus | None = None) -> list[AbnormalExitPayload]:
        # Heartbeats can lag behind the interval (busy process, suspended host),
        # so leftovers from a previous session are judged against twice the interval.
        reported = self.check_abnormal_exit(self._config.heartbeat_interval_ms * 2)
        self._emitter.start()
        if lifecycle is not None:
            self._emitter.bind_lifecycle(lifecycle)
        return reported

    def check_abnormal_exit(self, timeout_ms: int) -> list[AbnormalExitPayload]:
        """Audit every other peer's record; see ``detector.check_abnormal_exit``."""
        return check_abnormal_exit(
            self._store,
            current_id=self._process_id,
            timeout_ms=timeout_ms,
            now_ms=self._now_ms(),
            on_abnormal_exit=self._report,
        )

    def update_meta(self, meta: Mapping[str, Any]) -> None:
        self._emitter.update_meta(meta)

    def stop(self) -> None:
        self._emitter.unbind_lifecycle()
        self._emitter.stop()

    def _report(self, payload: AbnormalExitPayload) -> None:
        if self._dispatcher is not None:
            self._dispatcher.dispatch(payload)
        if self._on_abnormal_exit is not None:
            self._on_abnormal_exit(payload)
