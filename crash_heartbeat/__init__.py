"""Heartbeat-based detection of processes that exit without a clean shutdown."""

from .channel import DirectChannel, JsonLinesChannel, serve_json_lines
from .clock import ThreadTimerFactory, VirtualClock
from .config import CrashHeartbeatConfig, load_config_from_env
from .contracts import AbnormalExitPayload, HeartbeatRecord, IdentityProvider, ReportSink
from .detector import check_abnormal_exit, classify_record
from .emitter import PeerHeartbeatEmitter, SupervisorClient
from .identity import SessionIdentityProvider
from .lifecycle import LifecycleSignalBus, bind_interpreter_exit
from .monitor import CrashHeartbeatMonitor
from .report import HttpReportSink, ReportDispatcher, SentryStoreSink
from .storage import InMemoryKeyValueStorage, JsonFileKeyValueStorage
from .store import SharedHeartbeatStore, WatchSet
from .supervisor import Supervisor, SupervisorStatus

__all__ = [
    "AbnormalExitPayload",
    "CrashHeartbeatConfig",
    "CrashHeartbeatMonitor",
    "DirectChannel",
    "HeartbeatRecord",
    "HttpReportSink",
    "IdentityProvider",
    "InMemoryKeyValueStorage",
    "JsonFileKeyValueStorage",
    "JsonLinesChannel",
    "LifecycleSignalBus",
    "PeerHeartbeatEmitter",
    "ReportDispatcher",
    "ReportSink",
    "SentryStoreSink",
    "SessionIdentityProvider",
    "SharedHeartbeatStore",
    "Supervisor",
    "SupervisorClient",
    "SupervisorStatus",
    "ThreadTimerFactory",
    "VirtualClock",
    "WatchSet",
    "bind_interpreter_exit",
    "check_abnormal_exit",
    "classify_record",
    "load_config_from_env",
    "serve_json_lines",
]
