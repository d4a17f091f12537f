from __future__ import annotations

import argparse
import functools
import json
import logging
import sys
import time

from .channel import serve_json_lines
from .clock import system_now_ms
from .config import CrashHeartbeatConfig, load_config_from_env
from .contracts import AbnormalExitPayload
from .detector import check_abnormal_exit
from .report import ReportDispatcher, build_report_sink
from .storage import JsonFileKeyValueStorage
from .store import SharedHeartbeatStore
from .supervisor import Supervisor, SupervisorStatus

_OPERATOR_CONTRACT = "crash_heartbeat.operator"
_OPERATOR_CONTRACT_VERSION = "1.0"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crash_heartbeat")
    parser.add_argument("--verbose", action="store_true", help="Log diagnostics to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    p_beat = sub.add_parser("beat", help="Write one heartbeat into a shared heartbeat file")
    p_beat.add_argument("--storage", required=True)
    p_beat.add_argument("--process-id", required=True)
    p_beat.add_argument("--page", default=None)
    p_beat.add_argument("--meta-json", default=None, help="JSON object merged into the record's meta")
    p_beat.add_argument(
        "--normal-exit",
        action="store_true",
        help="Mark the record as a clean shutdown after writing it",
    )

    p_check = sub.add_parser("check", help="Audit a shared heartbeat file for abnormal exits")
    p_check.add_argument("--storage", required=True)
    p_check.add_argument("--process-id", default="", help="Own id, skipped by the audit")
    p_check.add_argument("--timeout-ms", type=int, default=None)
    p_check.add_argument("--report-url", default=None)
    p_check.add_argument("--report-dsn", default=None)

    p_supervise = sub.add_parser("supervise", help="Watch JSON-line heartbeat messages on stdin")
    p_supervise.add_argument("--timeout-ms", type=int, default=None)
    p_supervise.add_argument("--check-interval-ms", type=int, default=None)
    p_supervise.add_argument("--report-url", default=None)
    p_supervise.add_argument("--report-dsn", default=None)
    p_supervise.add_argument(
        "--no-drain",
        action="store_true",
        help="Exit at end of input instead of waiting for tracked clients to resolve",
    )

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr)

    try:
        config = load_config_from_env()
        if args.command == "beat":
            return _cmd_beat(args, config)
        if args.command == "check":
            return _cmd_check(args, config)
        if args.command == "supervise":
            return _cmd_supervise(args, config)
    except ValueError as exc:
        _emit_payload(
            {
                "status": "failed",
                "reason": "invalid-config",
                "error": str(exc),
                "error_code": "invalid-config",
                "error_reason": "invalid-config",
            }
        )
        return 2

    parser.error("unknown command")
    return 2


def _cmd_beat(args: argparse.Namespace, config: CrashHeartbeatConfig) -> int:
    meta = None
    if args.meta_json is not None:
        meta = json.loads(args.meta_json)
        if not isinstance(meta, dict):
            raise ValueError("--meta-json must be a JSON object")
    store = SharedHeartbeatStore(JsonFileKeyValueStorage(args.storage), key=config.storage_key)
    record = store.write_heartbeat(
        args.process_id,
        now_ms=system_now_ms(),
        page=args.page,
        meta=meta,
    )
    if record is None:
        _emit_payload(
            {
                "status": "failed",
                "reason": "storage-write-failed",
                "error_code": "storage-write-failed",
                "error_reason": "storage-write-failed",
            }
        )
        return 1
    if args.normal_exit:
        store.mark_normal_exit(args.process_id)
    _emit_payload(
        {
            "status": "written",
            "process_id": record.process_id,
            "timestamp_ms": record.timestamp_ms,
            "normal_exit": bool(args.normal_exit),
        }
    )
    return 0


def _cmd_check(args: argparse.Namespace, config: CrashHeartbeatConfig) -> int:
    timeout_ms = config.timeout_ms if args.timeout_ms is None else args.timeout_ms
    if timeout_ms < 0:
        raise ValueError("--timeout-ms must be >= 0")
    dispatcher = _build_dispatcher(args, background=False)
    store = SharedHeartbeatStore(JsonFileKeyValueStorage(args.storage), key=config.storage_key)
    reported = check_abnormal_exit(
        store,
        current_id=args.process_id,
        timeout_ms=timeout_ms,
        now_ms=system_now_ms(),
        on_abnormal_exit=dispatcher.dispatch,
    )
    _emit_payload(
        {
            "status": "checked",
            "timeout_ms": timeout_ms,
            "abnormal_exits": [_exit_as_dict(payload) for payload in reported],
            "report_configured": dispatcher.configured,
        }
    )
    return 0


def _cmd_supervise(args: argparse.Namespace, config: CrashHeartbeatConfig) -> int:
    supervisor = Supervisor(config=config, dispatcher=_build_dispatcher(args, background=True))
    if args.timeout_ms is not None or args.check_interval_ms is not None:
        supervisor.reconfigure(timeout_ms=args.timeout_ms, check_interval_ms=args.check_interval_ms)

    accepted = serve_json_lines(supervisor, sys.stdin)
    if not args.no_drain:
        # Input ends when the last client goes away, cleanly or not; keep
        # checking until every tracked client has exited or been reported.
        while supervisor.get_status().state == "watching":
            time.sleep(supervisor.config.effective_check_interval_ms / 1000.0)

    status = supervisor.get_status()
    supervisor.shutdown()
    payload = _status_as_dict(status)
    payload["status"] = "stopped"
    payload["accepted_messages"] = accepted
    _emit_payload(payload)
    return 0


def _build_dispatcher(args: argparse.Namespace, *, background: bool) -> ReportDispatcher:
    params: dict[str, object] = {}
    if args.report_url:
        params["url"] = args.report_url
    if args.report_dsn:
        params["dsn"] = args.report_dsn
    return ReportDispatcher(
        params=params,
        sink_factory=functools.partial(build_report_sink, background=background),
    )


def _exit_as_dict(payload: AbnormalExitPayload) -> dict[str, object]:
    return payload.to_dict()


def _status_as_dict(status: SupervisorStatus) -> dict[str, object]:
    return {
        "state": status.state,
        "tracked": list(status.tracked),
        "timeout_ms": status.timeout_ms,
        "check_interval_ms": status.check_interval_ms,
        "ticks": status.ticks,
        "abnormal_exits": status.abnormal_exits,
        "normal_exits": status.normal_exits,
        "ignored_messages": status.ignored_messages,
        "last_tick_ms": status.last_tick_ms,
        "last_abnormal_process_id": status.last_abnormal_process_id,
    }


def _emit_payload(payload: dict[str, object]) -> None:
    normalized = dict(payload)
    normalized["contract"] = _OPERATOR_CONTRACT
    normalized["contract_version"] = _OPERATOR_CONTRACT_VERSION
    normalized.setdefault("error_code", None)
    normalized.setdefault("error_reason", None)
    normalized.setdefault("ok", normalized["error_code"] in (None, ""))
    print(json.dumps(normalized, sort_keys=True))


if __name__ == "__main__":
    raise SystemExit(main())
