"""Abnormal-exit report construction and best-effort delivery."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from threading import RLock
from typing import Any, Callable, Mapping
from urllib import parse, request

from .clock import NowMs, system_now_ms
from .contracts import AbnormalExitPayload, ReportSink

logger = logging.getLogger(__name__)

REPORT_LEVEL = "error"
REPORT_LOGGER = "crash-heartbeat"
REPORT_MESSAGE = "abnormal exit detected"
REPORT_PLATFORM = "python"

SinkFactory = Callable[[Mapping[str, Any]], "ReportSink | None"]


class HttpReportSink(ReportSink):
    """POSTs each report as JSON; by default on a daemon thread so callers never wait."""

    def __init__(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        timeout_s: float = 5.0,
        background: bool = True,
        opener: Callable[..., Any] | None = None,
    ) -> None:
        url_value = str(url).strip()
        if not url_value:
            raise ValueError("url must be a non-empty string")
        if timeout_s <= 0:
            raise ValueError("timeout_s must be a positive number")
        self._url = url_value
        self._method = (method or "POST").upper()
        self._headers = {"Content-Type": "application/json", **dict(headers or {})}
        self._timeout_s = float(timeout_s)
        self._background = background
        self._opener = opener or request.urlopen

    @property
    def url(self) -> str:
        return self._url

    def deliver(self, payload: Mapping[str, Any]) -> None:
        body = json.dumps(dict(payload), separators=(",", ":"), default=str).encode("utf-8")
        req = request.Request(
            url=self._url,
            data=body,
            headers=dict(self._headers),
            method=self._method,
        )
        if self._background:
            threading.Thread(target=self._send, args=(req,), name="crash-report", daemon=True).start()
            return
        self._send(req)

    def _send(self, req: request.Request) -> None:
        try:
            with self._opener(req, timeout=self._timeout_s) as response:
                response.read()
        except Exception:
            logger.debug("report delivery to %s failed", self._url, exc_info=True)


class SentryStoreSink(HttpReportSink):
    """Delivers reports to the legacy Sentry store endpoint derived from a DSN."""

    def __init__(self, dsn: str, **kwargs: Any) -> None:
        store_url = build_sentry_store_url(dsn)
        if store_url is None:
            raise ValueError("dsn must look like <scheme>://<key>@<host>/<project>")
        super().__init__(store_url, **kwargs)


def build_sentry_store_url(dsn: str) -> str | None:
    try:
        parts = parse.urlsplit(str(dsn))
    except ValueError:
        return None
    project_id = parts.path.lstrip("/")
    public_key = parts.username
    host = parts.hostname
    if not parts.scheme or not project_id or not public_key or not host:
        return None
    netloc = host if parts.port is None else f"{host}:{parts.port}"
    return f"{parts.scheme}://{netloc}/api/{project_id}/store/?sentry_key={public_key}&sentry_version=7"


def build_report_sink(params: Mapping[str, Any], *, background: bool = True) -> ReportSink | None:
    """Pick a sink from report-config params; ``None`` when no target is configured."""
    url = params.get("url")
    headers = params.get("headers")
    header_map = {str(k): str(v) for k, v in headers.items()} if isinstance(headers, Mapping) else None
    method = str(params.get("method") or "POST")
    if isinstance(url, str) and url.strip():
        return HttpReportSink(url, method=method, headers=header_map, background=background)
    dsn = params.get("dsn")
    if isinstance(dsn, str) and dsn.strip():
        try:
            return SentryStoreSink(dsn, headers=header_map, background=background)
        except ValueError:
            logger.debug("ignoring unusable report dsn")
            return None
    return None


class ReportDispatcher:
    """Turns abnormal-exit payloads into structured reports for the configured sink.

    ``configure`` merges parameters the way successive report-config messages
    accumulate. Without a target nothing is built or queued. Delivery happens
    once, without retry, and its failures are swallowed.
    """

    def __init__(
        self,
        *,
        params: Mapping[str, Any] | None = None,
        sink_factory: SinkFactory | None = None,
        now_ms: NowMs | None = None,
    ) -> None:
        self._lock = RLock()
        self._params: dict[str, Any] = {}
        self._sink_factory = sink_factory or build_report_sink
        self._sink: ReportSink | None = None
        self._now_ms = now_ms or system_now_ms
        self._dispatched = 0
        self._delivery_failures = 0
        if params:
            self.configure(params)

    @property
    def params(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._params)

    @property
    def dispatched(self) -> int:
        with self._lock:
            return self._dispatched

    @property
    def delivery_failures(self) -> int:
        with self._lock:
            return self._delivery_failures

    @property
    def configured(self) -> bool:
        with self._lock:
            return self._sink is not None

    def configure(self, params: Mapping[str, Any]) -> None:
        with self._lock:
            self._params = {**self._params, **dict(params)}
            try:
                self._sink = self._sink_factory(self._params)
            except Exception:
                logger.debug("report sink construction failed", exc_info=True)
                self._sink = None

    def build_payload(self, exit_payload: AbnormalExitPayload) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "level": REPORT_LEVEL,
            "logger": REPORT_LOGGER,
            "message": REPORT_MESSAGE,
            "event_id": uuid.uuid4().hex,
            "timestamp": self._now_ms() / 1000,
            "platform": REPORT_PLATFORM,
            "process_id": exit_payload.process_id,
            "page": exit_payload.page,
            "last_heartbeat_ms": exit_payload.timestamp_ms,
            "diff_ms": exit_payload.diff_ms,
        }
        payload.update(exit_payload.meta)
        with self._lock:
            body = self._params.get("body")
        if isinstance(body, Mapping):
            payload.update(body)
        return payload

    def dispatch(self, exit_payload: AbnormalExitPayload) -> dict[str, Any] | None:
        with self._lock:
            sink = self._sink
        if sink is None:
            return None
        payload = self.build_payload(exit_payload)
        try:
            sink.deliver(payload)
        except Exception:
            with self._lock:
                self._delivery_failures += 1
            logger.debug("report sink raised for %s", exit_payload.process_id, exc_info=True)
        with self._lock:
            self._dispatched += 1
        return payload
