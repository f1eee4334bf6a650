from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_REBUILD_DURATION_BUCKETS_SECONDS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)
_RETRY_BACKOFF_BUCKETS_SECONDS = (0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests_total = 0
        self._errors_total = 0
        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._domain_event_emitted_total: Dict[str, int] = {}
        self._refresh_requested_total: Dict[str, int] = {}
        self._refresh_coalesced_total = 0
        self._rebuild_total: Dict[str, int] = {}
        self._rebuild_duration_seconds = self._new_histogram_state(_REBUILD_DURATION_BUCKETS_SECONDS)
        self._rebuild_retry_total = 0
        self._rebuild_retry_backoff_seconds = self._new_histogram_state(_RETRY_BACKOFF_BUCKETS_SECONDS)
        self._rebuild_gave_up_total = 0
        self._snapshot_commit_total = 0
        self._snapshot_discard_total = 0
        self._inconsistent_reference_total: Dict[str, int] = {}
        self._snapshot_last_commit_timestamp = 0.0

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _increment(mapping: Dict, key, amount: int = 1) -> None:
        mapping[key] = int(mapping.get(key, 0)) + amount

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            self._increment(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._increment(self._domain_event_emitted_total, key)

    def observe_refresh_requested(self, mode: str) -> None:
        key = str(mode or "coalesced").strip().lower() or "coalesced"
        with self._lock:
            self._increment(self._refresh_requested_total, key)

    def observe_refresh_coalesced(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._refresh_coalesced_total += increment

    def observe_rebuild(self, result: str, duration_seconds: float) -> None:
        key = str(result or "unknown").strip().lower() or "unknown"
        with self._lock:
            self._increment(self._rebuild_total, key)
            self._observe_histogram(
                self._rebuild_duration_seconds,
                duration_seconds,
                _REBUILD_DURATION_BUCKETS_SECONDS,
            )

    def observe_rebuild_retry(self, backoff_seconds: float) -> None:
        with self._lock:
            self._rebuild_retry_total += 1
            self._observe_histogram(
                self._rebuild_retry_backoff_seconds,
                backoff_seconds,
                _RETRY_BACKOFF_BUCKETS_SECONDS,
            )

    def observe_rebuild_gave_up(self, count: int = 1) -> None:
        with self._lock:
            self._rebuild_gave_up_total += max(0, int(count or 0))

    def observe_snapshot_commit(self) -> None:
        with self._lock:
            self._snapshot_commit_total += 1
            self._snapshot_last_commit_timestamp = time.time()

    def observe_snapshot_discard(self) -> None:
        with self._lock:
            self._snapshot_discard_total += 1

    def observe_inconsistent_reference(self, entity: str, count: int = 1) -> None:
        key = str(entity or "unknown").strip() or "unknown"
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._increment(self._inconsistent_reference_total, key, increment)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "domain_event_emitted_total": dict(self._domain_event_emitted_total),
                "refresh_requested_total": dict(self._refresh_requested_total),
                "refresh_coalesced_total": int(self._refresh_coalesced_total),
                "rebuild_total": dict(self._rebuild_total),
                "rebuild_retry_total": int(self._rebuild_retry_total),
                "rebuild_gave_up_total": int(self._rebuild_gave_up_total),
                "snapshot_commit_total": int(self._snapshot_commit_total),
                "snapshot_discard_total": int(self._snapshot_discard_total),
                "inconsistent_reference_total": dict(self._inconsistent_reference_total),
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": value}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route, "histogram": _copy_histogram(state)}
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "domain_event_emitted_total": sorted(self._domain_event_emitted_total.items()),
                "refresh_requested_total": sorted(self._refresh_requested_total.items()),
                "refresh_coalesced_total": int(self._refresh_coalesced_total),
                "rebuild_total": sorted(self._rebuild_total.items()),
                "rebuild_duration_seconds": _copy_histogram(self._rebuild_duration_seconds),
                "rebuild_retry_total": int(self._rebuild_retry_total),
                "rebuild_retry_backoff_seconds": _copy_histogram(self._rebuild_retry_backoff_seconds),
                "rebuild_gave_up_total": int(self._rebuild_gave_up_total),
                "snapshot_commit_total": int(self._snapshot_commit_total),
                "snapshot_discard_total": int(self._snapshot_discard_total),
                "snapshot_last_commit_timestamp": float(self._snapshot_last_commit_timestamp),
                "inconsistent_reference_total": sorted(self._inconsistent_reference_total.items()),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total.clear()
            self._http_request_duration_ms.clear()
            self._domain_event_emitted_total.clear()
            self._refresh_requested_total.clear()
            self._refresh_coalesced_total = 0
            self._rebuild_total.clear()
            self._rebuild_duration_seconds = self._new_histogram_state(_REBUILD_DURATION_BUCKETS_SECONDS)
            self._rebuild_retry_total = 0
            self._rebuild_retry_backoff_seconds = self._new_histogram_state(_RETRY_BACKOFF_BUCKETS_SECONDS)
            self._rebuild_gave_up_total = 0
            self._snapshot_commit_total = 0
            self._snapshot_discard_total = 0
            self._inconsistent_reference_total.clear()
            self._snapshot_last_commit_timestamp = 0.0


def _copy_histogram(state: dict) -> dict:
    return {
        "count": int(state["count"]),
        "sum": float(state["sum"]),
        "buckets": dict(state["buckets"]),
    }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def observe_refresh_requested(mode: str) -> None:
    _METRICS.observe_refresh_requested(mode)


def observe_refresh_coalesced(count: int = 1) -> None:
    _METRICS.observe_refresh_coalesced(count)


def observe_rebuild(result: str, duration_seconds: float) -> None:
    _METRICS.observe_rebuild(result, duration_seconds)


def observe_rebuild_retry(backoff_seconds: float) -> None:
    _METRICS.observe_rebuild_retry(backoff_seconds)


def observe_rebuild_gave_up(count: int = 1) -> None:
    _METRICS.observe_rebuild_gave_up(count)


def observe_snapshot_commit() -> None:
    _METRICS.observe_snapshot_commit()


def observe_snapshot_discard() -> None:
    _METRICS.observe_snapshot_discard()


def observe_inconsistent_reference(entity: str, count: int = 1) -> None:
    _METRICS.observe_inconsistent_reference(entity, count)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, histogram: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for bucket, count in histogram["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(count), labels={**base_labels, "le": bucket}))
    lines.append(_prom_line(f"{name}_sum", round(float(histogram["sum"]), 6), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(histogram["count"]), labels=base_labels or None))


def prometheus_metrics_text(*, scheduler_state: dict | None = None, snapshot_count: int | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={"method": sample["method"], "route": sample["route"], "status": sample["status"]},
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request latency in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for sample in snapshot["http_request_duration_ms"]:
        _prom_histogram(
            lines,
            "http_request_duration_ms",
            sample["histogram"],
            labels={"method": sample["method"], "route": sample["route"]},
        )

    lines.append("# HELP domain_event_emitted_total Domain events published on the event bus.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, value in snapshot["domain_event_emitted_total"]:
        lines.append(_prom_line("domain_event_emitted_total", int(value), labels={"event_type": event_type}))

    lines.append("# HELP principal_refresh_requested_total Refresh requests received by mode.")
    lines.append("# TYPE principal_refresh_requested_total counter")
    for mode, value in snapshot["refresh_requested_total"]:
        lines.append(_prom_line("principal_refresh_requested_total", int(value), labels={"mode": mode}))

    lines.append("# HELP principal_refresh_coalesced_total Refresh requests merged into a pending or running rebuild.")
    lines.append("# TYPE principal_refresh_coalesced_total counter")
    lines.append(_prom_line("principal_refresh_coalesced_total", snapshot["refresh_coalesced_total"]))

    lines.append("# HELP principal_rebuild_total Principal snapshot rebuilds by result.")
    lines.append("# TYPE principal_rebuild_total counter")
    for result, value in snapshot["rebuild_total"]:
        lines.append(_prom_line("principal_rebuild_total", int(value), labels={"result": result}))

    lines.append("# HELP principal_rebuild_duration_seconds Principal snapshot rebuild duration.")
    lines.append("# TYPE principal_rebuild_duration_seconds histogram")
    _prom_histogram(lines, "principal_rebuild_duration_seconds", snapshot["rebuild_duration_seconds"])

    lines.append("# HELP principal_rebuild_retry_total Failed rebuilds scheduled for retry.")
    lines.append("# TYPE principal_rebuild_retry_total counter")
    lines.append(_prom_line("principal_rebuild_retry_total", snapshot["rebuild_retry_total"]))

    lines.append("# HELP principal_rebuild_retry_backoff_seconds Backoff applied before a rebuild retry.")
    lines.append("# TYPE principal_rebuild_retry_backoff_seconds histogram")
    _prom_histogram(lines, "principal_rebuild_retry_backoff_seconds", snapshot["rebuild_retry_backoff_seconds"])

    lines.append("# HELP principal_rebuild_gave_up_total Rebuilds abandoned after exhausting retries.")
    lines.append("# TYPE principal_rebuild_gave_up_total counter")
    lines.append(_prom_line("principal_rebuild_gave_up_total", snapshot["rebuild_gave_up_total"]))

    lines.append("# HELP principal_snapshot_commit_total Snapshots committed to the snapshot store.")
    lines.append("# TYPE principal_snapshot_commit_total counter")
    lines.append(_prom_line("principal_snapshot_commit_total", snapshot["snapshot_commit_total"]))

    lines.append("# HELP principal_snapshot_discard_total Snapshots discarded for deleted or unflagged principals.")
    lines.append("# TYPE principal_snapshot_discard_total counter")
    lines.append(_prom_line("principal_snapshot_discard_total", snapshot["snapshot_discard_total"]))

    lines.append("# HELP principal_snapshot_last_commit_timestamp Unix timestamp of the last snapshot commit.")
    lines.append("# TYPE principal_snapshot_last_commit_timestamp gauge")
    lines.append(_prom_line("principal_snapshot_last_commit_timestamp", snapshot["snapshot_last_commit_timestamp"]))

    lines.append("# HELP principal_inconsistent_reference_total Source records dropped for inconsistent references.")
    lines.append("# TYPE principal_inconsistent_reference_total counter")
    for entity, value in snapshot["inconsistent_reference_total"]:
        lines.append(_prom_line("principal_inconsistent_reference_total", int(value), labels={"entity": entity}))

    if snapshot_count is not None:
        lines.append("# HELP principal_snapshots_current Principals with a committed snapshot.")
        lines.append("# TYPE principal_snapshots_current gauge")
        lines.append(_prom_line("principal_snapshots_current", int(snapshot_count)))

    if scheduler_state is not None:
        lines.append("# HELP principal_refresh_queue Rebuilds pending or running in the refresh scheduler.")
        lines.append("# TYPE principal_refresh_queue gauge")
        lines.append(_prom_line("principal_refresh_queue", int(scheduler_state.get("pending", 0)), labels={"state": "pending"}))
        lines.append(_prom_line("principal_refresh_queue", int(scheduler_state.get("running", 0)), labels={"state": "running"}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
