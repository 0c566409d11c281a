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
_RECONCILIATION_DURATION_BUCKETS_SECONDS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0)

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
            if key in payload or callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.getLogger("dealer_trading").setLevel(level)
    if not bool(app.config.get("LOG_JSON", True)):
        return

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

        self._reconciliation_actions_total: Dict[tuple[str, str], int] = {}
        self._reconciliation_runs_total: Dict[tuple[str, str], int] = {}
        self._reconciliation_duration_seconds = self._new_histogram_state(_RECONCILIATION_DURATION_BUCKETS_SECONDS)
        self._transfer_transitions_total: Dict[str, int] = {}
        self._domain_event_emitted_total: Dict[str, int] = {}

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

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            key = (method_key, route_key, status_key)
            self._http_request_total[key] = int(self._http_request_total.get(key, 0)) + 1
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_reconciliation_action(self, mode: str, action: str, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        key = (str(mode or "apply"), str(action or "unknown"))
        with self._lock:
            self._reconciliation_actions_total[key] = int(self._reconciliation_actions_total.get(key, 0)) + increment

    def observe_reconciliation_run(self, mode: str, result: str, duration_seconds: float) -> None:
        key = (str(mode or "apply"), str(result or "unknown"))
        with self._lock:
            self._reconciliation_runs_total[key] = int(self._reconciliation_runs_total.get(key, 0)) + 1
            self._observe_histogram(
                self._reconciliation_duration_seconds,
                duration_seconds,
                _RECONCILIATION_DURATION_BUCKETS_SECONDS,
            )

    def observe_transfer_transition(self, target_status: str) -> None:
        key = str(target_status or "unknown").strip() or "unknown"
        with self._lock:
            self._transfer_transitions_total[key] = int(self._transfer_transitions_total.get(key, 0)) + 1

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._domain_event_emitted_total[key] = int(self._domain_event_emitted_total.get(key, 0)) + 1

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "reconciliation": {
                    "runs_total": int(sum(self._reconciliation_runs_total.values())),
                    "actions_total": int(sum(self._reconciliation_actions_total.values())),
                },
                "transfers": {
                    "transitions_total": int(sum(self._transfer_transitions_total.values())),
                    "by_status": dict(sorted(self._transfer_transitions_total.items())),
                },
                "domain_events": {
                    "emitted_total": int(sum(self._domain_event_emitted_total.values())),
                    "by_type": dict(sorted(self._domain_event_emitted_total.items())),
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": value}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {
                        "method": method,
                        "route": route,
                        "count": int(state["count"]),
                        "sum": float(state["sum"]),
                        "buckets": dict(state["buckets"]),
                    }
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "reconciliation_actions_total": [
                    {"mode": mode, "action": action, "value": value}
                    for (mode, action), value in sorted(self._reconciliation_actions_total.items())
                ],
                "reconciliation_runs_total": [
                    {"mode": mode, "result": result, "value": value}
                    for (mode, result), value in sorted(self._reconciliation_runs_total.items())
                ],
                "reconciliation_duration_seconds": {
                    "count": int(self._reconciliation_duration_seconds["count"]),
                    "sum": float(self._reconciliation_duration_seconds["sum"]),
                    "buckets": dict(self._reconciliation_duration_seconds["buckets"]),
                },
                "transfer_transitions_total": dict(sorted(self._transfer_transitions_total.items())),
                "domain_event_emitted_total": dict(sorted(self._domain_event_emitted_total.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total.clear()
            self._http_request_duration_ms.clear()
            self._reconciliation_actions_total.clear()
            self._reconciliation_runs_total.clear()
            self._reconciliation_duration_seconds = self._new_histogram_state(
                _RECONCILIATION_DURATION_BUCKETS_SECONDS
            )
            self._transfer_transitions_total.clear()
            self._domain_event_emitted_total.clear()


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


def observe_reconciliation_action(mode: str, action: str, count: int = 1) -> None:
    _METRICS.observe_reconciliation_action(mode, action, count)


def observe_reconciliation_run(mode: str, result: str, duration_seconds: float) -> None:
    _METRICS.observe_reconciliation_run(mode, result, duration_seconds)


def observe_transfer_transition(target_status: str) -> None:
    _METRICS.observe_transfer_transition(target_status)


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _histogram_lines(name: str, hist: dict, labels: dict[str, object] | None = None) -> list[str]:
    base_labels = dict(labels or {})
    lines = [
        _prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label})
        for le_label, bucket_value in hist["buckets"].items()
    ]
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))
    return lines


def prometheus_metrics_text() -> str:
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

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        lines.extend(
            _histogram_lines("http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})
        )

    lines.append("# HELP inventory_reconciliation_actions_total Reconciliation actions by mode and action.")
    lines.append("# TYPE inventory_reconciliation_actions_total counter")
    for sample in snapshot["reconciliation_actions_total"]:
        lines.append(
            _prom_line(
                "inventory_reconciliation_actions_total",
                int(sample["value"]),
                labels={"mode": sample["mode"], "action": sample["action"]},
            )
        )

    lines.append("# HELP inventory_reconciliation_runs_total Reconciliation runs by mode and result.")
    lines.append("# TYPE inventory_reconciliation_runs_total counter")
    for sample in snapshot["reconciliation_runs_total"]:
        lines.append(
            _prom_line(
                "inventory_reconciliation_runs_total",
                int(sample["value"]),
                labels={"mode": sample["mode"], "result": sample["result"]},
            )
        )

    lines.append("# HELP inventory_reconciliation_duration_seconds Reconciliation duration in seconds.")
    lines.append("# TYPE inventory_reconciliation_duration_seconds histogram")
    lines.extend(_histogram_lines("inventory_reconciliation_duration_seconds", snapshot["reconciliation_duration_seconds"]))

    lines.append("# HELP transfer_transitions_total Transfer status transitions by target status.")
    lines.append("# TYPE transfer_transitions_total counter")
    for status, value in snapshot["transfer_transitions_total"].items():
        lines.append(_prom_line("transfer_transitions_total", int(value), labels={"status": status}))

    lines.append("# HELP domain_event_emitted_total Domain events published by type.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, value in snapshot["domain_event_emitted_total"].items():
        lines.append(_prom_line("domain_event_emitted_total", int(value), labels={"event_type": event_type}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
