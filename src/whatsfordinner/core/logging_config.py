import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Any

from prometheus_client import Counter, Histogram, start_http_server

_PROM_LOCK = threading.Lock()
_PROM_STARTED_PORT: int | None = None
_METRICS_READY = False

_REDACT_KEYS = {
    "token",
    "authorization",
    "api_key",
    "secret",
    "password",
}

_METRIC_TRANSITIONS = None
_METRIC_ERRORS = None
_METRIC_TICK_DURATION = None

# Extras promoted from ``logger.info(..., extra={...})`` into the JSON envelope.
_STRUCTURED_EXTRACT_FIELDS: tuple[str, ...] = (
    "channel_id",
    "poll_id",
    "dinner_id",
    "operation",
    "task",
)


def record_transition(transition: str) -> None:
    """Increment the workflow transition counter."""
    _ensure_metrics_initialized()
    if _METRIC_TRANSITIONS is None:
        return
    _METRIC_TRANSITIONS.labels(
        transition=_bounded_label(transition, fallback="unknown")
    ).inc()


def record_error(*, component: str, error_type: str) -> None:
    """Increment the error counter.

    Use this in any component (scheduler, Slack handlers, LLM client) to surface
    errors to the whatsfordinner_errors_total Prometheus counter.
    """
    _ensure_metrics_initialized()
    if _METRIC_ERRORS is None:
        return
    _METRIC_ERRORS.labels(
        component=_bounded_label(component, fallback="unknown"),
        error_type=_bounded_label(error_type, fallback="error"),
    ).inc()


def observe_tick_duration(*, task: str, duration_s: float) -> None:
    """Observe one scheduler tick duration in seconds."""
    _ensure_metrics_initialized()
    if _METRIC_TICK_DURATION is None:
        return
    _METRIC_TICK_DURATION.labels(task=_bounded_label(task, fallback="unknown")).observe(
        max(0.0, float(duration_s))
    )


class StructuredJsonFormatter(logging.Formatter):
    """Format log records as one JSON object per line.

    Every line carries ``ts`` (RFC3339 UTC), ``level``, ``logger`` and
    ``message``, plus ``channel_id``/``poll_id``/``dinner_id``/``operation``/``task``
    when passed through ``extra=`` and ``exc`` when an exception is attached.
    Sensitive keys are replaced with ``"[REDACTED]"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        try:
            msg = record.getMessage()
        except Exception as exc:
            msg = f"[coerced-log-payload:{type(exc).__name__}] {record.msg!r}"

        ts = (
            datetime.fromtimestamp(record.created, tz=timezone.utc)
            .replace(tzinfo=None)
            .isoformat(timespec="milliseconds")
            + "Z"
        )
        envelope: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": msg,
        }

        if msg and msg[0] == "{":
            try:
                payload = json.loads(msg)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                envelope["message"] = json.dumps(
                    self._redact_dict(payload), ensure_ascii=False, default=str
                )

        for field in _STRUCTURED_EXTRACT_FIELDS:
            val = getattr(record, field, None)
            if val is not None:
                envelope[field] = str(val)

        if record.exc_info:
            envelope["exc"] = self.formatException(record.exc_info)

        return json.dumps(envelope, ensure_ascii=False, default=str)

    @staticmethod
    def _redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
        return {
            k: "[REDACTED]" if _key_is_sensitive(k) else v for k, v in payload.items()
        }


def configure_logging(
    *, level: str | int = "INFO", log_format: str = "text", metrics_port: int = 0
) -> None:
    """Configure application logging and the optional Prometheus exporter."""

    logging.basicConfig(
        level=_coerce_level(level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if log_format == "json":
        _configure_json_stdout()
    if metrics_port > 0:
        _configure_prometheus_exporter(metrics_port)

    # Keep library noise down.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("slack_bolt").setLevel(logging.INFO)


def _configure_prometheus_exporter(port: int) -> None:
    global _PROM_STARTED_PORT
    with _PROM_LOCK:
        if _PROM_STARTED_PORT == port:
            _ensure_metrics_initialized()
            return
        if _PROM_STARTED_PORT is not None:
            logging.getLogger(__name__).warning(
                "Prometheus exporter already running on port %s (requested %s).",
                _PROM_STARTED_PORT,
                port,
            )
            return
        try:
            start_http_server(port)
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Prometheus exporter not started on :%s (%s).", port, exc
            )
            return
        _PROM_STARTED_PORT = port
        _ensure_metrics_initialized()
    logging.getLogger(__name__).info("Prometheus exporter enabled on :%s", port)


def _configure_json_stdout() -> None:
    formatter = StructuredJsonFormatter()
    for handler in logging.root.handlers:
        if hasattr(handler, "stream"):
            if not isinstance(handler.formatter, StructuredJsonFormatter):
                handler.setFormatter(formatter)


def _coerce_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    name = (value or "").strip().upper()
    return getattr(logging, name, logging.INFO)


def _key_is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _REDACT_KEYS)


def _ensure_metrics_initialized() -> None:
    global _METRICS_READY
    global _METRIC_TRANSITIONS, _METRIC_ERRORS, _METRIC_TICK_DURATION

    if _METRICS_READY:
        return
    _METRIC_TRANSITIONS = Counter(
        "whatsfordinner_workflow_transitions_total",
        "Workflow state transitions per channel",
        ["transition"],
    )
    _METRIC_ERRORS = Counter(
        "whatsfordinner_errors_total",
        "Observed component errors",
        ["component", "error_type"],
    )
    _METRIC_TICK_DURATION = Histogram(
        "whatsfordinner_tick_duration_seconds",
        "Scheduler tick duration in seconds",
        ["task"],
        buckets=(0.05, 0.1, 0.2, 0.5, 1, 2, 5, 10, 20, 30, 60, 120),
    )
    _METRICS_READY = True


def _bounded_label(value: Any, *, fallback: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        return fallback
    compact = re.sub(r"[^A-Za-z0-9_.:-]+", "_", raw)
    return compact[:80] or fallback
