"""
Logging setup for action-fanout processes.

Provides JSON or text log output with service name and trace context on every
record. Library modules only call ``logging.getLogger(__name__)``; processes
call :func:`setup_logging` once at startup.
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any

from opentelemetry import trace

DEFAULT_LOG_FORMAT = (
    "%(asctime)s - %(levelname)s - [%(service_name)s] - [%(name)s] - %(message)s"
)

LOG_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

DEFAULT_LOG_LEVEL = "INFO"

# Attributes every LogRecord has; anything else was passed through ``extra``
_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
    "service_name",
    "trace_id",
    "span_id",
}


class ServiceNameFilter(logging.Filter):
    """Filter to inject service name into log records."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name  # type: ignore[attr-defined]
        return True


class TraceContextFilter(logging.Filter):
    """Filter to inject trace context into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            record.trace_id = format(span_context.trace_id, "032x")  # type: ignore[attr-defined]
            record.span_id = format(span_context.span_id, "016x")  # type: ignore[attr-defined]
        else:
            record.trace_id = "0" * 32  # type: ignore[attr-defined]
            record.span_id = "0" * 16  # type: ignore[attr-defined]
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service_name", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }

        trace_id = getattr(record, "trace_id", None)
        if trace_id and trace_id != "0" * 32:
            log_entry["trace_id"] = trace_id
            log_entry["span_id"] = getattr(record, "span_id", None)

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging(
    service_name: str,
    log_level: str = DEFAULT_LOG_LEVEL,
    json_format: bool = False,
    stream=None,
) -> logging.Logger:
    """Configure the root logger for a publisher or consumer process.

    ``LOG_LEVEL`` and ``LOG_FORMAT`` environment variables override the
    arguments, as they do for the other services in a deployment.
    """
    log_level = os.getenv("LOG_LEVEL", log_level).upper()
    json_format = os.getenv("LOG_FORMAT", "json" if json_format else "text") == "json"

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(ServiceNameFilter(service_name))
    handler.addFilter(TraceContextFilter())
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(DEFAULT_LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVELS.get(log_level, logging.INFO))

    # aio-pika/aiormq are chatty at INFO
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)

    return root
