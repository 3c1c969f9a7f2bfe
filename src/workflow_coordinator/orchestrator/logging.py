"""Structured logging configuration.

Uses standard library logging with a JSON formatter, plus an in-memory ring
buffer that keeps recent records queryable by level, workflow and ticket.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections import deque
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

# Context keys promoted to top-level buffer entry fields.
_CORRELATION_KEYS = ("workflow_id", "business_key", "stage", "agent")


def safe_extra(context: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys that would collide with LogRecord attributes."""

    return {k: v for k, v in context.items() if k not in _RESERVED_LOG_RECORD_ATTRS}


def _record_extra(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """A minimal JSON formatter for logging records."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = _record_extra(record)
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class LogBuffer(logging.Handler):
    """Bounded, filterable sink of recent log records.

    Oldest entries are dropped once ``max_entries`` is reached.
    """

    def __init__(self, max_entries: int = 1000, level: int = logging.NOTSET) -> None:
        super().__init__(level=level)
        self._entries: deque[dict[str, Any]] = deque(maxlen=max_entries)
        self._entries_lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or 0

    def emit(self, record: logging.LogRecord) -> None:
        try:
            context = _record_extra(record)
            entry: dict[str, Any] = {
                "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "context": context,
            }
            for key in _CORRELATION_KEYS:
                entry[key] = context.get(key)
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(
        self,
        *,
        level: str | None = None,
        workflow_id: str | None = None,
        business_key: str | None = None,
        since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        with self._entries_lock:
            items = list(self._entries)

        if level:
            items = [e for e in items if e["level"] == level.upper()]
        if workflow_id:
            items = [e for e in items if e["workflow_id"] == workflow_id]
        if business_key:
            items = [e for e in items if e["business_key"] == business_key]
        if since is not None:
            items = [e for e in items if datetime.fromisoformat(e["timestamp"]) >= since]
        return items

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def export_json(self) -> str:
        return json.dumps(self.entries(), indent=2, ensure_ascii=False, default=str)


def configure_logging(level: str, buffer: LogBuffer | None = None) -> None:
    """Configure root logging with structured JSON output."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    if buffer is not None:
        root.addHandler(buffer)
    root.setLevel(level.upper())
