"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (machine-parseable)
    • Pretty console logs for development (human-readable)
    • Request-scoped context bound by the middleware (request_id, actor_id,
      alert_id) and merged into every record logged during the request
    • Alert-pipeline extras promoted to top-level keys

Alert-pipeline extras:

    alert_id     user_id     channel     recipient
    backend      operation   outcome     duration_ms
    status_code  endpoint

Usage:
    from backend.app.core.logging_config import setup_logging

    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("Attempt recorded", extra={"alert_id": a.alert_id, "channel": "sms"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import Settings, settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

EXTRA_KEYS = (
    "alert_id", "user_id", "channel", "recipient", "backend", "operation",
    "outcome", "duration_ms", "status_code", "endpoint",
)

# Shown after the message in development output
_PRETTY_IDS = ("alert_id", "user_id", "channel", "backend")


# ── Request context ──

def bind_request_context(**kwargs: Any) -> None:
    """Merge non-empty values into the current request context."""
    ctx = {**_request_context.get(), **{k: v for k, v in kwargs.items() if v is not None}}
    _request_context.set(ctx)


def clear_request_context() -> None:
    _request_context.set({})


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Extras from the record, falling back to the request context."""
    ctx = get_request_context()
    fields: Dict[str, Any] = {}
    for key in EXTRA_KEYS:
        value = getattr(record, key, None)
        if value is None:
            value = ctx.get(key)
        if value is not None:
            fields[key] = value
    return fields


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }

        ctx = get_request_context()
        if ctx.get("request_id"):
            entry["request_id"] = ctx["request_id"]
        if ctx.get("actor_id"):
            entry["actor_id"] = ctx["actor_id"]
        entry.update(_record_fields(record))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured human-readable format for local development."""

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ts = self.formatTime(record, "%H:%M:%S")

        request_id = get_request_context().get("request_id")
        req = f" [{request_id[:8]}]" if request_id else ""

        fields = _record_fields(record)
        ids = [f"{key}={fields[key]}" for key in _PRETTY_IDS if key in fields]
        suffix = f" ({', '.join(ids)})" if ids else ""

        line = (
            f"{color}{ts} {record.levelname:8s}{self.RESET}"
            f"{req} {record.name}: {record.getMessage()}{suffix}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def setup_logging(config: Optional[Settings] = None) -> None:
    """
    Install one stdout handler on the root logger.

    ``LOG_FORMAT`` picks the formatter; ``auto`` means JSON in production
    and pretty output everywhere else.
    """
    config = config or settings
    fmt = config.LOG_FORMAT.lower()
    use_json = fmt == "json" or (fmt == "auto" and config.is_production)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

    # Transport libraries log every request at INFO
    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
