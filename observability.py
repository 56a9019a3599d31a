"""
Structured logging for maintenance runs.

Engines never reach for a module-level logger: they receive one from
``get_logger`` (or a ``structlog.testing.CapturingLogger`` in tests).
Lifecycle milestones go through ``emit_event`` so that failures also land in
a short in-memory list printed at the end of a CLI run.
"""
from __future__ import annotations

import logging
import os
import re
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import structlog

LOG_SCHEMA = "maintenance/1"

_URI_CREDENTIALS = re.compile(r"(mongodb(?:\+srv)?://)([^@/\s]+)@")
_SECRET_KEYS = ("password", "secret", "token", "authorization")

_FAILURES: Deque[Dict[str, str]] = deque(maxlen=50)

_SEVERITY_METHODS = {
    "debug": "debug",
    "info": "info",
    "warn": "warning",
    "warning": "warning",
    "error": "error",
    "critical": "error",
}


def redact_mongo_url(url: str) -> str:
    """Hide the user:password part of a MongoDB connection string."""
    if not url:
        return url
    return _URI_CREDENTIALS.sub(r"\1[REDACTED]@", str(url))


def _scrub_credentials(logger, method, event_dict: Dict[str, Any]):
    for key, value in list(event_dict.items()):
        if any(secret in key.lower() for secret in _SECRET_KEYS):
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, str) and "mongodb" in value:
            event_dict[key] = redact_mongo_url(value)
    return event_dict


def _stamp_schema(logger, method, event_dict: Dict[str, Any]):
    event_dict.setdefault("log_schema", LOG_SCHEMA)
    return event_dict


def _renderer(log_format: Optional[str]):
    fmt = (log_format or os.getenv("LOG_FORMAT") or "json").strip().lower()
    if fmt == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer(sort_keys=True)


def setup_structlog_logging(min_level: str | int = "INFO", log_format: Optional[str] = None) -> None:
    """Route structlog and stdlib logging (pymongo, motor) to stderr at ``min_level``."""
    level = logging.getLevelName(str(min_level).upper()) if isinstance(min_level, str) else int(min_level)

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
    else:
        logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _scrub_credentials,
            _stamp_schema,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _renderer(log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: Optional[str] = None, **initial_values: Any):
    """Return a structlog logger bound to ``component``; engines take one of these."""
    if component:
        initial_values.setdefault("component", component)
    return structlog.get_logger().bind(**initial_values)


def generate_run_id() -> str:
    return uuid.uuid4().hex[:8]


def bind_run_context(*, run_id: str, operation: str, database: Optional[str] = None) -> None:
    """Attach run-wide fields to every log line of this process."""
    values: Dict[str, Any] = {"run_id": run_id, "operation": operation}
    if database:
        values["database"] = database
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()


def _remember_failure(event: str, fields: Dict[str, Any]) -> None:
    _FAILURES.append(
        {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "error": str(fields.get("error") or fields.get("message") or ""),
            "collection": str(fields.get("collection") or ""),
            "index": str(fields.get("index") or ""),
        }
    )


def emit_event(event: str, severity: str = "info", **fields: Any) -> None:
    """Log a run milestone; ``error``/``critical`` ones are also kept for the summary."""
    method = _SEVERITY_METHODS.get(severity, "info")
    if method == "error":
        _remember_failure(event, fields)
    getattr(structlog.get_logger(), method)(event, severity=severity, **fields)


def get_recent_errors(limit: int = 10) -> List[Dict[str, str]]:
    if limit <= 0:
        return []
    return list(_FAILURES)[-limit:]


def reset_recent_errors() -> None:
    _FAILURES.clear()
