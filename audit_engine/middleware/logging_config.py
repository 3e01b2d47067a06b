"""
Structured logging configuration.

- Development/testing: one readable line per record, coloured by level
- Production: one JSON object per record (log aggregator compatible)
- LOG_LEVEL sets the root level; AUDIT_LOG_LEVELS overrides single loggers,
  e.g. ``AUDIT_LOG_LEVELS="audit_engine.ai=DEBUG,audit_engine.services=WARNING"``

Records emitted while a request is active are tagged with the request id
and the organization/user scope resolved by the blueprint, so service and
assistant code only passes ``extra`` for what the request does not know
(purpose, entity).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_app_context, has_request_context

# Scope attributes the filter fills from flask.g
_SCOPE_KEYS = ("request_id", "organization_id", "user_id")

# Payload keys copied from the LogRecord when present
_EXTRA_KEYS = _SCOPE_KEYS + (
    "method", "path", "status", "duration_ms", "remote_addr",
    "purpose", "entity_type", "entity_id",
)

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "httpx")


class RequestContextFilter(logging.Filter):
    """Copy request scope from ``flask.g`` onto records that lack it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context() and has_app_context():
            for key in _SCOPE_KEYS:
                if getattr(record, key, None) is None:
                    value = g.get(key)
                    if value is not None:
                        setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        payload.update({
            key: getattr(record, key)
            for key in _EXTRA_KEYS
            if getattr(record, key, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``12:00:01 WARNING  audit_engine.ai...: message [org=o1 purpose=risk_scoring] (42ms)``"""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        tags = [
            f"{label}={getattr(record, key)}"
            for label, key in (("req", "request_id"), ("org", "organization_id"), ("purpose", "purpose"))
            if getattr(record, key, None)
        ]
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        if tags:
            line += f" [{' '.join(tags)}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def parse_level_overrides(spec: str | None) -> dict[str, int]:
    """``"a.b=DEBUG,c=warning"`` -> ``{"a.b": 10, "c": 30}``; bad pairs are ignored."""
    overrides = {}
    for pair in (spec or "").split(","):
        name, sep, level_name = pair.partition("=")
        level = logging.getLevelName(level_name.strip().upper()) if sep else None
        if name.strip() and isinstance(level, int):
            overrides[name.strip()] = level
    return overrides


def configure_logging(app):
    """Install one stderr handler on the root logger for this app."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter(use_color=sys.stderr.isatty()))
    handler.addFilter(RequestContextFilter())

    # replaced, not appended: tests build several apps in one process
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name, override in parse_level_overrides(os.getenv("AUDIT_LOG_LEVELS")).items():
        logging.getLogger(name).setLevel(override)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if is_prod else "readable")
