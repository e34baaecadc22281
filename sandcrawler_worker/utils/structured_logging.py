"""
Structured logging utilities for the sandcrawler worker.

Provides:
- JSONFormatter: Formats logs as JSON for log aggregation
- SensitiveDataFilter: Redacts credentials from log records
- generate_trace_id: Generates short trace IDs for order tracking
- setup_structured_logging: Configures logging for the worker process
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from logging import LogRecord
from typing import Any

# Context fields promoted to top-level JSON keys
CONTEXT_FIELDS = ("call_id", "runner_name", "trace_id", "url", "state")

_RESERVED_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
    + CONTEXT_FIELDS
)


class SensitiveDataFilter(logging.Filter):
    """
    Log filter that redacts sensitive data from log records.

    Sensitive patterns include:
    - X-API-Key headers
    - Bearer tokens
    - Passwords
    - Authorization headers
    """

    SENSITIVE_PATTERNS = [
        (r'X-API-Key["\']?\s*[:=]\s*["\']?[a-zA-Z0-9_-]+', "[API_KEY_REDACTED]"),
        (r"Bearer\s+[a-zA-Z0-9_\-\.]+", "[TOKEN_REDACTED]"),
        (r'["\']?password["\']?\s*[:=]\s*["\']?[^\s"\',}]+', "[PASSWORD_REDACTED]"),
        (r'Authorization["\']?\s*[:=]\s*["\']?[^\s"\']+', "[AUTH_REDACTED]"),
    ]

    def filter(self, record: LogRecord) -> bool:
        """Redact sensitive data from log message and its arguments."""
        record.msg = self._redact(str(record.msg))

        if record.args:
            record.args = tuple(self._redact(str(arg)) if isinstance(arg, (str, bytes)) else arg for arg in record.args)

        return True

    def _redact(self, text: str) -> str:
        """Apply all redaction patterns to text."""
        result = text
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
        return result


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured log output.

    Outputs logs as JSON objects with consistent fields:
    - timestamp: ISO format timestamp
    - level: Log level (INFO, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - call_id / runner_name / trace_id: Order context (if available)
    - module, function, line: Source location
    """

    def format(self, record: LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "":
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                # Only include JSON-serializable values
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                pass

        return json.dumps(log_data)


def generate_trace_id() -> str:
    """Generate a unique trace ID for request tracking."""
    return str(uuid.uuid4())[:8]


def _get_log_level(debug: bool) -> int:
    if debug:
        return logging.DEBUG
    env_level = os.environ.get("LOG_LEVEL", "").upper()
    if env_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        return getattr(logging, env_level)
    return logging.INFO


def setup_structured_logging(debug: bool = False) -> None:
    """
    Configure logging with JSON output and sensitive data redaction.

    LOG_FORMAT=pretty switches to a human-readable console format for local
    development.

    Args:
        debug: Enable debug logging level
    """
    log_level = _get_log_level(debug)

    handler = logging.StreamHandler(sys.stdout)
    if os.environ.get("LOG_FORMAT", "json").lower() == "pretty":
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    else:
        handler.setFormatter(JSONFormatter())
    handler.addFilter(SensitiveDataFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # Transport libraries are chatty at debug level
    for noisy in ("httpx", "httpcore", "websockets"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))
