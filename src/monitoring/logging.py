"""
Structured logging for Punto Settlement.

JSON lines in production (``LOG_FORMAT=json``), colored single lines on a
terminal. Reviews and payout runs attach context (request id, issue,
payment) through ``set_request_context`` / ``LoggingContext`` so one payout
can be followed across every module it touches.

Credentials never reach a handler: API keys, bearer tokens and DSN
passwords are replaced, and wallet addresses are shortened to
``0x1234...abcd``. Transaction hashes are left whole; they are public and
needed to look a payout up on a block explorer.
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Redaction
# ============================================================

_SECRET_ASSIGNMENT = re.compile(
    r"(api[_-]?key|apikey|token|secret|password|passwd|pwd)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(Bearer\s+)(\S+)", re.IGNORECASE)
_DSN_PASSWORD = re.compile(r"(://[^:/\s]+:)([^@\s]+)(@)")
# Exactly 40 hex digits, so 64-digit transaction hashes do not match
_WALLET = re.compile(r"\b0x([a-fA-F0-9]{4})[a-fA-F0-9]{32}([a-fA-F0-9]{4})\b")

SENSITIVE_PATTERNS = [
    (_SECRET_ASSIGNMENT, r"\1\2[REDACTED]"),
    (_BEARER, r"\1[REDACTED]"),
    (_DSN_PASSWORD, r"\1[REDACTED]\3"),
    (_WALLET, r"0x\1...\2"),
]

REDACTED_FIELDS = frozenset({
    "password",
    "secret",
    "api_key",
    "apikey",
    "x_api_key",
    "token",
    "private_key",
    "authorization",
    "database_url",
})

# Attributes every LogRecord carries; anything else came in through ``extra=``
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "asctime", "taskName"}
)


def _is_sensitive_key(key: Any) -> bool:
    return str(key).lower().replace("-", "_") in REDACTED_FIELDS


def redact_string(text: str) -> str:
    """Apply every redaction pattern to ``text``; non-strings pass through."""
    if not isinstance(text, str):
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """
    Redact a log payload.

    Dict values under a sensitive key are replaced outright; strings
    anywhere in the structure go through ``redact_string``.
    """
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, dict):
        return {
            key: "[REDACTED]" if _is_sensitive_key(key) else redact_sensitive_data(value, depth + 1, max_depth)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    return redact_string(data)


# ============================================================
# Request context
# ============================================================

_context = threading.local()


def get_request_context() -> dict[str, Any]:
    return getattr(_context, "data", {})


def set_request_context(**kwargs) -> None:
    """Merge values into the context of the current thread."""
    _context.data = {**get_request_context(), **kwargs}


def clear_request_context() -> None:
    _context.data = {}


class LoggingContext:
    """
    Temporarily add context to every log line on this thread.

    Usage:
        with LoggingContext(issue_id="iss_1", run="payout"):
            engine.run_payouts("iss_1")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._saved: dict[str, Any] = {}

    def __enter__(self):
        self._saved = dict(get_request_context())
        set_request_context(**self.context)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        _context.data = self._saved
        return False


# ============================================================
# Formatters
# ============================================================


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Example:
        {"timestamp": "2025-03-01T10:30:00+00:00", "level": "WARNING",
         "logger": "submissions", "message": "Payment creation failed after acceptance",
         "context": {"request_id": "a1b2c3d4"}, "submission_id": "sub_...",
         "reconciliation_required": true, "location": {...}}
    """

    def __init__(self, include_stack_info: bool = True, redact_sensitive: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info
        self.redact_sensitive = redact_sensitive

    def _clean(self, value: Any) -> Any:
        return redact_sensitive_data(value) if self.redact_sensitive else value

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": self._clean(record.getMessage()),
        }

        context = get_request_context()
        if context:
            entry["context"] = self._clean(context)

        entry.update(self._clean(_extras(record)))

        if record.levelno >= logging.WARNING:
            entry["location"] = {"file": record.pathname, "line": record.lineno, "function": record.funcName}
        if record.exc_info and self.include_stack_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored, human-readable lines for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        parts = [f"{color}{stamp} {record.levelname[0]} [{record.name}]{self.RESET}", redact_string(record.getMessage())]

        context = get_request_context()
        if context:
            parts.append(f"{color}(" + " ".join(f"{k}={v}" for k, v in context.items()) + f"){self.RESET}")

        extras = redact_sensitive_data(_extras(record))
        if extras:
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]")

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ============================================================
# Setup
# ============================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Install handlers on the root logger, replacing any already there.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines on stdout; when None, decided by LOG_FORMAT=json
        log_file: Also append JSON lines to this file
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    handlers: list[logging.Handler] = [console]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Per-request lines come from our middleware
    for noisy in ("urllib3", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
