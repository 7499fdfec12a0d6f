"""
Structured logging for the Prompt Composer.

Text output for development, JSON for staging/production. Request and
composition identifiers (request_id, tenant_id, flow_key) are bound with
LogContext and attached to every record emitted inside the block.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict

from app.core.config import LOG_FORMAT, LOG_LEVEL


# Attributes every LogRecord carries; anything else is an extra field
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

# Per-task so concurrent requests never see each other's fields
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log aggregators."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
        )
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter; bound context is appended as key=value."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key in LogContext.current()
        )
        return f"{line} [{context}]" if context else line


class ContextFilter(logging.Filter):
    """Copies the active LogContext fields onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in LogContext.current().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class LogContext:
    """
    Bind fields to every log record emitted inside the block.

    Usage:
        with LogContext(tenant_id="475", flow_key="main"):
            logger.info("Composing prompt")  # record carries tenant_id and flow_key
    """

    def __init__(self, **fields: Any):
        self._fields = {key: value for key, value in fields.items() if value is not None}
        self._token = None

    @staticmethod
    def current() -> Dict[str, Any]:
        return _log_context.get()

    def __enter__(self):
        self._token = _log_context.set({**_log_context.get(), **self._fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)


def configure_logging(level: str = "INFO", format_type: str = "text") -> None:
    """
    Configure the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: "json" for structured, "text" for human-readable
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if format_type.lower() == "json" else TextFormatter())
    handler.addFilter(ContextFilter())

    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# Auto-configure on import based on environment
configure_logging(level=LOG_LEVEL, format_type=LOG_FORMAT)
