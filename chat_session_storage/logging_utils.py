"""
Structured JSON logging utilities for cloud environments.

This module provides structured logging that works well with Azure Container Apps,
Log Analytics, and other cloud logging systems that expect JSON-formatted logs.
It also provides ``log_once`` for warnings that would otherwise repeat on every
call while a dependency stays down.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from .cache import BoundedCache

# Default size for per-component "already logged" marker caches.
DEFAULT_ONCE_CACHE_SIZE = 512


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in cloud environments.

    Outputs logs as single-line JSON objects with consistent fields:
    - timestamp: ISO 8601 format in UTC
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - Additional context fields from extra dict
    """

    STANDARD_ATTRS = frozenset(
        {
            "name", "msg", "args", "created", "filename", "funcName",
            "levelname", "levelno", "lineno", "module", "msecs",
            "pathname", "process", "processName", "relativeCreated",
            "stack_info", "exc_info", "exc_text", "thread", "threadName",
            "taskName", "message",
        }
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self.STANDARD_ATTRS and not key.startswith("_"):
                try:
                    json.dumps(value)
                    log_obj[key] = value
                except (TypeError, ValueError):
                    log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = "chat_session_storage",
) -> logging.Logger:
    """
    Configure structured JSON logging for cloud environments.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: this package's logger, None for root)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    logger.addHandler(handler)
    logger.setLevel(level)

    return logger


def get_storage_logger(name: str) -> logging.Logger:
    """
    Get a logger for storage components with consistent naming.

    Args:
        name: Component name (e.g., 'replicator', 'secrets')

    Returns:
        Logger instance with name 'chat_session_storage.{name}'
    """
    return logging.getLogger(f"chat_session_storage.{name}")


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds storage context to all log messages.

    Useful for adding consistent context like user_id, session_id, etc.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Add extra context to log record."""
        extra = kwargs.get("extra", {})
        extra.update(self.extra or {})
        kwargs["extra"] = extra
        return msg, kwargs


def log_once(
    logger: logging.Logger,
    level: int,
    key: str,
    msg: str,
    *args: Any,
    cache: BoundedCache[bool],
) -> bool:
    """
    Log a message only the first time ``key`` is seen.

    Args:
        logger: Logger to emit on
        level: Logging level
        key: Deduplication key (e.g. "auth-failed:secret-name")
        msg: %-style message
        *args: Message arguments
        cache: Marker cache owned by the calling component

    Returns:
        True if the message was emitted
    """
    if not cache.add(f"{logger.name}:{key}"):
        return False
    logger.log(level, msg, *args)
    return True

