"""Correlation ID based logging utilities for end-to-end tracing.

Provides structured logging with correlation IDs so that a single payment or
coupon request can be followed through verifier, store and sweeper logs.
HTTP requests carry ``req-`` IDs (or the caller's ``X-Correlation-Id``) and
each sweep pass runs under its own ``sweep-`` ID.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar, Token
from typing import Optional

# Context variable to store correlation ID for the current request/task
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

NO_CORRELATION_ID = "no-correlation-id"

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "uvicorn.access")


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation_id to the log record.

        Args:
            record: The log record to filter.

        Returns:
            Always True to allow the record through.
        """
        record.correlation_id = correlation_id_var.get() or NO_CORRELATION_ID
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Messages routinely contain addresses, tx hashes and quoted error text, so
    fields are encoded with ``json.dumps`` rather than string templating.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Render a record as a JSON line.

        Args:
            record: The log record to render.

        Returns:
            The encoded JSON object.
        """
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "correlation_id": getattr(record, "correlation_id", NO_CORRELATION_ID),
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    logger.addHandler(handler)

    # Keep per-request client chatter out of INFO logs
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def set_correlation_id(correlation_id: Optional[str]) -> Token:
    """Set the correlation ID for the current context.

    Args:
        correlation_id: The correlation ID to set.

    Returns:
        Token that restores the previous value when passed to ``reset``.
    """
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID.

    Returns:
        The current correlation ID or None if not set.
    """
    return correlation_id_var.get()


def generate_correlation_id(prefix: str = "corr") -> str:
    """Generate a new correlation ID.

    Args:
        prefix: Short tag identifying the origin (``req``, ``sweep``, ...).

    Returns:
        A new UUID-based correlation ID.
    """
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: The logger name (typically __name__).

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


class CorrelationIdContext:
    """Context manager for setting correlation ID in a block of code.

    Usage:
        with CorrelationIdContext(request.headers.get("X-Correlation-Id"), prefix="req") as cid:
            ...
    """

    def __init__(self, correlation_id: Optional[str] = None, prefix: str = "corr"):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
            prefix: Prefix used when generating an ID.
        """
        self.correlation_id = correlation_id or generate_correlation_id(prefix)
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        """Enter the context and set the correlation ID.

        Returns:
            The correlation ID being used.
        """
        self._token = set_correlation_id(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit the context and restore the previous correlation ID."""
        if self._token is not None:
            correlation_id_var.reset(self._token)
            self._token = None
