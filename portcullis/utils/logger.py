"""Structured logging utilities for Portcullis.

This module provides async-safe structured logging using structlog.
Every record carries an ISO timestamp, its level, the event name, any bound
context, and the correlation id of the request being served (when set).

Warnings and errors are written to stderr; debug and info go to stdout.
"""

import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for request tracking
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Accepted level names. "warn" is the configured spelling for WARNING.
LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def add_correlation_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add correlation_id to log context if available."""
    correlation_id = correlation_id_var.get()
    if correlation_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO timestamp to log entries."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return event_dict


class LevelRoutedPrintLogger:
    """Print one line per record, routing by level.

    ``warning``/``error``/``critical`` go to stderr, everything else to stdout.
    The streams are looked up on every write so that redirected ``sys.stdout``
    and ``sys.stderr`` (pytest's ``capsys``, process supervisors) are honoured.
    """

    def __init__(self, *args: Any) -> None:
        pass

    @staticmethod
    def _write(stream_name: str, message: str) -> None:
        stream = getattr(sys, stream_name)
        stream.write(message + "\n")
        stream.flush()

    def debug(self, message: str) -> None:
        self._write("stdout", message)

    info = msg = log = debug

    def warning(self, message: str) -> None:
        self._write("stderr", message)

    warn = error = err = critical = fatal = exception = failure = warning


class LevelRoutedPrintLoggerFactory:
    """structlog logger factory producing :class:`LevelRoutedPrintLogger`."""

    def __call__(self, *args: Any) -> LevelRoutedPrintLogger:
        return LevelRoutedPrintLogger(*args)


def configure_logging(
    log_level: str = "info",
    json_output: bool = True
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Minimum level emitted (debug, info, warn, error).
        json_output: If True, output JSON format. If False, use console format.

    Raises:
        ValueError: If ``log_level`` is not a recognised level name.
    """
    level = LOG_LEVELS.get(log_level.lower())
    if level is None:
        raise ValueError(f"Unknown log level: {log_level!r}")

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        # Pretty console output for development
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=LevelRoutedPrintLoggerFactory(),
        # config.py logs before run.main() reconfigures; cached proxies would keep
        # the import-time level and renderer.
        cache_logger_on_first_use=False,
    )


def get_logger(name: str = "portcullis") -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def create_logger(service: str, version: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Return the root service logger with ``service``/``version`` bound.

    Child loggers are derived with ``logger.bind(**meta)``: they inherit every
    key of the parent and override keys they redefine.
    """
    meta: dict[str, Any] = {"service": service}
    if version:
        meta["version"] = version
    return structlog.get_logger(service).bind(**meta)


def bind_service_context(service: str, version: Optional[str] = None) -> None:
    """Attach ``service``/``version`` to every record logged from this context on.

    Module loggers from ``get_logger()`` then carry the same root metadata as
    ``create_logger()``. Tasks started afterwards inherit the binding.
    """
    meta: dict[str, Any] = {"service": service}
    if version:
        meta["version"] = version
    structlog.contextvars.bind_contextvars(**meta)


def serialize_error(error: BaseException, include_stack: bool) -> dict[str, Any]:
    """Render an exception as a plain dict for log metadata."""
    serialized: dict[str, Any] = {
        "name": type(error).__name__,
        "message": str(error),
    }
    if include_stack:
        serialized["stack"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return serialized


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set correlation ID in context for all subsequent logs.

    Args:
        correlation_id: Caller-supplied identifier for the request
    """
    correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    """Clear correlation ID from context."""
    correlation_id_var.set(None)


# Initialize logging with sensible defaults
# This will be reconfigured by run.py based on the loaded config
configure_logging()
