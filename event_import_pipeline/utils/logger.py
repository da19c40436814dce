"""
Logging utilities for Event Import Pipeline

Provides structured JSON logging, per-logger context injection and the
job-scoped loggers used by pipeline task handlers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, IO, Optional

PACKAGE_LOGGER_NAME = "event_import_pipeline"

# Import context promoted to the top level of each JSON line
TRACE_FIELDS = ("job_id", "task", "component")

_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON documents.

    ``job_id``, ``task`` and ``component`` are lifted to the top level so a
    whole import run can be grepped by job; anything else attached through
    ``extra=`` ends up under the ``extra`` key.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        for name in TRACE_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        if self.include_extra:
            extra = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS and key not in TRACE_FIELDS
            }
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """Stamps the logger's import context onto records that lack it."""

    def __init__(self):
        super().__init__()
        self.context: Dict[str, Any] = {}

    def set_context(self, **kwargs):
        self.context.update(kwargs)

    def clear_context(self):
        self.context.clear()

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _context_filter(logger: logging.Logger) -> JobContextFilter:
    for existing in logger.filters:
        if isinstance(existing, JobContextFilter):
            return existing
    context_filter = JobContextFilter()
    logger.addFilter(context_filter)
    return context_filter


def setup_logger(
    name: str = PACKAGE_LOGGER_NAME,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None,
    stream: Optional[IO[str]] = None
) -> logging.Logger:
    """
    Attach console (and optional file) handlers to the package logger.

    Calling it again is a no-op once a real handler is attached, so the CLI
    and embedding applications can both call it safely.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Emit JSON lines instead of plain text
        log_file: Optional log file path
        stream: Console stream; defaults to stderr so command output stays clean

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    _context_filter(logger)

    if any(not isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger

    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logger.setLevel(log_level)

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s %(levelname)-8s [%(name)s] %(message)s')

    handlers: list = [logging.StreamHandler(stream or sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return ``logging.getLogger(name)`` with a context filter attached."""
    logger = logging.getLogger(name)
    _context_filter(logger)
    return logger


def set_log_context(logger: logging.Logger, **kwargs):
    """Merge ``kwargs`` into the context stamped on every record of ``logger``."""
    _context_filter(logger).set_context(**kwargs)


def clear_log_context(logger: logging.Logger):
    _context_filter(logger).clear_context()


class JobLoggerAdapter(logging.LoggerAdapter):
    """Adds the import job and task to records without replacing call-site ``extra``."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def create_job_logger(job_id: Any, task: str) -> JobLoggerAdapter:
    """
    Create a logger scoped to one task handler invocation.

    Args:
        job_id: Import job identifier
        task: Task slug being executed (e.g. ``create-events``)

    Returns:
        Adapter over the ``jobs.<task>`` logger carrying ``job_id`` and ``task``
    """
    logger = get_logger(f"{PACKAGE_LOGGER_NAME}.jobs.{task}")
    return JobLoggerAdapter(logger, {"job_id": str(job_id), "task": task})


def log_performance(logger, operation: str, duration_ms: float, **fields):
    """Log the duration of an operation along with any extra counters."""
    logger.info(f"{operation} took {duration_ms:.1f}ms", extra={
        "operation": operation,
        "duration_ms": round(duration_ms, 2),
        **fields
    })


class LoggerContext:
    """
    Temporarily extends a logger's context, e.g. while one queued task runs.

    The previous context is restored on exit.
    """

    def __init__(self, logger: logging.Logger, **kwargs):
        self.logger = logger
        self.context = kwargs
        self._saved: Dict[str, Any] = {}

    def __enter__(self):
        context_filter = _context_filter(self.logger)
        self._saved = dict(context_filter.context)
        context_filter.set_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        context_filter = _context_filter(self.logger)
        context_filter.clear_context()
        context_filter.set_context(**self._saved)
