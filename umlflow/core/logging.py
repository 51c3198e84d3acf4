"""Logging configuration for the workflow engine."""

import contextvars
import logging
import sys
import json
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional, Dict, Any
from pathlib import Path


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        # Instance/action context attached via log_with_context or the filter
        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Filter that stamps request-scoped context onto log records.

    Context lives in a context variable, so each request task and each thread
    sees only the fields it set.
    """

    def __init__(self, name: str = "umlflow_logging_context"):
        super().__init__()
        self._context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(name, default={})

    def set_context(self, **kwargs):
        """Set context fields for logging."""
        self._context.set({**self._context.get(), **kwargs})

    def clear_context(self):
        """Clear all context fields."""
        self._context.set({})

    def get_context(self) -> Dict[str, Any]:
        return dict(self._context.get())

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to log record."""
        if not hasattr(record, 'extra_fields'):
            record.extra_fields = {}
        for key, value in self._context.get().items():
            record.extra_fields.setdefault(key, value)
        return True


_context_filter = WorkflowContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure logging for the workflow engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        log_format: Custom log format string
        structured: Whether to use structured JSON logging
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of backup files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        if log_format is None:
            log_format = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"

        formatter = logging.Formatter(
            fmt=log_format,
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_context_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_context_filter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    # The parser logs every skipped construct at DEBUG
    logging.getLogger("umlflow.core").setLevel(logging.DEBUG if level.upper() == "DEBUG" else logging.INFO)
    logging.getLogger("umlflow.api").setLevel(logging.INFO)
    logging.getLogger("umlflow.actions").setLevel(logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set context fields for all subsequent log messages."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    """Clear all logging context fields."""
    _context_filter.clear_context()


def get_logging_context() -> Dict[str, Any]:
    """Context fields visible to the current task or thread."""
    return _context_filter.get_context()


def log_with_context(logger: logging.Logger, level: int, message: str, exc_info: bool = False, **context):
    """Log a message with additional context fields."""
    extra = {"extra_fields": context}
    logger.log(level, message, extra=extra, exc_info=exc_info)
