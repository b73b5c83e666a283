"""Logging configuration for the workflow runtime."""

import json
import logging
import sys
import threading
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s]%(run_context)s - %(message)s"

# Third-party loggers that are too chatty at DEBUG/INFO
_QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "urllib3": logging.WARNING,
    "asyncio": logging.WARNING,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the run context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


class RunContextFilter(logging.Filter):
    """
    Stamp records with the execution, node, job or request being worked on.

    Context is thread-local: each lane worker and each request thread carries
    its own. Fields land in ``record.extra_fields`` for the JSON formatter and
    in ``record.run_context`` as a `` [key=value ...]`` suffix for plain text.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def _fields(self) -> Dict[str, Any]:
        fields = getattr(self._local, "fields", None)
        if fields is None:
            fields = self._local.fields = {}
        return fields

    def bind(self, **fields):
        self._fields().update({key: value for key, value in fields.items() if value is not None})

    def clear(self):
        self._fields().clear()

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._fields())

    def filter(self, record: logging.LogRecord) -> bool:
        fields = self._fields()
        extra = dict(fields)
        extra.update(getattr(record, "extra_fields", {}))
        record.extra_fields = extra
        record.run_context = "".join(f" [{key}={value}]" for key, value in fields.items())
        return True


_run_context = RunContextFilter()


def _build_handlers(log_file: Optional[str], max_size: int, backup_count: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))
    return handlers


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the workflow runtime.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for a rotating log file
        log_format: Format string for plain-text output; may use ``%(run_context)s``
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The configured root logger
    """
    numeric_level = getattr(logging, level.upper())
    if structured:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for handler in _build_handlers(log_file, max_size, backup_count):
        handler.setFormatter(formatter)
        handler.addFilter(_run_context)
        root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, numeric_level))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**fields):
    """Bind context fields to subsequent log records on this thread."""
    _run_context.bind(**fields)


def clear_logging_context():
    _run_context.clear()


def get_logging_context() -> Dict[str, Any]:
    return _run_context.snapshot()


def log_with_context(logger: logging.Logger, level: int, message: str, **fields):
    """Log a message with one-off fields in addition to the thread's context."""
    logger.log(level, message, extra={"extra_fields": fields})


class ErrorRecoveryLogger:
    """Reports store calls that needed more than one attempt."""

    def __init__(self, operation: str):
        self.operation = operation
        self.logger = get_logger(f"workflow_runtime.retry.{operation}")

    def attempt_failed(self, error: Exception, attempt: int, max_attempts: int):
        log_with_context(
            self.logger, logging.WARNING,
            f"{self.operation} failed on attempt {attempt}/{max_attempts}: {error}",
            operation=self.operation,
            attempt=attempt,
            error_type=type(error).__name__
        )

    def recovered(self, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{self.operation} succeeded after {attempts_used} attempts",
            operation=self.operation,
            attempts_used=attempts_used
        )

    def gave_up(self, error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{self.operation} gave up after {attempts_used} attempts: {error}",
            operation=self.operation,
            attempts_used=attempts_used,
            error_type=type(error).__name__
        )
