"""Logging setup for the engine, with per-execution context on every record."""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional


DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(execution_id)s/%(node_id)s] %(message)s"

# One dict per asyncio task; runs on the same loop keep separate fields
_execution_fields: ContextVar[Dict[str, Any]] = ContextVar("hitl_engine_execution_fields", default={})

_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "asyncio": logging.WARNING,
}


class ExecutionContextFilter(logging.Filter):
    """Copies the current execution fields onto each record.

    ``execution_id`` and ``node_id`` are always present so plain format
    strings can reference them.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _execution_fields.get()
        record.execution_id = fields.get("execution_id", "-")
        record.node_id = fields.get("node_id", "-")
        record.context_fields = dict(fields)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        entry.update(getattr(record, "context_fields", {}))
        entry.update(getattr(record, "fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["error_type"] = record.exc_info[0].__name__
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


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
    Configure the root logger.

    Args:
        level: Level name for the root logger
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: Format string for plain-text output
        structured: Emit JSON records instead of plain text
        max_size: Rotation size for ``log_file``
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    if structured:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    context_filter = ExecutionContextFilter()
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    for handler in _build_handlers(log_file, max_size, backup_count):
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**fields):
    """Add fields (``execution_id``, ``node_id``, ...) for the current task."""
    merged = dict(_execution_fields.get())
    merged.update(fields)
    _execution_fields.set(merged)


def clear_logging_context():
    _execution_fields.set({})


class RetryLogger:
    """Logs retries of executors and resume jobs under ``retry.<component>``."""

    def __init__(self, component: str):
        self.component = component
        self.logger = get_logger(f"retry.{component}")

    def _log(self, level: int, message: str, **fields):
        fields["component"] = self.component
        self.logger.log(level, message, extra={"fields": fields})

    def retrying(self, operation: str, error: BaseException, attempt: int, max_attempts: int):
        self._log(
            logging.WARNING,
            f"{operation} failed on attempt {attempt}/{max_attempts}: {error}; retrying",
            operation=operation, attempt=attempt, max_attempts=max_attempts,
            error_type=type(error).__name__,
        )

    def recovered(self, operation: str, attempts: int):
        self._log(logging.INFO, f"{operation} succeeded after {attempts} attempts",
                  operation=operation, attempts=attempts)

    def gave_up(self, operation: str, error: BaseException, attempts: int):
        self._log(
            logging.ERROR,
            f"{operation} failed after {attempts} attempts: {error}",
            operation=operation, attempts=attempts, error_type=type(error).__name__,
        )
