"""Logging setup for DocFlow.

Run, workflow and step identifiers are attached to every record through a
context variable, so each asyncio task (and each thread) carries its own
tags. Concurrent executions never see each other's identifiers.
"""

import logging
import sys
import json
import traceback
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from pathlib import Path

DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(run_tags)s] %(message)s"

# Values are never mutated in place; every update installs a fresh dict.
_log_context: ContextVar[Dict[str, Any]] = ContextVar("docflow_log_context", default={})

_QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "asyncio": logging.WARNING,
}


def current_logging_context() -> Dict[str, Any]:
    """Tags attached to records logged from the current task."""
    return dict(_log_context.get())


def set_logging_context(**tags) -> Token:
    """Add tags for the current task; returns a token for ``reset_logging_context``."""
    return _log_context.set({**_log_context.get(), **tags})


def reset_logging_context(token: Token) -> None:
    """Restore the tags that were active before ``set_logging_context`` returned ``token``."""
    _log_context.reset(token)


def clear_logging_context() -> None:
    _log_context.set({})


class RunContextFilter(logging.Filter):
    """Copies the current task's tags onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        tags = _log_context.get()
        extra_fields = dict(getattr(record, "extra_fields", None) or {})
        for key, value in tags.items():
            extra_fields.setdefault(key, value)
        record.extra_fields = extra_fields
        record.run_tags = " ".join(f"{key}={value}" for key, value in tags.items()) or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with run tags and extra fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "extra_fields", None) or {})

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


def _attach(root: logging.Logger, handler: logging.Handler, formatter: logging.Formatter) -> None:
    handler.setFormatter(formatter)
    handler.addFilter(RunContextFilter())
    root.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for DocFlow.

    Args:
        level: Logging level name
        log_file: Optional path of a rotating log file
        log_format: Format string for plain output; may use ``%(run_tags)s``
        structured: Emit JSON lines instead of plain text
        max_size: Rotation size of the log file in bytes
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper())
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    _attach(root, logging.StreamHandler(sys.stdout), formatter)

    if log_file:
        from logging.handlers import RotatingFileHandler

        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        _attach(root, RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count), formatter)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("docflow").setLevel(numeric_level)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_with_context(logger: logging.Logger, level: int, message: str, **fields):
    """Log ``message`` with ``fields`` added to the record's structured output."""
    logger.log(level, message, extra={"extra_fields": fields})


class RetryLogger:
    """Logger for retry and credential-refresh operations."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"docflow.retry.{component_name}")
        self.component_name = component_name

    def log_retry_attempt(self, operation: str, error: Exception, attempt: int, max_attempts: int, delay: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"Retry {attempt}/{max_attempts} for {operation} in {delay:.2f}s",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            error_message=str(error),
            attempt=attempt,
            delay=delay
        )

    def log_retry_success(self, operation: str, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{operation} succeeded after {attempts_used} attempts",
            component=self.component_name,
            operation=operation,
            attempts_used=attempts_used
        )

    def log_retry_failure(self, operation: str, final_error: Exception, attempts_used: int):
        """Log that retries were exhausted or the error was not retryable."""
        log_with_context(
            self.logger, logging.ERROR,
            f"{operation} failed after {attempts_used} attempts",
            component=self.component_name,
            operation=operation,
            error_type=type(final_error).__name__,
            error_message=str(final_error),
            attempts_used=attempts_used
        )

    def log_credential_refresh(self, operation: str, succeeded: bool):
        log_with_context(
            self.logger, logging.INFO if succeeded else logging.ERROR,
            f"Credential refresh for {operation} {'succeeded' if succeeded else 'failed'}",
            component=self.component_name,
            operation=operation,
            refresh_succeeded=succeeded
        )
