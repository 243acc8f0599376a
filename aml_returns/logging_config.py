"""
Structured Logging Module

JSON log records for lifecycle transitions and registry changes. Records
carry who acted (user_id), what they did (action) and on what (resource);
records emitted while serving an HTTP request also carry its correlation ID.
"""

import contextvars
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

STRUCTURED_FIELDS = ("user_id", "action", "resource", "correlation_id", "extra")

# Correlation ID of the request being served in this context
_correlation_id = contextvars.ContextVar('correlation_id', default=None)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: str):
    """Tag every record logged inside the block with a correlation ID"""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty fields are omitted"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if "correlation_id" not in entry and get_correlation_id():
            entry["correlation_id"] = get_correlation_id()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "aml_returns",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        logger_name: Root of the logger hierarchy to configure
        log_format: "json" for structured records, "text" for plain lines
        log_file: Append to this file instead of writing to stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if log_format == "text" else JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def get_logger(name: str = "aml_returns") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[Dict[str, Any]] = None) -> None:
    """
    Log one structured action record.

    The correlation ID defaults to the one of the current request context.
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id or get_correlation_id(),
        "extra": extra,
    }
    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra={key: value for key, value in fields.items() if value is not None}
    )
