"""
Structured Logging Configuration

JSON-formatted logging. Every record carries the request correlation ID and,
once a handler has bound it, the callback endpoint and processor order ID,
so all lines of one callback can be found together.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

LOGGER_NAMESPACE = "pnm_callbacks"

correlation_id_var: ContextVar[Optional[str]] = ContextVar(
    "correlation_id", default=None
)
callback_context_var: ContextVar[Dict[str, Optional[str]]] = ContextVar(
    "callback_context", default={}
)


class CallbackContextFilter(logging.Filter):
    """Add correlation ID and callback context to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "N/A"
        for key, value in callback_context_var.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class CallbackJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with UTC timestamps, source location and exception text"""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        return created.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Configure the package logger to write JSON lines to stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        The package root logger
    """
    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(log_level)
    logger.propagate = False

    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        CallbackJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    )
    console_handler.addFilter(CallbackContextFilter())

    logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the package namespace"""
    if name == LOGGER_NAMESPACE or name.startswith(f"{LOGGER_NAMESPACE}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for the current context.
    Generates a new UUID if not provided.

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def bind_callback_context(endpoint: str, pnm_order_identifier: Optional[str]) -> None:
    """Tag subsequent log records in this context with the callback being handled"""
    callback_context_var.set(
        {
            "callback_endpoint": endpoint,
            "pnm_order_identifier": pnm_order_identifier,
        }
    )
