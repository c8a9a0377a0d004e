"""
Structured Logging

JSON log lines with a correlation id so that one HTTP request, or one Celery
task run, can be followed across the lifecycle services and the gateways.
"""
import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

_NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data

        # Decimal ו-datetime עוברים כמחרוזת
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept an ``extra_data`` mapping"""

    def _emit(self, level: int, msg: str, args: tuple, extra_data: dict[str, Any] | None, **kwargs) -> None:
        if not self.isEnabledFor(level):
            return
        if extra_data:
            extra = dict(kwargs.pop("extra", None) or {})
            extra["extra_data"] = extra_data
            kwargs["extra"] = extra
        self._log(level, msg, args, **kwargs)

    def debug(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        self._emit(logging.DEBUG, msg, args, extra_data, **kwargs)

    def info(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        self._emit(logging.INFO, msg, args, extra_data, **kwargs)

    def warning(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        self._emit(logging.WARNING, msg, args, extra_data, **kwargs)

    def error(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        self._emit(logging.ERROR, msg, args, extra_data, **kwargs)

    def critical(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        self._emit(logging.CRITICAL, msg, args, extra_data, **kwargs)


logging.setLoggerClass(StructuredLogger)


class CorrelationIdFilter(logging.Filter):
    """Injects correlation_id for the plain-text formatter"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        json_format: JSON lines for production, human-readable for local runs
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        handler.addFilter(CorrelationIdFilter())
    root_logger.addHandler(handler)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set correlation ID for current context, generating one if missing"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance"""
    return logging.getLogger(name)  # type: ignore


def log_async_operation(operation_name: str):
    """Decorator logging start, finish and duration of an async operation"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = time.perf_counter()
            logger.debug(
                f"Starting {operation_name}",
                extra_data={"operation": operation_name, "status": "started"}
            )
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": round(time.perf_counter() - started, 4),
                    },
                    exc_info=True
                )
                raise
            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": round(time.perf_counter() - started, 4),
                }
            )
            return result
        return wrapper
    return decorator
