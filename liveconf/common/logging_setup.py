"""
Structured Logging Setup

Consistent logging configuration across all services.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json


# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "config.cloud")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"liveconf.{service_name}")
    logger.setLevel(numeric_level)

    # Re-running setup must not stack handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format come from LIVECONF_LOG_LEVEL and LIVECONF_LOG_FORMAT.

    Args:
        service_name: Name of the service

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("LIVECONF_LOG_LEVEL", "INFO")
    json_format = os.environ.get("LIVECONF_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


class LogContext:
    """
    Context manager for adding temporary context to logs.

    Usage:
        with LogContext(url=url, reason="poll"):
            logger.info("Fetching cloud config")
    """

    def __init__(self, **context: Any):
        self.context = context
        self._original_factory = None

    def __enter__(self):
        self._original_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = self._original_factory(*args, **kwargs)
            for key, value in self.context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.setLogRecordFactory(self._original_factory)
        return False


def log_publish(
    logger: logging.LoggerAdapter,
    version: int,
    fingerprint: str,
    reason: str,
) -> None:
    """Log a successful configuration publish"""
    logger.info(
        f"Published config v{version} ({fingerprint[:8]}) after {reason}",
        extra={"version": version, "fingerprint": fingerprint, "reason": reason},
    )


def log_poll_failure(
    logger: logging.LoggerAdapter,
    url: str,
    error: Exception,
) -> None:
    """Log a failed cloud poll; previous snapshot stays in effect"""
    extra: dict[str, Any] = {"url": url, "error_type": type(error).__name__}
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        extra["status_code"] = status_code

    logger.warning(f"Cloud config poll failed, keeping previous: {error}", extra=extra)
