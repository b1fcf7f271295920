"""
Structured Logging Setup

Consistent logging configuration across the engine and its outer surfaces.
Uses JSON format for structured logs in production.

Loggers are built explicitly and handed to the Engine and to each poller;
nothing in the engine reads a module-level logger for per-source output.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json


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

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds bound context to all logs.

    Every key in ``extra`` (always ``service``, optionally ``source`` and
    friends) is merged into the record; per-call extras win.
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(self.extra)
        extra.setdefault("service", "unknown")
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "ServiceLoggerAdapter":
        """Derive an adapter carrying additional context"""
        return ServiceLoggerAdapter(self.logger, {**self.extra, **context})


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "engine", "poller")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"fieldpoll.{service_name}")
    logger.setLevel(numeric_level)

    # Clear existing handlers
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

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(
    service_name: str,
    log_level: str | None = None,
) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the service
        log_level: Explicit level; falls back to FIELDPOLL_LOG_LEVEL

    Returns:
        Logger adapter with service name in all logs
    """
    level = log_level or os.environ.get("FIELDPOLL_LOG_LEVEL", "INFO")
    json_format = os.environ.get("FIELDPOLL_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


# Convenience loggers for common operations
def log_variable_read(
    logger: logging.LoggerAdapter,
    source_name: str,
    variable: str,
    value: Any,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Log a decoded variable"""
    if success:
        logger.debug(
            f"Read {source_name}.{variable} = {value}",
            extra={"source": source_name, "variable": variable, "value": value},
        )
    else:
        logger.warning(
            f"Failed to read {source_name}.{variable}: {error}",
            extra={"source": source_name, "variable": variable},
        )


def log_poll_outcome(
    logger: logging.LoggerAdapter,
    source_name: str,
    cycle: int,
    quality: str,
    duration_ms: float,
    error: str | None = None,
) -> None:
    """Log the result of one poll cycle"""
    extra = {
        "source": source_name,
        "cycle": cycle,
        "quality": quality,
        "duration_ms": round(duration_ms, 1),
    }
    if error is None:
        logger.debug(
            f"Poll {source_name}#{cycle}: {quality} in {duration_ms:.0f}ms",
            extra=extra,
        )
    else:
        logger.warning(
            f"Poll {source_name}#{cycle}: {quality} ({error})",
            extra=extra,
        )
