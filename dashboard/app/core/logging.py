"""Structured logging configuration for the dashboard backend.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from dashboard.app.core.config import Settings, settings


# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRIBUTES = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "asctime", "taskName",
})


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Emits one JSON object per record so rate limiter decisions can be
    filtered by route category or key in the log aggregator.
    """

    CONTEXT_FIELDS = [
        "request_id",      # Request ID from X-Request-ID header
        "user_id",         # Authenticated caller, if known
        "org_id",          # Organization the caller acts for
        "path",            # Request path
        "method",          # HTTP method
        "route_category",  # api | auth | webhook | ai | oauth
        "rate_limit_key",  # Counter key the decision was made against
        "status_code",     # HTTP response status
    ]

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and key not in self.CONTEXT_FIELDS
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that fills in missing context fields with None.

    Lets the text formatters reference %(route_category)s and friends
    without a KeyError on records logged without extra=.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for field in JSONFormatter.CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        return True


def get_logging_config(app_settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Args:
        app_settings: Settings to read log level and format from
            (defaults to the environment)

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    if app_settings is None:
        app_settings = settings
    log_format = getattr(app_settings, "log_format", "text").lower()
    log_level = getattr(app_settings, "log_level", "INFO").upper()

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - route_category=%(route_category)s - rate_limit_key=%(rate_limit_key)s - user_id=%(user_id)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "dashboard.app.core.logging.JSONFormatter",
        }
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "dashboard.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "dashboard": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging(app_settings: Optional[Settings] = None) -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config(app_settings))

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str = "dashboard") -> logging.Logger:
    """Get a logger instance with the specified name.

    Args:
        name: Logger name, defaults to "dashboard"

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    org_id: Optional[str] = None,
    route_category: Optional[str] = None,
    rate_limit_key: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    None values are dropped so they do not shadow the ContextFilter defaults.

    Example:
        >>> logger.warning(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(
        ...         route_category="ai",
        ...         rate_limit_key="rate_limit:ai:user-1",
        ...     )
        ... )
    """
    context = {
        "request_id": request_id,
        "user_id": user_id,
        "org_id": org_id,
        "route_category": route_category,
        "rate_limit_key": rate_limit_key,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
