"""Core utilities for the dashboard application."""

from dashboard.app.core.config import Settings, settings
from dashboard.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
