# crm/core/__init__.py
"""
Core package for configuration, logging, and shared error types.
"""

from crm.core.config import Settings, settings
from crm.core.logging import configure_structlog, get_structlog_logger

__all__ = [
    "Settings",
    "settings",
    "configure_structlog",
    "get_structlog_logger",
]
