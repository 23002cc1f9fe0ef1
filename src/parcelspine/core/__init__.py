"""
parcelspine.core - errors, logging and settings shared by the lifecycle engine.
"""

from parcelspine.core.errors import (
    ConfigError,
    ErrorCategory,
    InvalidStatusError,
    InvalidTransitionError,
    LifecycleError,
    LifecycleTimeout,
    ParcelSpineError,
    ParcelUnmountError,
    ValidationError,
    format_error_message,
)
from parcelspine.core.logging import LogContext, configure_logging, get_logger
from parcelspine.core.settings import ParcelSpineSettings, get_settings

__all__ = [
    "ConfigError",
    "ErrorCategory",
    "InvalidStatusError",
    "InvalidTransitionError",
    "LifecycleError",
    "LifecycleTimeout",
    "ParcelSpineError",
    "ParcelUnmountError",
    "ValidationError",
    "format_error_message",
    "LogContext",
    "configure_logging",
    "get_logger",
    "ParcelSpineSettings",
    "get_settings",
]
