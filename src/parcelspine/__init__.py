"""
parcelspine - lifecycle orchestration for pluggable applications and parcels.

Applications and nested parcels share one host process. Each exposes async
bootstrap / mount / unmount (and optionally update) lifecycles; parcelspine
drives them through a strict status machine, enforces a time budget on
every call, and keeps one broken unit from taking down the others.

Usage:
    from parcelspine import LifecycleRuntime, create_application

    runtime = LifecycleRuntime()
    nav = create_application("nav", load_nav_definition)
    await runtime.reroute([nav], lambda app, location: location.startswith("/"), "/home")
"""

__version__ = "0.1.0"

from parcelspine.core.errors import (
    ConfigError,
    InvalidStatusError,
    InvalidTransitionError,
    LifecycleError,
    LifecycleTimeout,
    ParcelSpineError,
    ParcelUnmountError,
    ValidationError,
    format_error_message,
)
from parcelspine.core.logging import configure_logging
from parcelspine.core.settings import ParcelSpineSettings, get_settings
from parcelspine.lifecycle.status import Status, UnitKind
from parcelspine.lifecycle.timeouts import TimeoutConfig
from parcelspine.lifecycle.units import Unit
from parcelspine.orchestration import (
    ANCHOR_PROP,
    LifecycleRuntime,
    ParcelHandle,
    RerouteResult,
    create_application,
    reroute,
)

__all__ = [
    "__version__",
    # Errors
    "ConfigError",
    "InvalidStatusError",
    "InvalidTransitionError",
    "LifecycleError",
    "LifecycleTimeout",
    "ParcelSpineError",
    "ParcelUnmountError",
    "ValidationError",
    "format_error_message",
    # Config / logging
    "ParcelSpineSettings",
    "get_settings",
    "configure_logging",
    # Model
    "Status",
    "UnitKind",
    "TimeoutConfig",
    "Unit",
    # Orchestration
    "ANCHOR_PROP",
    "LifecycleRuntime",
    "ParcelHandle",
    "RerouteResult",
    "create_application",
    "reroute",
]
