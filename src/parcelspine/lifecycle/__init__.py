"""
parcelspine.lifecycle - status model, timeout guard, escalation and drivers.

Usage:
    from parcelspine.lifecycle import Status, mount_unit, unmount_unit
"""

from parcelspine.lifecycle.escalation import ErrorHandlerRegistry, handle_error, transform_error
from parcelspine.lifecycle.status import VALID_TRANSITIONS, Status, UnitKind, validate_transition
from parcelspine.lifecycle.timeouts import TimeoutConfig, TimeoutDefaults, ensure_valid_timeouts, reasonable_time
from parcelspine.lifecycle.transitions import (
    apply_definition,
    bootstrap_unit,
    load_unit,
    mount_unit,
    unmount_unit,
    update_unit,
)
from parcelspine.lifecycle.units import LifecycleFns, Unit, build_props, compose_lifecycle

__all__ = [
    # Status model
    "Status",
    "UnitKind",
    "VALID_TRANSITIONS",
    "validate_transition",
    # Units
    "Unit",
    "LifecycleFns",
    "build_props",
    "compose_lifecycle",
    # Timeouts
    "TimeoutConfig",
    "TimeoutDefaults",
    "ensure_valid_timeouts",
    "reasonable_time",
    # Escalation
    "ErrorHandlerRegistry",
    "handle_error",
    "transform_error",
    # Drivers
    "apply_definition",
    "load_unit",
    "bootstrap_unit",
    "mount_unit",
    "unmount_unit",
    "update_unit",
]
