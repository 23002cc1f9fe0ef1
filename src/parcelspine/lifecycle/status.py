"""Lifecycle status model.

Every unit (application or parcel) is in exactly one :class:`Status` at a
time. Transition drivers move units along the edges of
``VALID_TRANSITIONS`` and nothing else writes a status, so a unit's
history is always a path through this graph::

    NOT_LOADED        → LOADING_DEFINITION
    LOADING_DEFINITION → NOT_BOOTSTRAPPED | LOAD_ERROR
    NOT_BOOTSTRAPPED  → BOOTSTRAPPING
    BOOTSTRAPPING     → NOT_MOUNTED | SKIP_BECAUSE_BROKEN
    NOT_MOUNTED       → MOUNTING
    MOUNTING          → MOUNTED | SKIP_BECAUSE_BROKEN
    MOUNTED           → UPDATING | UNMOUNTING
    UPDATING          → MOUNTED | SKIP_BECAUSE_BROKEN
    UNMOUNTING        → NOT_MOUNTED | SKIP_BECAUSE_BROKEN
    LOAD_ERROR        → (absorbing)
    SKIP_BECAUSE_BROKEN → (absorbing)
"""

from __future__ import annotations

from enum import Enum

from parcelspine.core.errors import InvalidTransitionError


class Status(str, Enum):
    """Lifecycle status of a unit."""

    NOT_LOADED = "NOT_LOADED"
    LOADING_DEFINITION = "LOADING_DEFINITION"
    LOAD_ERROR = "LOAD_ERROR"
    NOT_BOOTSTRAPPED = "NOT_BOOTSTRAPPED"
    BOOTSTRAPPING = "BOOTSTRAPPING"
    NOT_MOUNTED = "NOT_MOUNTED"
    MOUNTING = "MOUNTING"
    MOUNTED = "MOUNTED"
    UPDATING = "UPDATING"
    UNMOUNTING = "UNMOUNTING"
    SKIP_BECAUSE_BROKEN = "SKIP_BECAUSE_BROKEN"

    @property
    def is_broken(self) -> bool:
        """True for the absorbing failure states."""
        return self in (Status.LOAD_ERROR, Status.SKIP_BECAUSE_BROKEN)

    def __str__(self) -> str:
        return self.value


class UnitKind(str, Enum):
    """Explicit tag distinguishing top-level applications from nested parcels."""

    APPLICATION = "application"
    PARCEL = "parcel"

    def __str__(self) -> str:
        return self.value


VALID_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.NOT_LOADED: frozenset({
        Status.LOADING_DEFINITION,
    }),
    Status.LOADING_DEFINITION: frozenset({
        Status.NOT_BOOTSTRAPPED,
        Status.LOAD_ERROR,
    }),
    Status.NOT_BOOTSTRAPPED: frozenset({
        Status.BOOTSTRAPPING,
    }),
    Status.BOOTSTRAPPING: frozenset({
        Status.NOT_MOUNTED,
        Status.SKIP_BECAUSE_BROKEN,
    }),
    Status.NOT_MOUNTED: frozenset({
        Status.MOUNTING,
    }),
    Status.MOUNTING: frozenset({
        Status.MOUNTED,
        Status.SKIP_BECAUSE_BROKEN,
    }),
    Status.MOUNTED: frozenset({
        Status.UPDATING,
        Status.UNMOUNTING,
    }),
    Status.UPDATING: frozenset({
        Status.MOUNTED,
        Status.SKIP_BECAUSE_BROKEN,
    }),
    Status.UNMOUNTING: frozenset({
        Status.NOT_MOUNTED,
        Status.SKIP_BECAUSE_BROKEN,
    }),
    Status.LOAD_ERROR: frozenset(),  # absorbing
    Status.SKIP_BECAUSE_BROKEN: frozenset(),  # absorbing
}


def validate_transition(current: Status, target: Status) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Re-asserting the current status is not a transition and always passes.

    Example:
        >>> validate_transition(Status.MOUNTING, Status.MOUNTED)
        >>> validate_transition(Status.MOUNTED, Status.MOUNTING)
        InvalidTransitionError: Invalid Status transition: MOUNTED → MOUNTING
    """
    if current is target:
        return
    allowed = VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, "Status")


__all__ = ["Status", "UnitKind", "VALID_TRANSITIONS", "validate_transition"]
