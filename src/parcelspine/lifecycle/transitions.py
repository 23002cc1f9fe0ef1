"""Transition drivers: the edges of the lifecycle state machine.

Each driver checks the unit's current status, marks the in-progress
status, runs the phase through :func:`reasonable_time` and applies the
destination status. A driver invoked from the wrong status resolves
immediately with the unit, with one exception: :func:`unmount_unit`
raises :class:`InvalidStatusError` unless the unit is ``MOUNTED``.

Failure modes:
    ``hard_fail=True``   the escalated error is raised to the caller
                         (parcels, and the teardown of a parent's children)
    ``hard_fail=False``  the escalated error goes to the error handlers
                         and the driver returns the unit (applications)

Example::

    await load_unit(runtime, app)
    await bootstrap_unit(runtime, app)
    await mount_unit(runtime, app)
    ...
    await unmount_unit(runtime, app)
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from parcelspine.core.errors import (
    InvalidStatusError,
    LifecycleError,
    ParcelUnmountError,
    ValidationError,
    format_error_message,
)
from parcelspine.core.logging import LogContext, get_logger
from parcelspine.lifecycle.escalation import handle_error, transform_error
from parcelspine.lifecycle.status import Status
from parcelspine.lifecycle.timeouts import ensure_valid_timeouts, reasonable_time
from parcelspine.lifecycle.units import Unit, resolve_definition

if TYPE_CHECKING:
    from parcelspine.orchestration.runtime import LifecycleRuntime

logger = get_logger(__name__)

_UNSET: Any = object()


def _escalate(runtime: LifecycleRuntime, error: Any, unit: Unit, new_status: Status, hard_fail: bool) -> Unit:
    if hard_fail:
        raise transform_error(error, unit, new_status)
    handle_error(runtime.error_handlers, error, unit, new_status)
    return unit


# =============================================================================
# Definition loading
# =============================================================================


def start_definition_load(source: Any, *, kind: str) -> Any:
    """Invoke a definition loader, or pass a plain definition through.

    Raises:
        LifecycleError: If a loader does not return an awaitable
    """
    if not callable(source):
        return source
    pending = source()
    if not inspect.isawaitable(pending):
        raise LifecycleError(
            format_error_message(
                7,
                f"When mounting a {kind}, the definition loading function must return an "
                f"awaitable that resolves with the definition",
                kind,
            ),
            code=7,
        )
    return pending


def apply_definition(runtime: LifecycleRuntime, unit: Unit, definition: Any) -> Unit:
    """Validate ``definition`` and populate ``unit`` from it.

    Second phase of unit construction: the unit already exists (and, for
    parcels, is already registered with its owner); this fills in its
    lifecycles and timeouts and moves it to ``NOT_BOOTSTRAPPED``.
    """
    name, lifecycles, definition_timeouts = resolve_definition(
        definition, kind=unit.kind, fallback_name=unit.name
    )
    overrides: dict[str, Any] = {}
    for source in (definition_timeouts, unit.timeout_overrides):
        if source is None:
            continue
        if not isinstance(source, Mapping):
            overrides = source  # let ensure_valid_timeouts reject it
            break
        overrides.update(source)
    timeouts = ensure_valid_timeouts(runtime.timeouts, overrides)

    if unit.is_parcel:
        unit.name = name
    unit.lifecycles = lifecycles
    unit.timeouts = timeouts
    unit.set_status(Status.NOT_BOOTSTRAPPED)
    return unit


async def load_unit(runtime: LifecycleRuntime, unit: Unit, *, hard_fail: bool = False) -> Unit:
    """``NOT_LOADED → LOADING_DEFINITION → NOT_BOOTSTRAPPED | LOAD_ERROR``."""
    if unit.status is not Status.NOT_LOADED:
        return unit

    unit.set_status(Status.LOADING_DEFINITION)
    try:
        definition = start_definition_load(unit.definition, kind=unit.kind.value)
        if inspect.isawaitable(definition):
            definition = await definition
        apply_definition(runtime, unit, definition)
    except Exception as err:
        return _escalate(runtime, err, unit, Status.LOAD_ERROR, hard_fail)

    logger.debug("unit_loaded", unit=unit.name, kind=unit.kind.value)
    return unit


# =============================================================================
# Bootstrap / mount / update
# =============================================================================


async def _run_phase(
    runtime: LifecycleRuntime,
    unit: Unit,
    phase: str,
    in_progress: Status,
    destination: Status,
    hard_fail: bool,
) -> Unit:
    unit.set_status(in_progress)
    start = time.monotonic()
    async with LogContext(unit=unit.name, phase=phase):
        logger.debug("lifecycle_started")
        try:
            await reasonable_time(runtime, unit, phase)
        except Exception as err:
            logger.debug("lifecycle_failed", error=str(err))
            return _escalate(runtime, err, unit, Status.SKIP_BECAUSE_BROKEN, hard_fail)
        if unit.status is not in_progress:
            # Marked broken while the lifecycle was still running.
            logger.warning("lifecycle_result_discarded", status=unit.status.value)
            return unit
        unit.set_status(destination)
        logger.debug("lifecycle_completed", duration_ms=round((time.monotonic() - start) * 1000, 2))
    return unit


async def bootstrap_unit(runtime: LifecycleRuntime, unit: Unit, *, hard_fail: bool = False) -> Unit:
    """``NOT_BOOTSTRAPPED → BOOTSTRAPPING → NOT_MOUNTED | SKIP_BECAUSE_BROKEN``."""
    if unit.status is not Status.NOT_BOOTSTRAPPED:
        return unit
    return await _run_phase(
        runtime, unit, "bootstrap", Status.BOOTSTRAPPING, Status.NOT_MOUNTED, hard_fail
    )


async def mount_unit(runtime: LifecycleRuntime, unit: Unit, *, hard_fail: bool = False) -> Unit:
    """``NOT_MOUNTED → MOUNTING → MOUNTED | SKIP_BECAUSE_BROKEN``."""
    if unit.status is not Status.NOT_MOUNTED:
        return unit
    return await _run_phase(runtime, unit, "mount", Status.MOUNTING, Status.MOUNTED, hard_fail)


async def update_unit(
    runtime: LifecycleRuntime,
    unit: Unit,
    *,
    custom_props: Any = _UNSET,
    hard_fail: bool = False,
) -> Unit:
    """``MOUNTED → UPDATING → MOUNTED | SKIP_BECAUSE_BROKEN``.

    ``custom_props``, when given, replaces the unit's props before the
    update lifecycle runs.
    """
    if unit.status is not Status.MOUNTED:
        logger.debug("update_skipped", unit=unit.name, status=unit.status.value)
        return unit
    if unit.lifecycles is None or unit.lifecycles.update is None:
        raise ValidationError(
            format_error_message(14, f"{unit.kind.value} '{unit.name}' does not implement an update function", unit.name),
            code=14,
        )
    if custom_props is not _UNSET:
        unit.custom_props = custom_props
    return await _run_phase(runtime, unit, "update", Status.UPDATING, Status.MOUNTED, hard_fail)


# =============================================================================
# Unmount
# =============================================================================


def _composite_error(unit: Unit, child_errors: list[BaseException]) -> ParcelUnmountError:
    message = str(child_errors[0])
    if len(child_errors) > 1:
        message += f" (and {len(child_errors) - 1} more child parcel failures)"
    return ParcelUnmountError(message, child_errors=child_errors, cause=child_errors[0])


async def unmount_unit(runtime: LifecycleRuntime, unit: Unit, *, hard_fail: bool = False) -> Unit:
    """``MOUNTED → UNMOUNTING → NOT_MOUNTED | SKIP_BECAUSE_BROKEN``.

    Child parcels are unmounted concurrently first. Once all of them have
    settled the unit's own unmount always runs, even if a child failed.
    A child failure leaves the unit ``SKIP_BECAUSE_BROKEN`` and is
    escalated as a :class:`ParcelUnmountError`.

    Raises:
        InvalidStatusError: If the unit is not ``MOUNTED``
    """
    if unit.status is not Status.MOUNTED:
        raise InvalidStatusError(
            format_error_message(
                6,
                f"Cannot unmount {unit.kind.value} '{unit.name}' -- it is in a {unit.status.value} status",
                unit.name,
                unit.status.value,
            ),
            status=unit.status.value,
            code=6,
        )

    unit.set_status(Status.UNMOUNTING)

    child_ids = list(unit.children)
    outcomes = await asyncio.gather(
        *(runtime.unmount_parcel(child_id) for child_id in child_ids),
        return_exceptions=True,
    )
    child_errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    if child_errors:
        logger.warning(
            "child_parcels_failed_to_unmount",
            unit=unit.name,
            failed=len(child_errors),
            total=len(child_ids),
        )

    start = time.monotonic()
    async with LogContext(unit=unit.name, phase="unmount"):
        try:
            await reasonable_time(runtime, unit, "unmount")
        except Exception as err:
            _escalate(runtime, err, unit, Status.SKIP_BECAUSE_BROKEN, hard_fail)
        else:
            # A unit whose children failed stays broken.
            if not child_errors:
                unit.set_status(Status.NOT_MOUNTED)
            logger.debug("lifecycle_completed", duration_ms=round((time.monotonic() - start) * 1000, 2))

    if child_errors:
        _escalate(runtime, _composite_error(unit, child_errors), unit, Status.SKIP_BECAUSE_BROKEN, hard_fail)

    return unit


__all__ = [
    "apply_definition",
    "bootstrap_unit",
    "load_unit",
    "mount_unit",
    "start_definition_load",
    "unmount_unit",
    "update_unit",
]
