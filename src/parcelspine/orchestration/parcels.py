"""Parcels: units mounted explicitly by an owning application or parcel.

Construction is two-phase. :func:`mount_parcel` validates its arguments,
allocates an id, builds the :class:`Unit` and registers it with its owner
straight away; the definition is applied later, when the loader resolves.
The runtime keeps every live parcel in an arena keyed by id, and the
owner's ``children`` mapping is the ownership tree used by teardown.

The chain started for every parcel::

    load ──▶ bootstrap (hard-fail) ──▶ mount (hard-fail)

and the handle returned to the caller exposes one awaitable per phase plus
imperative ``mount()`` / ``unmount()`` / ``update()``.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from parcelspine.core.errors import InvalidStatusError, ValidationError, format_error_message
from parcelspine.core.logging import get_logger
from parcelspine.lifecycle.escalation import transform_error
from parcelspine.lifecycle.status import VALID_TRANSITIONS, Status, UnitKind
from parcelspine.lifecycle.transitions import (
    apply_definition,
    bootstrap_unit,
    mount_unit,
    start_definition_load,
    unmount_unit,
    update_unit,
)
from parcelspine.lifecycle.units import Unit, definition_get

if TYPE_CHECKING:
    from parcelspine.orchestration.runtime import LifecycleRuntime

logger = get_logger(__name__)

# Custom prop naming the (opaque) target a parcel renders into.
ANCHOR_PROP = "anchor"


def _mirror(source: asyncio.Future, target: asyncio.Future) -> None:
    """Settle ``target`` with ``None`` (or the same failure) when ``source`` settles."""

    def _copy(done: asyncio.Future) -> None:
        if target.done():
            return
        if done.cancelled():
            target.cancel()
        elif done.exception() is not None:
            target.set_exception(done.exception())
        else:
            target.set_result(None)

    source.add_done_callback(_copy)


class ParcelRecord:
    """Internal state of one parcel: its unit, owner and phase tasks."""

    def __init__(self, runtime: LifecycleRuntime, unit: Unit, owner: Unit | None):
        self.runtime = runtime
        self.unit = unit
        self.owner = owner
        loop = asyncio.get_running_loop()
        self.unmount_future: asyncio.Future = loop.create_future()
        self.load_task: asyncio.Task | None = None
        self.bootstrap_task: asyncio.Task | None = None
        self.mount_task: asyncio.Task | None = None

    def register(self) -> None:
        self.runtime.children_of(self.owner)[self.unit.id] = self.unit
        self.runtime.track_parcel(self)

    def deregister(self) -> None:
        self.runtime.children_of(self.owner).pop(self.unit.id, None)
        self.runtime.forget_parcel(self.unit.id)

    def start(self, pending: Any) -> None:
        loop = asyncio.get_running_loop()
        self.load_task = loop.create_task(self._load(pending))
        self.bootstrap_task = loop.create_task(self._bootstrap())
        self.mount_task = loop.create_task(self._mount())

    async def _load(self, pending: Any) -> None:
        try:
            definition = await pending if inspect.isawaitable(pending) else pending
            apply_definition(self.runtime, self.unit, definition)
        except Exception as err:
            failed = Status.LOAD_ERROR if self.unit.status is Status.LOADING_DEFINITION else self.unit.status
            raise transform_error(err, self.unit, failed)

    async def _bootstrap(self) -> None:
        await self.load_task
        await bootstrap_unit(self.runtime, self.unit, hard_fail=True)

    async def _mount(self) -> None:
        await self.bootstrap_task
        await mount_unit(self.runtime, self.unit, hard_fail=True)
        logger.debug("parcel_mounted", parcel=self.unit.name, parcel_id=self.unit.id, parent=self.unit.parent_name)

    async def unmount_this_parcel(self) -> None:
        """Tear the parcel down (hard-fail) once its mount chain has settled.

        On success the parcel leaves its owner's children and the unmount
        notification resolves. On failure the parcel is marked
        ``SKIP_BECAUSE_BROKEN``, the notification is rejected, the error is
        re-raised and the parcel stays with its owner.
        """
        try:
            await asyncio.shield(self.mount_task)
            await unmount_unit(self.runtime, self.unit, hard_fail=True)
        except Exception as err:
            if Status.SKIP_BECAUSE_BROKEN in VALID_TRANSITIONS[self.unit.status]:
                # e.g. torn down while an update or re-mount was outstanding
                self.unit.set_status(Status.SKIP_BECAUSE_BROKEN)
            if not self.unmount_future.done():
                self.unmount_future.set_exception(err)
            raise

        self.deregister()
        if not self.unmount_future.done():
            self.unmount_future.set_result(None)
        logger.debug("parcel_unmounted", parcel=self.unit.name, parcel_id=self.unit.id, parent=self.unit.parent_name)


class ParcelHandle:
    """External handle for a parcel.

    Phase awaitables resolve with ``None`` so callers never depend on
    internal results:

    - ``load_promise``
    - ``bootstrap_promise``
    - ``mount_promise``
    - ``unmount_promise`` (settles on the first teardown)
    """

    def __init__(self, record: ParcelRecord):
        self._record = record
        loop = asyncio.get_running_loop()
        self.load_promise: asyncio.Future = loop.create_future()
        self.bootstrap_promise: asyncio.Future = loop.create_future()
        self.mount_promise: asyncio.Future = loop.create_future()
        self.unmount_promise: asyncio.Future = loop.create_future()
        _mirror(record.load_task, self.load_promise)
        _mirror(record.bootstrap_task, self.bootstrap_promise)
        _mirror(record.mount_task, self.mount_promise)
        _mirror(record.unmount_future, self.unmount_promise)

    @property
    def id(self) -> int:
        return self._record.unit.id

    @property
    def name(self) -> str:
        return self._record.unit.name

    def get_status(self) -> Status:
        return self._record.unit.status

    async def mount(self) -> None:
        """Mount again after an unmount (soft-fail); only valid from ``NOT_MOUNTED``."""
        unit = self._record.unit
        if unit.status is not Status.NOT_MOUNTED:
            raise InvalidStatusError(
                format_error_message(
                    13,
                    f"Cannot mount parcel '{unit.name}' -- it is in a {unit.status.value} status",
                    unit.name,
                    unit.status.value,
                ),
                status=unit.status.value,
                code=13,
            )
        self._record.register()
        await mount_unit(self._record.runtime, unit)

    async def unmount(self) -> None:
        await self._record.unmount_this_parcel()

    async def update(self, custom_props: Mapping[str, Any]) -> None:
        """Replace the parcel's custom props and run its update lifecycle."""
        await asyncio.shield(self._record.load_task)
        await update_unit(self._record.runtime, self._record.unit, custom_props=custom_props, hard_fail=True)

    def __repr__(self) -> str:
        return f"ParcelHandle(id={self.id}, name={self.name!r}, status={self.get_status().value})"


def _validate_mount_args(config: Any, custom_props: Any) -> str | None:
    if not config or isinstance(config, (str, bytes, int, float)):
        raise ValidationError(
            format_error_message(2, "Cannot mount parcel without a definition or definition loading function"),
            code=2,
        )

    name = None if callable(config) else definition_get(config, "name")
    if name is not None and not isinstance(name, str):
        raise ValidationError(
            format_error_message(
                3, f"Parcel name must be a string, if provided. Was given {type(name).__name__}", type(name).__name__
            ),
            code=3,
        )

    if not isinstance(custom_props, Mapping):
        raise ValidationError(
            format_error_message(
                4,
                f"Parcel {name} has invalid custom props -- must be a mapping but was given "
                f"{type(custom_props).__name__}",
                name,
                type(custom_props).__name__,
            ),
            code=4,
        )

    if not custom_props.get(ANCHOR_PROP):
        raise ValidationError(
            format_error_message(
                5, f"Parcel {name} cannot be mounted without an {ANCHOR_PROP!r} provided as a prop", name
            ),
            code=5,
        )
    return name


def mount_parcel(
    runtime: LifecycleRuntime,
    owner: Unit | None,
    config: Any,
    custom_props: Mapping[str, Any] | None = None,
) -> ParcelHandle:
    """Create a parcel owned by ``owner`` (``None`` for the root) and mount it.

    Must be called with a running event loop. Argument errors are raised
    synchronously; everything after that is reported through the handle.

    Args:
        runtime: The lifecycle runtime
        owner: Owning unit, or ``None`` for a root parcel
        config: A definition, or a callable returning an awaitable definition
        custom_props: Mapping passed to every lifecycle; must contain ``anchor``

    Raises:
        ValidationError: On invalid arguments (codes 2-5)
        LifecycleError: If a loader does not return an awaitable (code 7)
    """
    name = _validate_mount_args(config, custom_props)

    parcel_id = runtime.next_parcel_id()
    unit = Unit(
        kind=UnitKind.PARCEL,
        name=name or f"parcel-{parcel_id}",
        status_at_creation=Status.LOADING_DEFINITION if callable(config) else Status.NOT_BOOTSTRAPPED,
        id=parcel_id,
        definition=config,
        custom_props=custom_props,
        parent_name=owner.name if owner is not None else None,
    )

    pending = start_definition_load(config, kind=UnitKind.PARCEL.value)

    record = ParcelRecord(runtime, unit, owner)
    record.register()
    record.start(pending)
    logger.debug("parcel_created", parcel=unit.name, parcel_id=parcel_id, parent=unit.parent_name)
    return ParcelHandle(record)


__all__ = ["ANCHOR_PROP", "ParcelHandle", "ParcelRecord", "mount_parcel"]
