"""
LifecycleRuntime - the process-wide context for the lifecycle engine.

One runtime is constructed by the embedder at startup. It owns every piece
of state that would otherwise be a module-level global:

- default time budgets per phase (:class:`TimeoutDefaults`)
- the ordered error-handler list (:class:`ErrorHandlerRegistry`)
- the parcel arena (parcel id → :class:`ParcelRecord`) and id counter
- parcels mounted at the root, outside any application
- the current location handed to custom-props suppliers

All of it lives on a single asyncio loop, so none of it needs locking;
only reroutes are serialized.

Example::

    runtime = LifecycleRuntime()
    runtime.add_error_handler(report_to_sentry)
    runtime.set_mount_max_time(5000, die_on_timeout=True)

    handle = runtime.mount_root_parcel(widget_definition, {"anchor": "#sidebar"})
    await handle.mount_promise
    await handle.unmount()
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from parcelspine.core.errors import ValidationError, format_error_message, set_error_docs_url
from parcelspine.core.logging import configure_logging as _configure_logging
from parcelspine.core.logging import get_logger
from parcelspine.core.settings import ParcelSpineSettings, get_settings
from parcelspine.lifecycle.escalation import ErrorHandler, ErrorHandlerRegistry
from parcelspine.lifecycle.timeouts import TimeoutDefaults
from parcelspine.orchestration.parcels import ParcelHandle, ParcelRecord, mount_parcel
from parcelspine.orchestration.reroute import ActivityCheck, RerouteResult, reroute

if TYPE_CHECKING:
    from parcelspine.lifecycle.units import Unit

logger = get_logger(__name__)


class LifecycleRuntime:
    """Explicit context object shared by every unit an embedder drives."""

    def __init__(self, settings: ParcelSpineSettings | None = None, *, location: Any = None):
        self.settings = settings or get_settings()
        set_error_docs_url(self.settings.error_docs_url)
        self.timeouts = TimeoutDefaults(self.settings)
        self.error_handlers = ErrorHandlerRegistry()
        self.location = location
        self.root_parcels: dict[int, Unit] = {}
        self._parcels: dict[int, ParcelRecord] = {}
        self._parcel_ids = itertools.count()
        self._reroute_lock: asyncio.Lock | None = None

    def configure_logging(self) -> None:
        """Configure structlog from ``log_level``, ``log_format`` and ``service_name``.

        Logging is process-wide, so the embedder opts in explicitly rather
        than having every runtime reconfigure it.
        """
        _configure_logging(
            level=self.settings.log_level,
            json_format=self.settings.log_format == "json",
            service=self.settings.service_name,
        )

    # ── Error handlers ───────────────────────────────────────────

    def add_error_handler(self, handler: ErrorHandler) -> None:
        self.error_handlers.add(handler)

    def remove_error_handler(self, handler: ErrorHandler) -> bool:
        return self.error_handlers.remove(handler)

    # ── Timeout defaults ─────────────────────────────────────────

    def set_bootstrap_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.timeouts.set_bootstrap_max_time(millis, die_on_timeout, warning_millis)

    def set_mount_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.timeouts.set_mount_max_time(millis, die_on_timeout, warning_millis)

    def set_unmount_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.timeouts.set_unmount_max_time(millis, die_on_timeout, warning_millis)

    def set_update_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.timeouts.set_update_max_time(millis, die_on_timeout, warning_millis)

    # ── Parcel arena ─────────────────────────────────────────────

    def next_parcel_id(self) -> int:
        return next(self._parcel_ids)

    def children_of(self, owner: Unit | None) -> dict[int, Unit]:
        """The children mapping of ``owner``; ``None`` is the root."""
        return self.root_parcels if owner is None else owner.children

    def track_parcel(self, record: ParcelRecord) -> None:
        self._parcels[record.unit.id] = record

    def forget_parcel(self, parcel_id: int) -> None:
        self._parcels.pop(parcel_id, None)

    def get_parcel(self, parcel_id: int) -> ParcelRecord:
        try:
            return self._parcels[parcel_id]
        except KeyError:
            raise ValidationError(
                format_error_message(45, f"No parcel with id {parcel_id}", parcel_id), code=45
            ) from None

    def mount_parcel(
        self,
        owner: Unit | None,
        config: Any,
        custom_props: Mapping[str, Any] | None = None,
    ) -> ParcelHandle:
        """Create a parcel owned by ``owner`` and start its mount chain."""
        return mount_parcel(self, owner, config, custom_props)

    def mount_root_parcel(self, config: Any, custom_props: Mapping[str, Any] | None = None) -> ParcelHandle:
        """Create a parcel that belongs to no application."""
        return self.mount_parcel(None, config, custom_props)

    async def unmount_parcel(self, parcel_id: int) -> None:
        """Hard-fail teardown of one parcel (used by parent teardown)."""
        await self.get_parcel(parcel_id).unmount_this_parcel()

    # ── Reroute ──────────────────────────────────────────────────

    @property
    def reroute_lock(self) -> asyncio.Lock:
        # Created lazily so the lock binds to the loop that first reroutes.
        if self._reroute_lock is None:
            self._reroute_lock = asyncio.Lock()
        return self._reroute_lock

    async def reroute(
        self,
        apps: Iterable[Unit],
        is_active: ActivityCheck,
        location: Any = None,
    ) -> RerouteResult:
        """Drive ``apps`` towards the active set (``location=None`` keeps the current one)."""
        return await reroute(self, apps, is_active, location)


__all__ = ["LifecycleRuntime"]
