"""Reroute: bring top-level applications in line with the active set.

The embedder decides *which* applications should be active (route
matching, feature flags, anything) through an ``is_active(app, location)``
callable; this module only drives the transitions. Applications are
independent of each other, so every driver runs in soft-fail mode: a
broken application is escalated to the error handlers and the rest of the
batch carries on.

Order within one reroute::

    1. unmount every MOUNTED app that is no longer active   (concurrently)
    2. wait for all of those to settle
    3. load → bootstrap → mount every active app            (concurrently,
                                                             sequential per app)

Reroutes triggered while one is in flight wait for it to finish.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from parcelspine.core.errors import ValidationError, format_error_message
from parcelspine.core.logging import get_logger
from parcelspine.lifecycle.escalation import handle_error
from parcelspine.lifecycle.status import Status, UnitKind
from parcelspine.lifecycle.transitions import bootstrap_unit, load_unit, mount_unit, unmount_unit
from parcelspine.lifecycle.units import CustomProps, Unit

if TYPE_CHECKING:
    from parcelspine.orchestration.runtime import LifecycleRuntime

logger = get_logger(__name__)

ActivityCheck = Callable[[Unit, Any], bool]


def create_application(
    name: str,
    definition: Any,
    *,
    custom_props: CustomProps = None,
    timeouts: Mapping[str, Any] | None = None,
) -> Unit:
    """Build an application unit in ``NOT_LOADED``.

    Args:
        name: Unique application name
        definition: A definition, or a callable returning an awaitable one
        custom_props: Mapping, or ``(name, location) -> mapping``
        timeouts: Per-phase overrides of the runtime's default budgets
    """
    if not isinstance(name, str) or not name:
        raise ValidationError(
            format_error_message(20, f"Application name must be a non-empty string, got {name!r}", name),
            code=20,
        )
    if definition is None:
        raise ValidationError(
            format_error_message(21, f"Application '{name}' needs a definition or definition loader", name),
            code=21,
        )
    if custom_props is not None and not (isinstance(custom_props, Mapping) or callable(custom_props)):
        raise ValidationError(
            format_error_message(
                22, f"Application '{name}' custom props must be a mapping or a callable", name
            ),
            code=22,
        )
    return Unit(
        kind=UnitKind.APPLICATION,
        name=name,
        definition=definition,
        custom_props=custom_props,
        timeout_overrides=timeouts,
    )


@dataclass
class RerouteResult:
    """Outcome of one reroute, by application name."""

    unmounted: list[str] = field(default_factory=list)
    mounted: list[str] = field(default_factory=list)
    broken: list[str] = field(default_factory=list)


def _check_activity(runtime: LifecycleRuntime, app: Unit, is_active: ActivityCheck) -> bool:
    try:
        return bool(is_active(app, runtime.location))
    except Exception as err:
        logger.error("activity_check_failed", app=app.name, error=str(err))
        handle_error(runtime.error_handlers, err, app, app.status)
        return False


async def _activate(runtime: LifecycleRuntime, app: Unit) -> Unit:
    await load_unit(runtime, app)
    await bootstrap_unit(runtime, app)
    await mount_unit(runtime, app)
    return app


async def reroute(
    runtime: LifecycleRuntime,
    apps: Iterable[Unit],
    is_active: ActivityCheck,
    location: Any = None,
) -> RerouteResult:
    """Unmount inactive applications, then mount the active ones.

    Args:
        runtime: The lifecycle runtime
        apps: Every application the embedder knows about
        is_active: ``(app, location) -> bool``
        location: New location; ``None`` keeps ``runtime.location``
    """
    apps = list(apps)
    for app in apps:
        if app.kind is not UnitKind.APPLICATION:
            raise ValidationError(
                format_error_message(23, f"reroute only drives applications, got {app.kind.value} '{app.name}'", app.name),
                code=23,
            )

    async with runtime.reroute_lock:
        if location is not None:
            runtime.location = location

        active = {id(app) for app in apps if _check_activity(runtime, app, is_active)}
        to_unmount = [app for app in apps if app.status is Status.MOUNTED and id(app) not in active]
        to_activate = [app for app in apps if id(app) in active and not app.status.is_broken]

        logger.info(
            "reroute_started",
            location=str(runtime.location),
            unmounting=[app.name for app in to_unmount],
            activating=[app.name for app in to_activate],
        )

        await asyncio.gather(*(unmount_unit(runtime, app) for app in to_unmount))
        await asyncio.gather(*(_activate(runtime, app) for app in to_activate))

        result = RerouteResult(
            unmounted=[app.name for app in to_unmount if app.status is Status.NOT_MOUNTED],
            mounted=[app.name for app in to_activate if app.status is Status.MOUNTED],
            broken=[app.name for app in to_unmount + to_activate if app.status.is_broken],
        )
        logger.info("reroute_finished", mounted=result.mounted, unmounted=result.unmounted, broken=result.broken)
        return result


__all__ = ["ActivityCheck", "RerouteResult", "create_application", "reroute"]
