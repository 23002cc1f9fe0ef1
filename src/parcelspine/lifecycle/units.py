"""Units: the records the lifecycle engine drives.

A :class:`Unit` is either a top-level application or a nested parcel,
distinguished by its :class:`~parcelspine.lifecycle.status.UnitKind` tag.
Units own their child parcels through ``children`` (child id → Unit) and
carry the composed lifecycle callables resolved from their definition.

Definitions are supplied by the embedder as a mapping or any object with
attributes::

    definition = {
        "name": "nav",
        "bootstrap": load_assets,            # optional
        "mount": [render_shell, render_nav], # callable or sequence
        "unmount": teardown,
        "update": rerender,                  # optional
        "timeouts": {"mount": {"millis": 5000}},
    }
"""

from __future__ import annotations

import functools
import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from parcelspine.core.errors import LifecycleError, format_error_message
from parcelspine.core.logging import get_logger
from parcelspine.lifecycle.status import Status, UnitKind, validate_transition

if TYPE_CHECKING:
    from parcelspine.lifecycle.timeouts import TimeoutConfig
    from parcelspine.orchestration.runtime import LifecycleRuntime

logger = get_logger(__name__)

Props = dict[str, Any]
LifecycleFn = Callable[[Props], Awaitable[Any]]
CustomProps = Mapping[str, Any] | Callable[[str, Any], Any] | None

PHASES = ("bootstrap", "mount", "unmount", "update")


@dataclass(frozen=True)
class LifecycleFns:
    """Composed lifecycle callables for one unit."""

    bootstrap: LifecycleFn
    mount: LifecycleFn
    unmount: LifecycleFn
    update: LifecycleFn | None = None

    def for_phase(self, phase: str) -> LifecycleFn:
        fn = getattr(self, phase)
        if fn is None:
            raise LifecycleError(f"No {phase} lifecycle defined")
        return fn


@dataclass(eq=False)
class Unit:
    """An application or parcel subject to the lifecycle state machine.

    ``status`` is read-only from the outside; transition drivers move it
    with :meth:`set_status`, which rejects any edge not in
    ``VALID_TRANSITIONS``.
    """

    kind: UnitKind
    name: str
    status_at_creation: Status = Status.NOT_LOADED
    id: int | None = None
    definition: Any = None
    custom_props: CustomProps = None
    parent_name: str | None = None
    timeout_overrides: Mapping[str, Any] | None = None
    lifecycles: LifecycleFns | None = None
    timeouts: dict[str, TimeoutConfig] = field(default_factory=dict)
    children: dict[int, Unit] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._status = self.status_at_creation

    @property
    def status(self) -> Status:
        return self._status

    def set_status(self, target: Status) -> None:
        validate_transition(self._status, target)
        self._status = target

    @property
    def is_parcel(self) -> bool:
        return self.kind is UnitKind.PARCEL

    def __repr__(self) -> str:
        return f"Unit(kind={self.kind.value}, name={self.name!r}, status={self._status.value})"


# =============================================================================
# Lifecycle composition
# =============================================================================


def is_valid_lifecycle_fn(fn: Any) -> bool:
    """A lifecycle is a callable or a sequence of callables."""
    if callable(fn):
        return True
    if isinstance(fn, (list, tuple)):
        return all(callable(item) for item in fn)
    return False


def compose_lifecycle(fns: LifecycleFn | Sequence[LifecycleFn], *, phase: str, unit_name: str) -> LifecycleFn:
    """Flatten one callable or an ordered sequence of them into one callable.

    Callables run in order with the same props; their results are ignored
    and the first failure short-circuits the remainder. Each callable must
    return an awaitable.
    """
    sequence = list(fns) if isinstance(fns, (list, tuple)) else [fns]

    async def composed(props: Props) -> None:
        for index, fn in enumerate(sequence):
            result = fn(props)
            if not inspect.isawaitable(result):
                raise LifecycleError(
                    format_error_message(
                        15,
                        f"Within unit {unit_name}, the lifecycle function {phase} at index "
                        f"{index} did not return an awaitable",
                        index,
                        unit_name,
                    ),
                    code=15,
                )
            await result

    composed.__name__ = f"{phase}_{unit_name}"
    return composed


def definition_get(definition: Any, key: str) -> Any:
    if isinstance(definition, Mapping):
        return definition.get(key)
    return getattr(definition, key, None)


def resolve_definition(definition: Any, *, kind: UnitKind, fallback_name: str) -> tuple[str, LifecycleFns, Any]:
    """Validate a loaded definition and compose its lifecycles.

    Returns:
        ``(name, lifecycles, timeout_overrides)``

    Raises:
        LifecycleError: If the definition is missing or a lifecycle is invalid
    """
    if not definition:
        raise LifecycleError(
            format_error_message(
                8,
                f"When mounting a {kind}, the definition loader did not resolve with a definition",
                kind,
            ),
            code=8,
        )

    name = definition_get(definition, "name") or fallback_name

    bootstrap = definition_get(definition, "bootstrap")
    if bootstrap is not None and not is_valid_lifecycle_fn(bootstrap):
        raise LifecycleError(
            format_error_message(9, f"{kind.value.title()} {name} provided an invalid bootstrap function", name),
            code=9,
        )

    mount = definition_get(definition, "mount")
    if not is_valid_lifecycle_fn(mount):
        raise LifecycleError(
            format_error_message(10, f"{kind.value.title()} {name} must have a valid mount function", name),
            code=10,
        )

    unmount = definition_get(definition, "unmount")
    if not is_valid_lifecycle_fn(unmount):
        raise LifecycleError(
            format_error_message(11, f"{kind.value.title()} {name} must have a valid unmount function", name),
            code=11,
        )

    update = definition_get(definition, "update")
    if update is not None and not is_valid_lifecycle_fn(update):
        raise LifecycleError(
            format_error_message(12, f"{kind.value.title()} {name} provided an invalid update function", name),
            code=12,
        )

    lifecycles = LifecycleFns(
        bootstrap=compose_lifecycle(bootstrap or [], phase="bootstrap", unit_name=name),
        mount=compose_lifecycle(mount, phase="mount", unit_name=name),
        unmount=compose_lifecycle(unmount, phase="unmount", unit_name=name),
        update=compose_lifecycle(update, phase="update", unit_name=name) if update is not None else None,
    )
    return name, lifecycles, definition_get(definition, "timeouts")


# =============================================================================
# Props
# =============================================================================


def build_props(runtime: LifecycleRuntime, unit: Unit) -> Props:
    """Compute the props passed to every lifecycle call of ``unit``."""
    custom = unit.custom_props
    if callable(custom):
        custom = custom(unit.name, runtime.location)
    if custom is None:
        custom = {}
    if not isinstance(custom, Mapping):
        logger.warning(
            "invalid_custom_props",
            unit=unit.name,
            received=repr(custom),
            message=format_error_message(
                40, f"{unit.name}'s custom props must resolve to a mapping", unit.name, type(custom).__name__
            ),
        )
        custom = {}

    props: Props = dict(custom)
    props["name"] = unit.name
    props["mount_parcel"] = functools.partial(runtime.mount_parcel, unit)
    props["runtime"] = runtime
    if unit.is_parcel:
        props["unmount_self"] = functools.partial(runtime.unmount_parcel, unit.id)
    return props


__all__ = [
    "PHASES",
    "LifecycleFn",
    "LifecycleFns",
    "Props",
    "Unit",
    "build_props",
    "compose_lifecycle",
    "definition_get",
    "is_valid_lifecycle_fn",
    "resolve_definition",
]
