"""Timeout enforcement for lifecycle calls.

Every lifecycle call a transition driver makes goes through
:func:`reasonable_time`, which races the call against a repeating
watchdog and a hard deadline.

Manifesto:
    Slow units are common and usually harmless; dead units are rare.
    The guard therefore warns loudly but, by default, keeps waiting:
    - **Watchdog:** a ``lifecycle_slow`` warning every ``warning_millis``
    - **Deadline:** at ``millis`` either fail with :class:`LifecycleTimeout`
      (``die_on_timeout=True``) or log ``lifecycle_timeout_exceeded`` and
      keep waiting for the real result
    - **No cancellation:** the lifecycle call itself always runs to
      completion; the guard only decides how long the caller waits

Architecture:
    ::

        reasonable_time(runtime, unit, "mount")
          │
          ├── work = ensure_future(unit.lifecycles.mount(props))
          │         └─ done → settle(result)        (first settle wins)
          │
          ├── call_later(warning)  → _tick(1) → warn → _tick(2) → ...
          │                          (stops before crossing the deadline)
          │
          └── call_later(millis)   → _deadline()
                                     ├─ die_on_timeout → settle(LifecycleTimeout)
                                     └─ else           → log error, keep waiting

Examples:
    >>> defaults = TimeoutDefaults()
    >>> defaults.set_mount_max_time(5000, die_on_timeout=True, warning_millis=500)
    >>> defaults.get("mount")
    TimeoutConfig(millis=5000, die_on_timeout=True, warning_millis=500)

Tags:
    timeout, deadline, watchdog, lifecycle, parcelspine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from parcelspine.core.errors import ConfigError, LifecycleTimeout, format_error_message
from parcelspine.core.logging import get_logger
from parcelspine.core.settings import ParcelSpineSettings
from parcelspine.lifecycle.units import PHASES, build_props

if TYPE_CHECKING:
    from parcelspine.lifecycle.units import Unit
    from parcelspine.orchestration.runtime import LifecycleRuntime

logger = get_logger(__name__)

DEFAULT_WARNING_MILLIS = 1000

# Message code for each phase's max-time setter
_SETTER_CODES = {"bootstrap": 16, "mount": 17, "unmount": 18, "update": 19}


def _is_positive_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


@dataclass(frozen=True)
class TimeoutConfig:
    """Time budget for one lifecycle phase.

    Attributes:
        millis: Hard deadline in milliseconds
        die_on_timeout: Fail the phase at the deadline instead of waiting it out
        warning_millis: Interval between slow-lifecycle warnings
    """

    millis: float
    die_on_timeout: bool = False
    warning_millis: float = DEFAULT_WARNING_MILLIS

    def __post_init__(self) -> None:
        if not _is_positive_number(self.millis):
            raise ConfigError(
                format_error_message(41, f"Timeout millis must be a positive number, got {self.millis!r}", self.millis),
                key="millis",
                value=self.millis,
                code=41,
            )
        if not _is_positive_number(self.warning_millis):
            raise ConfigError(
                format_error_message(
                    42, f"Timeout warning_millis must be a positive number, got {self.warning_millis!r}",
                    self.warning_millis,
                ),
                key="warning_millis",
                value=self.warning_millis,
                code=42,
            )
        if not isinstance(self.die_on_timeout, bool):
            raise ConfigError(
                format_error_message(43, f"die_on_timeout must be a bool, got {self.die_on_timeout!r}"),
                key="die_on_timeout",
                value=self.die_on_timeout,
                code=43,
            )

    def merged(self, overrides: Mapping[str, Any] | TimeoutConfig | None) -> TimeoutConfig:
        """Return a copy with the fields present in ``overrides`` replaced."""
        if overrides is None:
            return self
        if isinstance(overrides, TimeoutConfig):
            return overrides
        if not isinstance(overrides, Mapping):
            raise ConfigError(
                format_error_message(44, f"Timeout override must be a mapping, got {type(overrides).__name__}"),
                value=overrides,
                code=44,
            )
        unknown = set(overrides) - {"millis", "die_on_timeout", "warning_millis"}
        if unknown:
            raise ConfigError(
                format_error_message(44, f"Unknown timeout fields: {sorted(unknown)}"),
                value=overrides,
                code=44,
            )
        return TimeoutConfig(
            millis=overrides.get("millis", self.millis),
            die_on_timeout=overrides.get("die_on_timeout", self.die_on_timeout),
            warning_millis=overrides.get("warning_millis", self.warning_millis),
        )


class TimeoutDefaults:
    """Process-wide default time budgets, one per lifecycle phase.

    Owned by a :class:`~parcelspine.orchestration.runtime.LifecycleRuntime`
    and seeded from settings. Units copy the defaults when their
    definition resolves, so changing a default affects only units created
    afterwards.
    """

    def __init__(self, settings: ParcelSpineSettings | None = None):
        settings = settings or ParcelSpineSettings()
        base = {
            "bootstrap": settings.bootstrap_timeout_millis,
            "mount": settings.mount_timeout_millis,
            "unmount": settings.unmount_timeout_millis,
            "update": settings.update_timeout_millis,
        }
        self._configs: dict[str, TimeoutConfig] = {
            phase: TimeoutConfig(
                millis=millis,
                die_on_timeout=settings.die_on_timeout,
                warning_millis=settings.warning_millis,
            )
            for phase, millis in base.items()
        }

    def get(self, phase: str) -> TimeoutConfig:
        return self._configs[phase]

    def as_dict(self) -> dict[str, TimeoutConfig]:
        return dict(self._configs)

    def set_max_time(
        self,
        phase: str,
        millis: float,
        die_on_timeout: bool = False,
        warning_millis: float | None = None,
    ) -> None:
        """Replace the default budget for ``phase``.

        Raises:
            ConfigError: If ``millis`` is not a positive number, or
                ``warning_millis`` is given and not a positive number
        """
        if phase not in _SETTER_CODES:
            raise ConfigError(f"Unknown lifecycle phase {phase!r}", key="phase", value=phase)
        code = _SETTER_CODES[phase]
        if not _is_positive_number(millis):
            raise ConfigError(
                format_error_message(
                    code, f"{phase} max time must be a positive number of milliseconds"
                ),
                key=f"{phase}.millis",
                value=millis,
                code=code,
            )
        self._configs[phase] = TimeoutConfig(
            millis=millis,
            die_on_timeout=die_on_timeout,
            warning_millis=DEFAULT_WARNING_MILLIS if warning_millis is None else warning_millis,
        )
        logger.debug("timeout_default_changed", phase=phase, config=self._configs[phase])

    def set_bootstrap_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.set_max_time("bootstrap", millis, die_on_timeout, warning_millis)

    def set_mount_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.set_max_time("mount", millis, die_on_timeout, warning_millis)

    def set_unmount_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.set_max_time("unmount", millis, die_on_timeout, warning_millis)

    def set_update_max_time(self, millis: float, die_on_timeout: bool = False, warning_millis: float | None = None) -> None:
        self.set_max_time("update", millis, die_on_timeout, warning_millis)


def ensure_valid_timeouts(
    defaults: TimeoutDefaults,
    overrides: Mapping[str, Any] | None = None,
) -> dict[str, TimeoutConfig]:
    """Merge per-unit overrides over the process-wide defaults.

    Args:
        defaults: Process-wide defaults
        overrides: Mapping of phase → partial config (``millis``,
            ``die_on_timeout``, ``warning_millis``) or ``TimeoutConfig``

    Raises:
        ConfigError: On unknown phases or invalid values
    """
    overrides = overrides or {}
    if not isinstance(overrides, Mapping):
        raise ConfigError(
            format_error_message(44, f"Unit timeouts must be a mapping, got {type(overrides).__name__}"),
            value=overrides,
            code=44,
        )
    unknown = set(overrides) - set(PHASES)
    if unknown:
        raise ConfigError(
            format_error_message(44, f"Unknown lifecycle phases in timeouts: {sorted(unknown)}"),
            value=overrides,
            code=44,
        )
    return {phase: defaults.get(phase).merged(overrides.get(phase)) for phase in PHASES}


class _Watchdog:
    """Warning ticks and the hard deadline for one outstanding lifecycle call."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        settled: asyncio.Future,
        unit: Unit,
        phase: str,
        config: TimeoutConfig,
    ):
        self._loop = loop
        self._settled = settled
        self._unit = unit
        self._phase = phase
        self._config = config
        self._handles: list[asyncio.TimerHandle] = []
        self._deadline_passed = False
        self.warnings = 0
        self.message = format_error_message(
            31,
            f"Lifecycle function {phase} for {unit.kind} {unit.name} did not resolve or reject "
            f"for {config.millis} ms.",
            phase,
            unit.kind,
            unit.name,
            config.millis,
        )

    def arm(self) -> None:
        self._schedule(self._config.warning_millis, self._tick, 1)
        self._schedule(self._config.millis, self._deadline)

    def disarm(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    def _schedule(self, millis: float, callback: Any, *args: Any) -> None:
        self._handles.append(self._loop.call_later(millis / 1000, callback, *args))

    def _tick(self, count: int) -> None:
        if self._settled.done() or self._deadline_passed:
            return
        self.warnings += 1
        logger.warning(
            "lifecycle_slow",
            unit=self._unit.name,
            kind=self._unit.kind.value,
            phase=self._phase,
            waited_millis=count * self._config.warning_millis,
            message=self.message,
        )
        if (count + 1) * self._config.warning_millis < self._config.millis:
            self._schedule(self._config.warning_millis, self._tick, count + 1)

    def _deadline(self) -> None:
        if self._settled.done():
            return
        self._deadline_passed = True
        if self._config.die_on_timeout:
            self._settled.set_exception(
                LifecycleTimeout(self.message, phase=self._phase, millis=self._config.millis, code=31)
            )
        else:
            # Keep waiting: the real result still settles the guard later.
            logger.error(
                "lifecycle_timeout_exceeded",
                unit=self._unit.name,
                kind=self._unit.kind.value,
                phase=self._phase,
                millis=self._config.millis,
                message=self.message,
            )


async def reasonable_time(runtime: LifecycleRuntime, unit: Unit, phase: str) -> Any:
    """Run one lifecycle phase of ``unit`` under its time budget.

    Resolves or raises exactly like the lifecycle call, unless the phase is
    configured with ``die_on_timeout`` and the deadline passes first, in
    which case :class:`LifecycleTimeout` is raised. Whatever settles first
    wins; later ticks and results are ignored.
    """
    config = unit.timeouts[phase]
    fn = unit.lifecycles.for_phase(phase)
    loop = asyncio.get_running_loop()
    settled: asyncio.Future = loop.create_future()

    def _relay(work: asyncio.Future) -> None:
        if settled.done():
            if not work.cancelled() and work.exception() is not None:
                logger.debug("late_lifecycle_failure_ignored", unit=unit.name, phase=phase)
            return
        if work.cancelled():
            settled.cancel()
        elif work.exception() is not None:
            settled.set_exception(work.exception())
        else:
            settled.set_result(work.result())

    work = asyncio.ensure_future(fn(build_props(runtime, unit)))
    work.add_done_callback(_relay)

    watchdog = _Watchdog(loop, settled, unit, phase, config)
    watchdog.arm()
    try:
        return await settled
    finally:
        watchdog.disarm()


__all__ = [
    "DEFAULT_WARNING_MILLIS",
    "TimeoutConfig",
    "TimeoutDefaults",
    "ensure_valid_timeouts",
    "reasonable_time",
]
