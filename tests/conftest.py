"""
Shared pytest fixtures and configuration for parcelspine tests.

This module provides:
- A fresh LifecycleRuntime per test with short, deterministic time budgets
- A definition factory whose lifecycles record every call
- An error collector registered as the runtime's only error handler

Usage:
    Fixtures are auto-discovered by pytest:

    @pytest.mark.asyncio
    async def test_something(runtime, make_definition, collected_errors):
        ...
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# Ensure parcelspine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from parcelspine.core.settings import ParcelSpineSettings, clear_settings_cache
from parcelspine.orchestration import LifecycleRuntime


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark all tests without explicit markers as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Runtime Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clean_settings_cache():
    """Settings are cached process-wide; never leak them between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> ParcelSpineSettings:
    """Settings with budgets short enough to exercise real timers quickly."""
    return ParcelSpineSettings(
        _env_file=None,
        bootstrap_timeout_millis=1000,
        mount_timeout_millis=1000,
        unmount_timeout_millis=1000,
        update_timeout_millis=1000,
        warning_millis=500,
    )


@pytest.fixture
def runtime(settings: ParcelSpineSettings) -> LifecycleRuntime:
    return LifecycleRuntime(settings, location="/home")


@pytest.fixture
def collected_errors(runtime: LifecycleRuntime) -> list[BaseException]:
    """Register a handler that records every escalated failure."""
    errors: list[BaseException] = []
    runtime.add_error_handler(errors.append)
    return errors


@pytest.fixture
def loop_errors() -> list[BaseException]:
    """Exceptions that reached the running loop's exception handler.

    Populated once ``capture_loop_errors()`` has been called inside an async test.
    """
    return []


@pytest.fixture
def capture_loop_errors(loop_errors: list[BaseException]) -> Callable[[], None]:
    """Install a loop exception handler that appends to ``loop_errors``."""

    def install() -> None:
        asyncio.get_running_loop().set_exception_handler(
            lambda loop, context: loop_errors.append(context.get("exception"))
        )

    return install


# =============================================================================
# Definition Fixtures
# =============================================================================


def _make_definition(
    name: str | None = None,
    *,
    calls: list[tuple[str, str]] | None = None,
    fail_on: tuple[str, ...] = (),
    with_update: bool = False,
    **overrides: Any,
) -> dict[str, Any]:
    """Build a definition whose lifecycles append ``(unit_name, phase)`` to ``calls``."""
    calls = calls if calls is not None else []

    def lifecycle(phase: str):
        async def fn(props: dict[str, Any]) -> None:
            calls.append((props["name"], phase))
            if phase in fail_on:
                raise RuntimeError(f"{phase} exploded")

        return fn

    definition: dict[str, Any] = {
        "bootstrap": lifecycle("bootstrap"),
        "mount": lifecycle("mount"),
        "unmount": lifecycle("unmount"),
    }
    if name is not None:
        definition["name"] = name
    if with_update:
        definition["update"] = lifecycle("update")
    definition.update(overrides)
    return definition


@pytest.fixture
def make_definition() -> Callable[..., dict[str, Any]]:
    """Factory for recording definitions.

    Example:
        calls = []
        definition = make_definition("nav", calls=calls, fail_on=("mount",))
    """
    return _make_definition


@pytest.fixture
def anchor_props() -> dict[str, Any]:
    return {"anchor": "#slot"}
