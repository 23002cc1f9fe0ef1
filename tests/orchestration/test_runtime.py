"""Tests for LifecycleRuntime wiring: settings, logging, handlers, setters and the parcel arena."""

import json
import logging

import pytest
import structlog

from parcelspine.core.errors import (
    DEFAULT_ERROR_DOCS_URL,
    ConfigError,
    ValidationError,
    set_error_docs_url,
)
from parcelspine.core.logging import get_logger
from parcelspine.core.settings import ParcelSpineSettings
from parcelspine.lifecycle.status import Status
from parcelspine.orchestration import LifecycleRuntime


@pytest.fixture
def restore_docs_url():
    yield
    set_error_docs_url(DEFAULT_ERROR_DOCS_URL)


class TestRuntimeSettings:
    """The runtime seeds its defaults from settings."""

    def test_defaults_from_environment(self, monkeypatch):
        monkeypatch.setenv("PARCELSPINE_MOUNT_TIMEOUT_MILLIS", "1234")
        monkeypatch.setenv("PARCELSPINE_DIE_ON_TIMEOUT", "true")
        runtime = LifecycleRuntime()
        assert runtime.timeouts.get("mount").millis == 1234
        assert runtime.timeouts.get("mount").die_on_timeout is True
        assert runtime.location is None

    def test_explicit_settings(self, settings):
        runtime = LifecycleRuntime(settings, location="/start")
        assert runtime.settings is settings
        assert runtime.location == "/start"
        assert runtime.timeouts.get("unmount").warning_millis == 500

    def test_error_docs_url(self, restore_docs_url):
        runtime = LifecycleRuntime(
            ParcelSpineSettings(_env_file=None, error_docs_url="https://docs.example.test/errors")
        )
        with pytest.raises(ValidationError) as exc_info:
            runtime.add_error_handler(42)
        assert "See https://docs.example.test/errors?code=28" in str(exc_info.value)


@pytest.fixture
def restore_logging():
    """configure_logging() is process-wide; put structlog and root handlers back afterwards."""
    root_handlers = logging.root.handlers[:]
    yield
    structlog.reset_defaults()
    logging.root.handlers[:] = root_handlers


class TestRuntimeLogging:
    """configure_logging() applies the logging settings."""

    def test_json_with_service_name(self, capsys, restore_logging):
        runtime = LifecycleRuntime(
            ParcelSpineSettings(_env_file=None, log_format="json", service_name="shell")
        )
        runtime.configure_logging()
        get_logger("tests.runtime.json").info("shell_started", location="/home")

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["event"] == "shell_started"
        assert record["service.name"] == "shell"

    def test_level_from_settings(self, capsys, restore_logging):
        runtime = LifecycleRuntime(
            ParcelSpineSettings(_env_file=None, log_level="WARNING", log_format="json")
        )
        runtime.configure_logging()
        logger = get_logger("tests.runtime.level")
        logger.info("hidden")
        logger.warning("shown")

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "shown" in out

    def test_console_format(self, capsys, restore_logging):
        runtime = LifecycleRuntime(ParcelSpineSettings(_env_file=None, log_format="console"))
        runtime.configure_logging()
        get_logger("tests.runtime.console").info("console_line")

        out = capsys.readouterr().out
        assert "console_line" in out
        with pytest.raises(json.JSONDecodeError):
            json.loads(out.strip().splitlines()[-1])


class TestRuntimeSetters:
    """Max-time setters and handler registration delegate to the runtime's registries."""

    def test_set_max_times(self, runtime):
        runtime.set_bootstrap_max_time(10)
        runtime.set_mount_max_time(20, die_on_timeout=True)
        runtime.set_unmount_max_time(30, warning_millis=5)
        runtime.set_update_max_time(40)
        assert runtime.timeouts.get("bootstrap").millis == 10
        assert runtime.timeouts.get("mount").die_on_timeout is True
        assert runtime.timeouts.get("unmount").warning_millis == 5
        assert runtime.timeouts.get("update").millis == 40

    def test_invalid_max_time(self, runtime):
        with pytest.raises(ConfigError) as exc_info:
            runtime.set_mount_max_time("soon")
        assert exc_info.value.code == 17

    def test_error_handlers(self, runtime):
        seen = []
        runtime.add_error_handler(seen.append)
        assert len(runtime.error_handlers) == 1
        assert runtime.remove_error_handler(seen.append) is True
        assert len(runtime.error_handlers) == 0


class TestParcelArena:
    """Tests for parcel lookup and root parcels."""

    def test_unknown_parcel(self, runtime):
        with pytest.raises(ValidationError) as exc_info:
            runtime.get_parcel(99)
        assert exc_info.value.code == 45

    def test_children_of_root(self, runtime):
        assert runtime.children_of(None) is runtime.root_parcels

    def test_parcel_ids_increase(self, runtime):
        assert [runtime.next_parcel_id() for _ in range(3)] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_unmount_parcel_by_id(self, runtime, make_definition, anchor_props):
        handle = runtime.mount_root_parcel(make_definition("widget"), anchor_props)
        await handle.mount_promise
        assert runtime.get_parcel(handle.id).unit.status is Status.MOUNTED

        await runtime.unmount_parcel(handle.id)
        assert runtime.root_parcels == {}

    @pytest.mark.asyncio
    async def test_unmount_unknown_parcel(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.unmount_parcel(7)

    @pytest.mark.asyncio
    async def test_reroute_lock_is_shared(self, runtime):
        assert runtime.reroute_lock is runtime.reroute_lock
