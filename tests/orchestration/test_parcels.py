"""
Tests for parcels and their handles.

Tests cover:
- mount_parcel() argument validation (raised synchronously)
- Two-phase construction: registration happens before the definition loads
- The load → bootstrap → mount chain and the phase promises
- Imperative unmount / mount / update through the handle
- Failure reporting through the handle (hard-fail, no handlers involved)
"""

import asyncio
from types import SimpleNamespace

import pytest

from parcelspine.core.errors import InvalidStatusError, LifecycleError, ValidationError
from parcelspine.lifecycle.status import Status
from parcelspine.orchestration import ANCHOR_PROP, ParcelHandle


# =============================================================================
# Validation
# =============================================================================


class TestMountParcelValidation:
    """Argument errors are raised before anything is created."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("config", [None, "", "nav", 0, {}])
    async def test_requires_definition(self, runtime, anchor_props, config):
        with pytest.raises(ValidationError) as exc_info:
            runtime.mount_root_parcel(config, anchor_props)
        assert exc_info.value.code == 2
        assert runtime.root_parcels == {}

    @pytest.mark.asyncio
    async def test_name_must_be_string(self, runtime, make_definition, anchor_props):
        with pytest.raises(ValidationError) as exc_info:
            runtime.mount_root_parcel(make_definition(name=5), anchor_props)
        assert exc_info.value.code == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("custom_props", [None, ["anchor"], "anchor"])
    async def test_custom_props_must_be_mapping(self, runtime, make_definition, custom_props):
        with pytest.raises(ValidationError) as exc_info:
            runtime.mount_root_parcel(make_definition(), custom_props)
        assert exc_info.value.code == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("custom_props", [{}, {"anchor": None}, {"anchor": ""}])
    async def test_anchor_required(self, runtime, make_definition, custom_props):
        with pytest.raises(ValidationError) as exc_info:
            runtime.mount_root_parcel(make_definition("widget"), custom_props)
        assert exc_info.value.code == 5
        assert "widget" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_loader_must_return_awaitable(self, runtime, make_definition, anchor_props):
        with pytest.raises(LifecycleError) as exc_info:
            runtime.mount_root_parcel(lambda: make_definition(), anchor_props)
        assert exc_info.value.code == 7
        assert runtime.root_parcels == {}

    def test_requires_running_loop(self, runtime, make_definition, anchor_props):
        with pytest.raises(RuntimeError):
            runtime.mount_root_parcel(make_definition(), anchor_props)

    def test_anchor_prop_name(self):
        assert ANCHOR_PROP == "anchor"


# =============================================================================
# Mount chain
# =============================================================================


class TestParcelMountChain:
    """Tests for the automatic load → bootstrap → mount chain."""

    @pytest.mark.asyncio
    async def test_mounts_definition_object(self, runtime, make_definition, anchor_props):
        calls = []
        handle = runtime.mount_root_parcel(make_definition("widget", calls=calls), anchor_props)
        assert isinstance(handle, ParcelHandle)

        assert await handle.load_promise is None
        assert await handle.bootstrap_promise is None
        assert await handle.mount_promise is None

        assert handle.get_status() is Status.MOUNTED
        assert handle.name == "widget"
        assert calls == [("widget", "bootstrap"), ("widget", "mount")]

    @pytest.mark.asyncio
    async def test_mounts_attribute_definition(self, runtime, anchor_props):
        async def noop(props):
            return None

        definition = SimpleNamespace(name="widget", mount=noop, unmount=noop)
        handle = runtime.mount_root_parcel(definition, anchor_props)
        await handle.mount_promise
        assert handle.get_status() is Status.MOUNTED

    @pytest.mark.asyncio
    async def test_registered_before_definition_loads(self, runtime, make_definition, anchor_props):
        release = asyncio.Event()

        async def loader():
            await release.wait()
            return make_definition("late")

        handle = runtime.mount_root_parcel(loader, anchor_props)
        assert handle.id in runtime.root_parcels
        assert handle.get_status() is Status.LOADING_DEFINITION
        assert handle.name == f"parcel-{handle.id}"

        release.set()
        await handle.mount_promise
        assert handle.name == "late"
        assert handle.get_status() is Status.MOUNTED

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, runtime, make_definition, anchor_props):
        handles = [runtime.mount_root_parcel(make_definition(), anchor_props) for _ in range(3)]
        await asyncio.gather(*(h.mount_promise for h in handles))
        assert len({h.id for h in handles}) == 3
        assert set(runtime.root_parcels) == {h.id for h in handles}

    @pytest.mark.asyncio
    async def test_props_reach_lifecycles(self, runtime, make_definition):
        seen = {}

        async def mount(props):
            seen.update(props)

        handle = runtime.mount_root_parcel(make_definition("widget", mount=mount), {"anchor": "#a", "user": 7})
        await handle.mount_promise
        assert seen["anchor"] == "#a"
        assert seen["user"] == 7
        assert seen["name"] == "widget"
        assert callable(seen["unmount_self"])

    @pytest.mark.asyncio
    async def test_load_failure_rejects_every_phase(self, runtime, collected_errors, anchor_props):
        async def loader():
            raise ConnectionError("cdn down")

        handle = runtime.mount_root_parcel(loader, anchor_props)
        for promise in (handle.load_promise, handle.bootstrap_promise, handle.mount_promise):
            with pytest.raises(ConnectionError, match="died in status LOADING_DEFINITION: cdn down"):
                await promise
        assert handle.get_status() is Status.LOAD_ERROR
        assert collected_errors == []

    @pytest.mark.asyncio
    async def test_invalid_definition_is_load_error(self, runtime, anchor_props):
        async def loader():
            return {"mount": "nope"}

        handle = runtime.mount_root_parcel(loader, anchor_props)
        with pytest.raises(LifecycleError) as exc_info:
            await handle.load_promise
        assert exc_info.value.code == 10
        assert handle.get_status() is Status.LOAD_ERROR

    @pytest.mark.asyncio
    async def test_mount_failure_rejects_mount_promise(self, runtime, collected_errors, make_definition, anchor_props):
        handle = runtime.mount_root_parcel(make_definition("widget", fail_on=("mount",)), anchor_props)
        await handle.bootstrap_promise
        with pytest.raises(RuntimeError, match="parcel 'widget' died in status MOUNTING: mount exploded"):
            await handle.mount_promise
        assert handle.get_status() is Status.SKIP_BECAUSE_BROKEN
        assert collected_errors == []


# =============================================================================
# Handle operations
# =============================================================================


class TestParcelHandle:
    """Tests for imperative unmount / mount / update."""

    @pytest.mark.asyncio
    async def test_unmount(self, runtime, make_definition, anchor_props):
        calls = []
        handle = runtime.mount_root_parcel(make_definition("widget", calls=calls), anchor_props)
        await handle.mount_promise

        await handle.unmount()

        assert handle.get_status() is Status.NOT_MOUNTED
        assert handle.id not in runtime.root_parcels
        assert await handle.unmount_promise is None
        assert calls[-1] == ("widget", "unmount")
        with pytest.raises(ValidationError) as exc_info:
            runtime.get_parcel(handle.id)
        assert exc_info.value.code == 45

    @pytest.mark.asyncio
    async def test_unmount_waits_for_mount(self, runtime, make_definition, anchor_props):
        calls = []
        release = asyncio.Event()

        async def mount(props):
            await release.wait()
            calls.append(("widget", "mount"))

        handle = runtime.mount_root_parcel(make_definition("widget", calls=calls, mount=mount), anchor_props)
        unmounting = asyncio.ensure_future(handle.unmount())
        await asyncio.sleep(0.01)
        assert not unmounting.done()

        release.set()
        await unmounting
        assert [phase for _, phase in calls] == ["bootstrap", "mount", "unmount"]
        assert handle.get_status() is Status.NOT_MOUNTED

    @pytest.mark.asyncio
    async def test_unmount_self_from_props(self, runtime, make_definition, anchor_props):
        captured = {}

        async def mount(props):
            captured.update(props)

        handle = runtime.mount_root_parcel(make_definition("widget", mount=mount), anchor_props)
        await handle.mount_promise

        await captured["unmount_self"]()
        assert handle.get_status() is Status.NOT_MOUNTED
        await handle.unmount_promise

    @pytest.mark.asyncio
    async def test_unmount_failure(self, runtime, make_definition, anchor_props):
        handle = runtime.mount_root_parcel(make_definition("widget", fail_on=("unmount",)), anchor_props)
        await handle.mount_promise

        with pytest.raises(RuntimeError, match="died in status UNMOUNTING"):
            await handle.unmount()
        with pytest.raises(RuntimeError):
            await handle.unmount_promise
        assert handle.get_status() is Status.SKIP_BECAUSE_BROKEN
        assert handle.id in runtime.root_parcels

    @pytest.mark.asyncio
    async def test_remount_after_unmount(self, runtime, make_definition, anchor_props):
        calls = []
        handle = runtime.mount_root_parcel(make_definition("widget", calls=calls), anchor_props)
        await handle.mount_promise
        await handle.unmount()

        await handle.mount()

        assert handle.get_status() is Status.MOUNTED
        assert handle.id in runtime.root_parcels
        assert runtime.get_parcel(handle.id).unit.name == "widget"
        assert [phase for _, phase in calls] == ["bootstrap", "mount", "unmount", "mount"]

    @pytest.mark.asyncio
    async def test_mount_requires_not_mounted(self, runtime, make_definition, anchor_props):
        handle = runtime.mount_root_parcel(make_definition("widget"), anchor_props)
        await handle.mount_promise
        with pytest.raises(InvalidStatusError) as exc_info:
            await handle.mount()
        assert exc_info.value.code == 13
        assert exc_info.value.status == "MOUNTED"

    @pytest.mark.asyncio
    async def test_update(self, runtime, make_definition, anchor_props):
        seen = []

        async def update(props):
            seen.append(props["theme"])

        handle = runtime.mount_root_parcel(make_definition("widget", update=update), anchor_props)
        await handle.mount_promise
        await handle.update({"anchor": "#slot", "theme": "dark"})
        assert seen == ["dark"]
        assert handle.get_status() is Status.MOUNTED

    @pytest.mark.asyncio
    async def test_update_failure_raises(self, runtime, make_definition, anchor_props):
        handle = runtime.mount_root_parcel(
            make_definition("widget", with_update=True, fail_on=("update",)), anchor_props
        )
        await handle.mount_promise
        with pytest.raises(RuntimeError, match="died in status UPDATING"):
            await handle.update({"anchor": "#slot"})
        assert handle.get_status() is Status.SKIP_BECAUSE_BROKEN

    @pytest.mark.asyncio
    async def test_repr(self, runtime, make_definition, anchor_props):
        handle = runtime.mount_root_parcel(make_definition("widget"), anchor_props)
        await handle.mount_promise
        assert repr(handle) == f"ParcelHandle(id={handle.id}, name='widget', status=MOUNTED)"


class TestNestedParcels:
    """Parcels mounted by other units join their owner's children."""

    @pytest.mark.asyncio
    async def test_parcel_owned_by_parcel(self, runtime, make_definition, anchor_props):
        inner_handles = []

        async def mount(props):
            inner_handles.append(props["mount_parcel"](make_definition("inner"), {"anchor": "#inner"}))

        outer = runtime.mount_root_parcel(make_definition("outer", mount=mount), anchor_props)
        await outer.mount_promise
        inner = inner_handles[0]
        await inner.mount_promise

        outer_unit = runtime.get_parcel(outer.id).unit
        assert set(outer_unit.children) == {inner.id}
        assert inner.id not in runtime.root_parcels
        assert runtime.get_parcel(inner.id).unit.parent_name == "outer"

        await outer.unmount()
        assert inner.get_status() is Status.NOT_MOUNTED
        assert outer_unit.children == {}
