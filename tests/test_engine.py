"""Unit tests for engine.py - validate, plan, apply, destroy and state commands."""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from config import Config
from document import parse_document
from engine import Engine, open_state_store
from errors import ConflictError, CycleError, ProviderError, StateLockedError, ValidationError
from executor import EntryStatus
from expressions import UNKNOWN
from state import LocalStateStore, MemoryStateStore


@pytest.fixture
def engine(store, registry, engine_config):
    return Engine(store, registry=registry, config=engine_config)


@pytest.fixture
def network(make_document):
    """net <- subnet <- vm, with outputs."""

    def _make(size=1, zone="z1"):
        return make_document(
            ("fake_thing", "net", {"zone": zone, "size": size}),
            ("fake_thing", "subnet", {"zone": "${fake_thing.net.zone}", "size": 2}),
            ("fake_cbd", "vm", {"zone": "${fake_thing.subnet.arn}"}),
            outputs={"vm_id": "${fake_cbd.vm.id}", "net_zone": "${fake_thing.net.zone}"},
        )

    return _make


class TestValidate:
    """Tests for Engine.validate."""

    def test_valid(self, engine, network):
        graph = engine.validate(network())
        assert len(graph) == 3

    def test_unknown_type_and_schema_errors(self, engine, make_document):
        document = make_document(
            ("fake_thing", "a", {"size": 0}),
            ("mystery_box", "b", {}),
        )

        with pytest.raises(ValidationError) as exc_info:
            engine.validate(document)

        assert exc_info.value.errors == [
            "fake_thing.a.size: 0 is less than the minimum of 1",
            "mystery_box.b: no provider handles resource type 'mystery_box'",
        ]

    def test_references_skip_schema_checks(self, engine, make_document):
        document = make_document(
            ("fake_thing", "a", {"size": 3}),
            ("fake_thing", "b", {"size": "${fake_thing.a.size}"}),
        )

        engine.validate(document)

    def test_unknown_provider_block(self, engine):
        document = parse_document({"providers": {"cloud": {}}, "resources": []})

        with pytest.raises(ValidationError) as exc_info:
            engine.validate(document)

        assert exc_info.value.errors == ["providers.cloud: unknown provider"]

    def test_cycle(self, engine, make_document):
        document = make_document(
            ("fake_thing", "a", {"zone": "${fake_thing.b.zone}"}),
            ("fake_thing", "b", {"zone": "${fake_thing.a.zone}"}),
        )

        with pytest.raises(CycleError):
            engine.validate(document)


class TestProviderConfigs:
    def test_document_overrides_environment(self, store, registry, engine_config):
        engine_config.providers.provider_configs = {"fake": {"region": "eu", "tier": "free"}}
        engine = Engine(store, registry=registry, config=engine_config)
        document = parse_document({"providers": {"fake": {"tier": "paid"}}})

        assert engine.provider_configs(document) == {"fake": {"region": "eu", "tier": "paid"}}
        assert engine.provider_configs() == {"fake": {"region": "eu", "tier": "free"}}


@pytest.mark.asyncio
class TestPlanAndApply:
    """Tests for the plan/apply cycle."""

    async def test_first_plan_creates_everything(self, engine, network):
        plan = await engine.plan(network())

        assert [e.key for e in plan.entries] == [
            "fake_thing.net:create",
            "fake_thing.subnet:create",
            "fake_cbd.vm:create",
        ]

    async def test_apply_then_plan_is_empty(self, engine, network, fake_provider):
        report = await engine.apply(network())

        assert report.success
        plan = await engine.plan(network())
        assert plan.is_empty
        assert [d.address for d in plan.diffs] == [
            "fake_cbd.vm",
            "fake_thing.net",
            "fake_thing.subnet",
        ]
        assert ("read", "fake_thing.net") in fake_provider.calls

    async def test_apply_twice_makes_no_provider_changes(self, engine, network, fake_provider):
        await engine.apply(network())
        fake_provider.calls.clear()

        report = await engine.apply(network())

        assert report.results == {}
        assert all(action == "read" for action, _ in fake_provider.calls)

    async def test_update_propagates(self, engine, network):
        await engine.apply(network())

        plan = await engine.plan(network(size=5))

        assert [e.key for e in plan.entries] == ["fake_thing.net:update"]

    async def test_output_of_updated_resource_converges(self, engine, make_document):
        def document(size):
            return make_document(
                ("fake_thing", "a", {"zone": "z1", "size": size}),
                ("fake_thing", "b", {"label": "${fake_thing.a.arn}"}),
            )

        await engine.apply(document(1))

        plan = await engine.plan(document(2))
        assert [e.key for e in plan.entries] == ["fake_thing.a:update", "fake_thing.b:update"]
        assert plan.get("fake_thing.b:update").wait_for == ("fake_thing.a:update",)

        report = await engine.apply(document(2))

        assert report.success
        a = await engine.show_state("fake_thing.a")
        b = await engine.show_state("fake_thing.b")
        assert b.attributes["label"] == a.outputs["arn"]
        assert (await engine.plan(document(2))).is_empty

    async def test_replacement_plan(self, engine, network):
        await engine.apply(network())

        plan = await engine.plan(network(zone="z2"))

        assert plan.summary() == {"create": 0, "update": 0, "replace": 3, "destroy": 0}
        keys = [e.key for e in plan.entries]
        assert keys.index("fake_cbd.vm:create") < keys.index("fake_thing.net:destroy")

    async def test_apply_replacement(self, engine, network, fake_provider):
        await engine.apply(network())

        report = await engine.apply(network(zone="z2"))

        assert report.success
        net = await engine.show_state("fake_thing.net")
        assert net.attributes["zone"] == "z2"
        assert len(fake_provider.objects) == 3

    async def test_orphans_destroyed(self, engine, network, make_document):
        await engine.apply(network())
        document = make_document(("fake_thing", "net", {"zone": "z1", "size": 1}))

        report = await engine.apply(document)

        assert report.success
        assert [r.address for r in await engine.list_state()] == ["fake_thing.net"]

    async def test_cycle_never_executes(self, engine, store, fake_provider, make_document):
        document = make_document(
            ("fake_thing", "a", {"zone": "${fake_thing.b.zone}"}),
            ("fake_thing", "b", {"zone": "${fake_thing.a.zone}"}),
            ("fake_thing", "c", {}),
        )

        with pytest.raises(CycleError):
            await engine.apply(document)

        assert fake_provider.calls == []
        assert await store.serial() == 0
        await store.lock("next-run")

    async def test_stale_saved_plan(self, engine, network, make_document):
        plan = await engine.plan(network())
        await engine.apply(make_document(("fake_thing", "other", {})))

        with pytest.raises(ConflictError, match="stale"):
            await engine.apply(network(), plan=plan)

    async def test_saved_plan_applied(self, engine, network):
        plan = await engine.plan(network())

        report = await engine.apply(network(), plan=plan)

        assert report.success
        assert len(report.results) == 3

    async def test_locked_state(self, engine, store, network):
        await store.lock("other-run")

        with pytest.raises(StateLockedError):
            await engine.apply(network())

    async def test_partial_failure_recorded(self, engine, network, fake_provider):
        fake_provider.fail("fake_thing.subnet", "create", ProviderError("denied", retryable=False))

        report = await engine.apply(network())

        assert report.status_of("fake_thing.net") == EntryStatus.APPLIED
        assert report.status_of("fake_thing.subnet") == EntryStatus.FAILED
        assert report.status_of("fake_cbd.vm") == EntryStatus.SKIPPED
        history = await engine.history()
        assert {(h["address"], h["status"]) for h in history} == {
            ("fake_thing.net", "Applied"),
            ("fake_thing.subnet", "Failed"),
            ("fake_cbd.vm", "Skipped"),
        }
        assert [h["status"] for h in await engine.history(address="fake_thing.subnet")] == [
            "Failed"
        ]

    async def test_cancel_event(self, engine, network, fake_provider):
        cancel = asyncio.Event()
        cancel.set()

        report = await engine.apply(network(), cancel_event=cancel)

        assert report.cancelled
        assert not any(action == "create" for action, _ in fake_provider.calls)


@pytest.mark.asyncio
class TestRefresh:
    """Tests for drift detection."""

    async def test_drift_detected(self, engine, network, fake_provider):
        await engine.apply(network())
        net = await engine.show_state("fake_thing.net")
        fake_provider.objects[net.object_id]["size"] = 99

        plan = await engine.plan(network())

        entry = plan.get("fake_thing.net:update")
        assert entry is not None
        assert entry.before["size"] == 99
        assert entry.after["size"] == 1
        assert (await engine.plan(network(), refresh=False)).is_empty

    async def test_refresh_is_not_persisted(self, engine, store, network, fake_provider):
        await engine.apply(network())
        serial = await store.serial()
        net = await engine.show_state("fake_thing.net")
        fake_provider.objects[net.object_id]["size"] = 99

        await engine.plan(network())

        assert await store.serial() == serial
        assert (await engine.show_state("fake_thing.net")).attributes["size"] == 1

    async def test_deleted_object_planned_as_create(self, engine, network, fake_provider):
        await engine.apply(network())
        net = await engine.show_state("fake_thing.net")
        del fake_provider.objects[net.object_id]

        plan = await engine.plan(network())

        assert "fake_thing.net:create" in [e.key for e in plan.entries]

    async def test_extra_provider_fields_ignored(self, engine, network, fake_provider):
        await engine.apply(network())
        net = await engine.show_state("fake_thing.net")
        fake_provider.objects[net.object_id]["labels"] = {"owner": "ops"}

        assert (await engine.plan(network())).is_empty

    async def test_vanished_orphan_is_cleared_from_state(
        self, engine, fake_provider, make_document
    ):
        await engine.apply(make_document(("fake_thing", "a", {}), ("fake_thing", "b", {})))
        fake_provider.objects.clear()
        document = make_document(("fake_thing", "b", {}))

        plan = await engine.plan(document)
        assert [e.key for e in plan.entries] == ["fake_thing.a:destroy", "fake_thing.b:create"]

        report = await engine.apply(document)

        assert report.success
        assert [r.address for r in await engine.list_state()] == ["fake_thing.b"]
        assert (await engine.plan(document)).is_empty


@pytest.mark.asyncio
class TestDestroy:
    """Tests for Engine.destroy."""

    async def test_destroy_everything(self, engine, network, fake_provider):
        await engine.apply(network())

        report = await engine.destroy()

        assert report.success
        assert await engine.list_state() == []
        assert fake_provider.objects == {}

    async def test_destroy_plan(self, engine, network):
        await engine.apply(network())

        plan = await engine.plan(network(), destroy=True)

        assert plan.destroy
        assert [e.key for e in plan.entries] == [
            "fake_cbd.vm:destroy",
            "fake_thing.subnet:destroy",
            "fake_thing.net:destroy",
        ]

    async def test_prevent_destroy(self, engine, make_document):
        document = make_document(
            {"type": "fake_thing", "name": "a", "lifecycle": {"prevent_destroy": True}}
        )
        await engine.apply(document)

        with pytest.raises(ValidationError, match="prevent_destroy"):
            await engine.destroy(document)

        assert len(await engine.list_state()) == 1

    async def test_destroy_empty_state(self, engine):
        report = await engine.destroy()
        assert report.results == {}
        assert await engine.history() == []


@pytest.mark.asyncio
class TestOutputsAndState:
    """Tests for outputs and state inspection commands."""

    async def test_outputs_unknown_before_apply(self, engine, network):
        outputs = await engine.outputs(network())
        assert outputs == {"net_zone": UNKNOWN, "vm_id": UNKNOWN}

    async def test_outputs_after_apply(self, engine, network):
        await engine.apply(network())

        outputs = await engine.outputs(network())

        vm = await engine.show_state("fake_cbd.vm")
        assert outputs == {"net_zone": "z1", "vm_id": vm.object_id}

    async def test_output_bad_attribute(self, engine, make_document):
        await engine.apply(make_document(("fake_thing", "a", {})))
        document = make_document(("fake_thing", "a", {}), outputs={"x": "${fake_thing.a.nope}"})

        with pytest.raises(ValidationError):
            await engine.outputs(document)

    async def test_list_and_show(self, engine, network):
        await engine.apply(network())

        addresses = [r.address for r in await engine.list_state()]

        assert addresses == ["fake_cbd.vm", "fake_thing.net", "fake_thing.subnet"]
        assert await engine.show_state("fake_thing.none") is None

    async def test_remove_state(self, engine, network, fake_provider):
        await engine.apply(network())
        vm = await engine.show_state("fake_cbd.vm")

        assert await engine.remove_state("fake_cbd.vm") is True
        assert await engine.show_state("fake_cbd.vm") is None
        assert vm.object_id in fake_provider.objects
        assert await engine.remove_state("fake_cbd.vm") is False

    async def test_removed_resource_is_recreated(self, engine, network):
        await engine.apply(network())
        await engine.remove_state("fake_cbd.vm")

        plan = await engine.plan(network())

        assert [e.key for e in plan.entries] == ["fake_cbd.vm:create"]

    async def test_close(self, engine, store):
        store.close = AsyncMock()
        await engine.close()
        store.close.assert_awaited_once()


@pytest.mark.asyncio
class TestOpenStateStore:
    """Tests for open_state_store."""

    async def test_memory(self):
        config = Config.default()
        config.state.backend = "memory"
        assert isinstance(await open_state_store(config), MemoryStateStore)

    async def test_local(self, tmp_path):
        config = Config.default()
        config.state.path = str(tmp_path / "s.json")

        store = await open_state_store(config)

        assert isinstance(store, LocalStateStore)
        assert store.path == tmp_path / "s.json"

    async def test_postgres_requires_password(self):
        config = Config.default()
        config.state.backend = "postgres"

        with pytest.raises(ValueError, match="DB_PASSWORD"):
            await open_state_store(config)

    async def test_postgres(self):
        config = Config.default()
        config.state.backend = "postgres"
        config.database.password = "pw"

        with patch("db.PostgresStateStore.connect", AsyncMock()) as connect, patch(
            "db.PostgresStateStore.initialize_schema", AsyncMock()
        ) as initialize:
            store = await open_state_store(config)

        assert store.password == "pw"
        connect.assert_awaited_once()
        initialize.assert_awaited_once()
