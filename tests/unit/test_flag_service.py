"""Tests for flagengine/core/flags/service.py.

Covers:
- Create/update/archive/delete with audit entries and invalidation
- Overrides
- Emergency kill switch ordering and failure handling
- Seeding and seed file loading
"""

from __future__ import annotations

import dataclasses
import json
from unittest.mock import AsyncMock

import pytest

from flagengine.core.audit import AuditAction, AuditReason, AuditRecorder
from flagengine.core.errors import (
    AuditWriteError,
    ConfigurationError,
    ConflictError,
    FlagNotFoundError,
)
from flagengine.core.flags.cache import FlagCache
from flagengine.core.flags.definition import (
    EvaluationContext,
    EvaluationReason,
    FlagDefinition,
    Override,
    OverrideScope,
    PercentageRule,
)
from flagengine.core.flags.evaluator import Evaluator
from flagengine.core.flags.service import FlagService, load_flag_definitions
from flagengine.core.flags.store import InMemoryFlagStore
from flagengine.core.message_bus import InMemoryInvalidationBus


class FailingAuditStore(InMemoryFlagStore):
    async def record_audit(self, entry):
        raise OSError("audit disk full")


@pytest.fixture
def store():
    return InMemoryFlagStore()


@pytest.fixture
def bus():
    return InMemoryInvalidationBus()


@pytest.fixture
def cache(store, bus):
    return FlagCache(store, bus=bus)


@pytest.fixture
def service(store, cache):
    return FlagService(store, cache)


class TestCreateAndUpdate:
    """Tests for flag create/update/archive/delete."""

    @pytest.mark.asyncio
    async def test_create_records_audit_and_invalidates(self, service, bus):
        flag = await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")

        assert flag.version == 1
        assert flag.created_by == "alice"
        entries = await service.get_audit_log(flag_key="a.flag")
        assert len(entries) == 1
        assert entries[0].action == AuditAction.CREATED
        assert entries[0].before is None
        assert entries[0].after["key"] == "a.flag"
        assert bus.published == ["a.flag"]

    @pytest.mark.asyncio
    async def test_create_clears_negative_cache(self, service, cache):
        assert not (await cache.get_snapshot("a.flag")).exists
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        assert (await cache.get_snapshot("a.flag")).exists

    @pytest.mark.asyncio
    async def test_invalid_definition_never_reaches_store(self, service, store):
        with pytest.raises(ConfigurationError):
            await service.create_flag(
                FlagDefinition(key="a.flag", rule=PercentageRule(150)), actor="alice"
            )
        assert await store.get_flag("a.flag") is None
        assert await service.get_audit_log() == []

    @pytest.mark.asyncio
    async def test_duplicate_create_conflicts(self, service):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        with pytest.raises(ConflictError):
            await service.create_flag(FlagDefinition(key="a.flag"), actor="bob")

    @pytest.mark.asyncio
    async def test_update(self, service):
        flag = await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        flag.enabled_users.add("u1")
        updated = await service.update_flag(flag, actor="bob", reason="beta")

        assert updated.version == 2
        entry = (await service.get_audit_log(flag_key="a.flag"))[0]
        assert entry.action == AuditAction.UPDATED
        assert entry.before["enabled_users"] == []
        assert entry.after["enabled_users"] == ["u1"]
        assert entry.reason == "beta"

    @pytest.mark.asyncio
    async def test_concurrent_update_conflicts(self, service):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        first = await service.get_flag("a.flag")
        second = await service.get_flag("a.flag")

        first.enabled = False
        await service.update_flag(first, actor="alice")
        second.default_value = True
        with pytest.raises(ConflictError) as exc_info:
            await service.update_flag(second, actor="bob")

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert len(await service.get_audit_log(flag_key="a.flag")) == 2

    @pytest.mark.asyncio
    async def test_update_unknown_flag(self, service):
        with pytest.raises(FlagNotFoundError):
            await service.update_flag(FlagDefinition(key="ghost.flag", version=1), actor="alice")

    @pytest.mark.asyncio
    async def test_archive(self, service):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        archived = await service.archive_flag("a.flag", actor="alice", reason="done")

        assert archived.archived is True
        entry = (await service.get_audit_log(flag_key="a.flag"))[0]
        assert entry.action == AuditAction.ARCHIVED
        assert await service.list_flags() == []

    @pytest.mark.asyncio
    async def test_delete(self, service):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        assert await service.delete_flag("a.flag", actor="alice") is True
        assert await service.delete_flag("a.flag", actor="alice") is False

        entry = (await service.get_audit_log(flag_key="a.flag"))[0]
        assert entry.action == AuditAction.DELETED
        assert entry.after is None


class TestOverrides:
    """Tests for override mutations."""

    @pytest.mark.asyncio
    async def test_set_override_requires_flag(self, service):
        with pytest.raises(FlagNotFoundError):
            await service.set_override(
                Override(OverrideScope.USER, "u1", "ghost.flag", True), actor="alice"
            )

    @pytest.mark.asyncio
    async def test_override_is_visible_after_invalidation(self, service, cache):
        await service.create_flag(
            FlagDefinition(key="a.flag", disabled_tenants={"acme"}), actor="alice"
        )
        evaluator = Evaluator(cache)
        context = EvaluationContext(tenant_id="acme", user_id="u1")
        assert (await evaluator.evaluate("a.flag", context)).reason == EvaluationReason.TENANT_DISABLED

        await service.set_override(
            Override(OverrideScope.USER, "u1", "a.flag", True, reason="support case"),
            actor="alice",
        )
        result = await evaluator.evaluate("a.flag", context)
        assert result.reason == EvaluationReason.USER_OVERRIDE

        entry = (await service.get_audit_log(action=AuditAction.OVERRIDE_ADDED))[0]
        assert entry.reason == "support case"
        assert entry.after["created_by"] == "alice"

    @pytest.mark.asyncio
    async def test_remove_override(self, service):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        await service.set_override(Override(OverrideScope.TENANT, "acme", "a.flag", 1), actor="alice")

        assert await service.remove_override(OverrideScope.TENANT, "acme", "a.flag", actor="bob")
        assert not await service.remove_override(OverrideScope.TENANT, "acme", "a.flag", actor="bob")

        entry = (await service.get_audit_log(flag_key="a.flag"))[0]
        assert entry.action == AuditAction.OVERRIDE_REMOVED
        assert entry.before["value"] == 1


class TestKillSwitch:
    """Tests for emergency_disable."""

    @pytest.mark.asyncio
    async def test_disables_and_records_one_emergency_entry(self, service, cache):
        await service.create_flag(
            FlagDefinition(key="checkout.new_flow", enabled_tenants={"acme"}), actor="alice"
        )
        evaluator = Evaluator(cache)
        context = EvaluationContext(tenant_id="acme")
        assert await evaluator.is_enabled("checkout.new_flow", context)

        stored = await service.emergency_disable("checkout.new_flow", actor="oncall", reason="INC-1")

        assert stored.enabled is False
        result = await evaluator.evaluate("checkout.new_flow", context)
        assert result.reason == EvaluationReason.DISABLED

        emergency = [
            e for e in await service.get_audit_log(flag_key="checkout.new_flow")
            if e.reason_tag == AuditReason.EMERGENCY
        ]
        assert len(emergency) == 1
        assert emergency[0].action == AuditAction.KILL_SWITCH
        assert emergency[0].actor == "oncall"
        assert emergency[0].before["enabled"] is True
        assert emergency[0].after["enabled"] is False

    @pytest.mark.asyncio
    async def test_reads_store_not_cache(self, service, store, cache):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        await cache.get_snapshot("a.flag")
        flag = await store.get_flag("a.flag")
        flag.enabled_users.add("u1")
        await store.save_flag(flag, expected_version=flag.version)

        stored = await service.emergency_disable("a.flag", actor="oncall")
        assert stored.version == 3
        assert stored.enabled_users == {"u1"}

    @pytest.mark.asyncio
    async def test_unknown_flag(self, service):
        with pytest.raises(FlagNotFoundError):
            await service.emergency_disable("ghost.flag", actor="oncall")

    @pytest.mark.asyncio
    async def test_conflict_propagates_without_audit(self, service, store):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        stale = await store.get_flag("a.flag")
        fresh = await store.get_flag("a.flag")
        fresh.default_value = True
        await service.update_flag(fresh, actor="bob")

        store.get_flag = AsyncMock(return_value=stale)
        with pytest.raises(ConflictError):
            await service.emergency_disable("a.flag", actor="oncall")

        assert await service.get_audit_log(action=AuditAction.KILL_SWITCH) == []

    @pytest.mark.asyncio
    async def test_audit_failure_still_invalidates(self, bus):
        store = FailingAuditStore()
        cache = FlagCache(store, bus=bus)
        service = FlagService(store, cache)
        await store.save_flag(FlagDefinition(key="a.flag"), expected_version=None)
        await cache.get_snapshot("a.flag")

        with pytest.raises(AuditWriteError):
            await service.emergency_disable("a.flag", actor="oncall")

        assert (await store.get_flag("a.flag")).enabled is False
        assert bus.published == ["a.flag"]
        assert (await cache.get_snapshot("a.flag")).definition.enabled is False

    @pytest.mark.asyncio
    async def test_closed_bus_does_not_fail_kill_switch(self, service, bus):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        await bus.close()
        stored = await service.emergency_disable("a.flag", actor="oncall")
        assert stored.enabled is False


class TestAuditImmutability:
    """Tests that recorded entries cannot change."""

    @pytest.mark.asyncio
    async def test_entries_are_frozen(self, service):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        entry = (await service.get_audit_log())[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.actor = "mallory"

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, service):
        await service.create_flag(FlagDefinition(key="a.flag"), actor="alice")
        entry = (await service.get_audit_log())[0]
        entry.after["enabled"] = "tampered"
        assert (await service.get_audit_log())[0].after["enabled"] is True

    def test_no_mutation_api(self):
        for name in ("update", "delete", "remove", "clear"):
            assert not hasattr(AuditRecorder, name)
        assert not hasattr(InMemoryFlagStore, "delete_audit")
        assert not hasattr(InMemoryFlagStore, "update_audit")


class TestSeeding:
    """Tests for seed_flags and load_flag_definitions."""

    @pytest.mark.asyncio
    async def test_seed_creates_then_updates(self, service):
        seeds = [
            FlagDefinition(key="a.flag", category="core"),
            FlagDefinition(key="b.flag", rule=PercentageRule(10)),
        ]
        assert await service.seed_flags(seeds, actor="deploy") == (2, 0)

        original = await service.get_flag("b.flag")
        await service.emergency_disable("b.flag", actor="oncall")

        reseed = [FlagDefinition(key="b.flag", rule=PercentageRule(50), description="wider")]
        assert await service.seed_flags(reseed, actor="deploy") == (0, 1)

        seeded = await service.get_flag("b.flag")
        assert seeded.rule == PercentageRule(50)
        assert seeded.description == "wider"
        assert seeded.enabled is False
        assert seeded.salt == original.salt
        entry = (await service.get_audit_log(flag_key="b.flag"))[0]
        assert entry.reason == "Automatic seed update"

    @pytest.mark.asyncio
    async def test_categories(self, service):
        await service.seed_flags(
            [FlagDefinition(key="a.flag", category="search"), FlagDefinition(key="b.flag")],
            actor="deploy",
        )
        assert await service.list_categories() == ["search"]

    def test_load_flag_definitions(self, tmp_path):
        path = tmp_path / "flags.json"
        path.write_text(json.dumps({"flags": [
            {"key": "checkout.new_flow", "type": "percentage", "rule": {"percentage": 25}},
            {"key": "exp.banner", "type": "variant", "rule": {"weights": {"a": 1, "b": 1}}},
        ]}))

        definitions = load_flag_definitions(path)
        assert [d.key for d in definitions] == ["checkout.new_flow", "exp.banner"]
        assert definitions[0].rule == PercentageRule(25)

    @pytest.mark.parametrize(
        "content",
        [
            "not json",
            json.dumps({"flags": "nope"}),
            json.dumps([{"type": "boolean"}]),
            json.dumps([{"key": "a.flag", "type": "percentage", "rule": {"percentage": 500}}]),
        ],
    )
    def test_load_rejects_bad_files(self, tmp_path, content):
        path = tmp_path / "flags.json"
        path.write_text(content)
        with pytest.raises(ConfigurationError):
            load_flag_definitions(path)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_flag_definitions(tmp_path / "absent.json")
