"""
Tests for EnvironmentRegistry: create, list, resolve, delete policy.
Run: pytest tests/test_environment_registry.py -v
"""
import json

import pytest

from envguard.errors import ConflictError, DuplicateNameError, NotFoundError, ValidationError


class TestEnvironmentCRUD:

    @pytest.mark.asyncio
    async def test_create_and_resolve(self, registry, caller):
        env = await registry.create("prod", "Production", caller=caller)
        assert env.id.startswith("env-")
        assert env.name == "prod"
        assert env.description == "Production"

        resolved = await registry.resolve("prod")
        assert resolved == env

    @pytest.mark.asyncio
    async def test_list_ordered_by_name(self, registry, caller):
        for name in ("staging", "dev", "prod"):
            await registry.create(name, caller=caller)
        assert [e.name for e in await registry.list()] == ["dev", "prod", "staging"]

    @pytest.mark.asyncio
    async def test_duplicate_name(self, registry, caller):
        await registry.create("prod", caller=caller)
        with pytest.raises(DuplicateNameError):
            await registry.create("prod", "again", caller=caller)
        assert len(await registry.list()) == 1

    @pytest.mark.asyncio
    async def test_name_required(self, registry, caller):
        with pytest.raises(ValidationError):
            await registry.create("", caller=caller)

    @pytest.mark.asyncio
    async def test_resolve_missing(self, registry):
        with pytest.raises(NotFoundError):
            await registry.resolve("nope")

    @pytest.mark.asyncio
    async def test_create_is_audited(self, registry, recorder, caller):
        env = await registry.create("prod", "Production", caller=caller)
        [entry] = await recorder.query(entity_type="environment")
        assert entry.action.value == "create"
        assert entry.entity_id == env.id
        assert json.loads(entry.new_value) == {"name": "prod", "description": "Production"}
        assert entry.old_value is None
        assert entry.user_name == "alice"

    @pytest.mark.asyncio
    async def test_duplicate_is_not_audited(self, registry, recorder, caller):
        await registry.create("prod", caller=caller)
        with pytest.raises(DuplicateNameError):
            await registry.create("prod", caller=caller)
        assert len(await recorder.query(entity_type="environment")) == 1


class TestEnvironmentDelete:

    @pytest.mark.asyncio
    async def test_delete_empty_environment(self, registry, recorder, caller):
        env = await registry.create("scratch", caller=caller)
        deleted = await registry.delete("scratch", caller=caller)
        assert deleted.id == env.id
        with pytest.raises(NotFoundError):
            await registry.resolve("scratch")

        [entry] = await recorder.query(action="delete", entity_type="environment")
        assert entry.entity_id == env.id
        assert json.loads(entry.old_value)["name"] == "scratch"

    @pytest.mark.asyncio
    async def test_delete_blocked_while_variables_exist(self, registry, store, prod, caller):
        await store.set(prod.id, "DB_HOST", "10.0.0.1", caller=caller)
        with pytest.raises(ConflictError):
            await registry.delete("prod", caller=caller)
        assert (await registry.resolve("prod")).id == prod.id

        await store.delete(prod.id, "DB_HOST", caller=caller)
        await registry.delete("prod", caller=caller)
        with pytest.raises(NotFoundError):
            await registry.resolve("prod")

    @pytest.mark.asyncio
    async def test_delete_missing(self, registry, caller):
        with pytest.raises(NotFoundError):
            await registry.delete("nope", caller=caller)

    @pytest.mark.asyncio
    async def test_name_reusable_after_delete(self, registry, caller):
        first = await registry.create("tmp", caller=caller)
        await registry.delete("tmp", caller=caller)
        second = await registry.create("tmp", caller=caller)
        assert second.id != first.id
