"""
Tests for AuditRecorder: append, ordering, filtering, limit handling.
Run: pytest tests/test_audit_recorder.py -v
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from envguard.audit.audit_recorder import (
    AuditAction, AuditEntityType, AuditEntry, AuditRecorder,
)
from envguard.auth.identity import CallerIdentity
from envguard.db.models import AuditLogModel, utcnow
from envguard.errors import AuditWriteError, PersistenceError, ValidationError


async def _record(session_factory, recorder, caller, action="create",
                  entity_type="variable", entity_id="var-1", **kwargs):
    async with session_factory() as session:
        entry = await recorder.record(session, AuditEntry(
            action=AuditAction(action),
            entity_type=AuditEntityType(entity_type),
            entity_id=entity_id,
            caller=caller,
            **kwargs,
        ))
        await session.commit()
    return entry


class TestRecord:

    @pytest.mark.asyncio
    async def test_record_persists_fields(self, session_factory, recorder, caller):
        entry = await _record(
            session_factory, recorder, caller, action="update",
            old_value="a", new_value="b", details={"key": "K"},
        )
        assert entry.id > 0
        assert entry.action is AuditAction.UPDATE
        assert entry.entity_type is AuditEntityType.VARIABLE
        assert entry.old_value == "a"
        assert entry.new_value == "b"
        assert entry.user_id == "user-001"
        assert entry.user_name == "alice"
        assert entry.details == {"key": "K"}

        [stored] = await recorder.query()
        assert stored == entry

    @pytest.mark.asyncio
    async def test_record_trusts_input(self, session_factory, recorder, caller):
        # classification is the caller's job; the recorder stores what it is given
        entry = await _record(session_factory, recorder, caller, new_value="plain-looking")
        assert entry.new_value == "plain-looking"

    @pytest.mark.asyncio
    async def test_uncommitted_entry_is_discarded(self, session_factory, recorder, caller):
        async with session_factory() as session:
            await recorder.record(session, AuditEntry(
                action=AuditAction.CREATE, entity_type=AuditEntityType.VARIABLE,
                entity_id="var-1", caller=caller,
            ))
            await session.rollback()
        assert await recorder.query() == []

    @pytest.mark.asyncio
    async def test_storage_failure_becomes_audit_write_error(self, session_factory, recorder, caller, monkeypatch):
        async with session_factory() as session:
            async def broken_flush(*args, **kwargs):
                raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

            monkeypatch.setattr(session, "flush", broken_flush)
            with pytest.raises(AuditWriteError) as exc_info:
                await recorder.record(session, AuditEntry(
                    action=AuditAction.CREATE, entity_type=AuditEntityType.VARIABLE,
                    entity_id="var-1", caller=caller,
                ))
            await session.rollback()
        assert isinstance(exc_info.value, PersistenceError)
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert await recorder.query() == []

    @pytest.mark.asyncio
    async def test_requires_identity(self, session_factory, recorder):
        with pytest.raises(ValidationError):
            await _record(session_factory, recorder, CallerIdentity(id=""))

    @pytest.mark.asyncio
    async def test_timestamp_never_goes_backwards(self, session_factory, recorder, caller):
        # an entry stamped in the future (e.g. clock skew on another node)
        future = utcnow() + timedelta(minutes=5)
        async with session_factory() as session:
            session.add(AuditLogModel(
                action="create", entity_type="variable", entity_id="var-0",
                user_id="other", user_name="other", timestamp=future, details={},
            ))
            await session.commit()

        entry = await _record(session_factory, recorder, caller, entity_id="var-1")
        assert entry.timestamp >= future

    @pytest.mark.asyncio
    async def test_recorder_exposes_no_update_or_delete(self, recorder):
        assert not hasattr(recorder, "update")
        assert not hasattr(recorder, "delete")


class TestQuery:

    @pytest.mark.asyncio
    async def test_newest_first(self, session_factory, recorder, caller):
        for i in range(5):
            await _record(session_factory, recorder, caller, entity_id=f"var-{i}")
        entries = await recorder.query()
        assert [e.entity_id for e in entries] == [f"var-{i}" for i in reversed(range(5))]
        assert all(a.timestamp >= b.timestamp for a, b in zip(entries, entries[1:]))

    @pytest.mark.asyncio
    async def test_filter_by_action(self, session_factory, recorder, caller):
        await _record(session_factory, recorder, caller, action="create")
        await _record(session_factory, recorder, caller, action="update")
        await _record(session_factory, recorder, caller, action="delete")
        entries = await recorder.query(action="update")
        assert [e.action for e in entries] == [AuditAction.UPDATE]

    @pytest.mark.asyncio
    async def test_filter_by_entity_type(self, session_factory, recorder, caller):
        await _record(session_factory, recorder, caller, entity_type="environment", entity_id="env-1")
        await _record(session_factory, recorder, caller, entity_type="variable", entity_id="var-1")
        entries = await recorder.query(entity_type="environment")
        assert [e.entity_id for e in entries] == ["env-1"]

    @pytest.mark.asyncio
    async def test_create_filter_with_limit(self, session_factory, recorder, caller):
        for i in range(15):
            await _record(session_factory, recorder, caller, action="create", entity_id=f"var-{i}")
            await _record(session_factory, recorder, caller, action="update", entity_id=f"var-{i}")
        entries = await recorder.query(action="create", limit=10)
        assert len(entries) == 10
        assert all(e.action is AuditAction.CREATE for e in entries)
        assert entries[0].entity_id == "var-14"
        assert all(a.id > b.id for a, b in zip(entries, entries[1:]))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [None, "abc", "", 0, -5, "1.5"])
    async def test_invalid_limit_falls_back_to_default(self, session_factory, caller, limit):
        recorder = AuditRecorder(session_factory, default_limit=3, max_limit=10)
        for i in range(5):
            await _record(session_factory, recorder, caller, entity_id=f"var-{i}")
        assert len(await recorder.query(limit=limit)) == 3

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, session_factory, caller):
        recorder = AuditRecorder(session_factory, default_limit=2, max_limit=4)
        for i in range(6):
            await _record(session_factory, recorder, caller, entity_id=f"var-{i}")
        assert len(await recorder.query(limit=1000)) == 4
        assert len(await recorder.query(limit="3")) == 3

    @pytest.mark.asyncio
    async def test_unknown_filter_values(self, recorder):
        with pytest.raises(ValidationError):
            await recorder.query(action="rename")
        with pytest.raises(ValidationError):
            await recorder.query(entity_type="user")
