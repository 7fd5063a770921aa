"""
Audit Recorder: append-only history of every environment and variable mutation.

Entries are written inside the mutating operation's own transaction, so an
entry becomes durable exactly when the mutation does. The recorder trusts its
input: callers hand it already-redacted values for secrets.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from envguard.auth.identity import CallerIdentity, require_identity
from envguard.db.models import AuditLogModel, utcnow
from envguard.errors import AuditWriteError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

REDACTED = "[SECRET]"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AuditEntityType(str, Enum):
    ENVIRONMENT = "environment"
    VARIABLE = "variable"


class AuditEntry(BaseModel):
    """A mutation to be recorded."""
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    caller: CallerIdentity
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditLogEntry(BaseModel):
    """A persisted audit entry."""
    id: int
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: str
    user_name: str = ""
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


def _row_to_entry(row: AuditLogModel) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        action=AuditAction(row.action),
        entity_type=AuditEntityType(row.entity_type),
        entity_id=row.entity_id,
        old_value=row.old_value,
        new_value=row.new_value,
        user_id=row.user_id,
        user_name=row.user_name or "",
        timestamp=row.timestamp,
        details=row.details or {},
    )


class AuditRecorder:
    """Appends and queries audit entries. Exposes no update or delete."""

    def __init__(self, session_factory: async_sessionmaker,
                 default_limit: int = 50, max_limit: int = 500):
        self._session_factory = session_factory
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def record(self, session: AsyncSession, entry: AuditEntry) -> AuditLogEntry:
        """
        Append an entry within the caller's transaction.

        The timestamp never goes backwards relative to entries already
        persisted, so insertion order and time order agree.
        """
        caller = require_identity(entry.caller)
        try:
            latest = (await session.execute(
                select(func.max(AuditLogModel.timestamp))
            )).scalar_one_or_none()
            now = utcnow()
            row = AuditLogModel(
                action=entry.action.value,
                entity_type=entry.entity_type.value,
                entity_id=entry.entity_id,
                old_value=entry.old_value,
                new_value=entry.new_value,
                user_id=caller.id,
                user_name=caller.username,
                timestamp=max(now, latest) if latest else now,
                details=entry.details,
            )
            session.add(row)
            await session.flush()
        except SQLAlchemyError as e:
            logger.error(
                f"Audit write failed for {entry.action.value} "
                f"{entry.entity_type.value}:{entry.entity_id}: {type(e).__name__}"
            )
            raise AuditWriteError("Failed to write audit entry") from e
        return _row_to_entry(row)

    def _coerce_limit(self, limit: Any) -> int:
        try:
            n = int(limit)
        except (TypeError, ValueError):
            return self.default_limit
        if n < 1:
            return self.default_limit
        return min(n, self.max_limit)

    async def query(
        self,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: Any = None,
    ) -> List[AuditLogEntry]:
        """List entries newest first, optionally filtered by action and entity type."""
        stmt = select(AuditLogModel)
        if action:
            try:
                stmt = stmt.where(AuditLogModel.action == AuditAction(action).value)
            except ValueError:
                raise ValidationError(f"Unknown audit action '{action}'") from None
        if entity_type:
            try:
                stmt = stmt.where(AuditLogModel.entity_type == AuditEntityType(entity_type).value)
            except ValueError:
                raise ValidationError(f"Unknown audit entity type '{entity_type}'") from None
        stmt = stmt.order_by(
            AuditLogModel.timestamp.desc(), AuditLogModel.id.desc()
        ).limit(self._coerce_limit(limit))

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Audit query failed: {type(e).__name__}")
            raise PersistenceError("Failed to read audit log") from e
        return [_row_to_entry(r) for r in rows]
