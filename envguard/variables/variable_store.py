"""
VariableStore: per-environment variables with encryption at rest for secrets.

Every set/delete is one transaction: the variable row is written and flushed,
then the audit entry is appended, then both commit together. A failure at any
step rolls back both, so there is never an audit entry without its mutation
nor a mutation without its audit entry.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import delete as sa_delete, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from envguard.audit.audit_recorder import (
    REDACTED, AuditAction, AuditEntityType, AuditEntry, AuditRecorder,
)
from envguard.auth.identity import CallerIdentity, require_identity
from envguard.db.models import EnvironmentModel, VariableModel, utcnow
from envguard.errors import (
    AuditWriteError, ConflictError, NotFoundError, PersistenceError, ValidationError,
)
from envguard.utils.crypto import Cipher

logger = logging.getLogger(__name__)


class Variable(BaseModel):
    """A variable as stored. value is a Fernet token when encrypted is True."""
    id: str
    environment_id: str
    key: str
    value: str
    encrypted: bool
    is_secret: bool
    tags: str = ""
    description: str = ""
    created_at: datetime
    updated_at: datetime


def _row_to_variable(row: VariableModel) -> Variable:
    return Variable(
        id=row.id,
        environment_id=row.environment_id,
        key=row.key,
        value=row.value,
        encrypted=row.encrypted,
        is_secret=row.is_secret,
        tags=row.tags or "",
        description=row.description or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _audit_values(
    old: Optional[Tuple[str, bool]], new: Optional[Tuple[str, bool]],
) -> Tuple[Optional[str], Optional[str]]:
    """
    (stored value, is_secret) before and after → (old_value, new_value) for audit.
    If either side is secret, both sides are redacted.
    """
    secret = any(side[1] for side in (old, new) if side is not None)
    old_value = None if old is None else (REDACTED if secret else old[0])
    new_value = None if new is None else (REDACTED if secret else new[0])
    return old_value, new_value


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, AuditWriteError):
        return isinstance(exc.__cause__, OperationalError)
    return isinstance(exc, OperationalError)


class VariableStore:
    """Async CRUD for variables, keyed by (environment_id, key)."""

    def __init__(self, session_factory: async_sessionmaker, cipher: Cipher,
                 recorder: AuditRecorder, max_attempts: int = 3):
        self._session_factory = session_factory
        self._cipher = cipher
        self._recorder = recorder
        self._max_attempts = max_attempts

    @staticmethod
    def _row_query(environment_id: str, key: str, for_update: bool = False):
        stmt = select(VariableModel).where(
            VariableModel.environment_id == environment_id,
            VariableModel.key == key,
        )
        # Mutations lock the row so concurrent writers to one pair serialize
        return stmt.with_for_update() if for_update else stmt

    async def _find_row(self, session: AsyncSession, environment_id: str,
                        key: str, for_update: bool = False) -> Optional[VariableModel]:
        result = await session.execute(self._row_query(environment_id, key, for_update))
        return result.scalar_one_or_none()

    # ── Reads ─────────────────────────────────────────────────────

    async def list(self, environment_id: str) -> List[Variable]:
        """All variables of an environment ordered by key. Secret values stay encrypted."""
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(
                    select(VariableModel)
                    .where(VariableModel.environment_id == environment_id)
                    .order_by(VariableModel.key)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list variables of {environment_id}") from e
        return [_row_to_variable(r) for r in rows]

    async def get(self, environment_id: str, key: str) -> Variable:
        """Fetch one variable with its stored value."""
        try:
            async with self._session_factory() as session:
                row = await self._find_row(session, environment_id, key)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read variable '{key}'") from e
        if not row:
            raise NotFoundError(f"Variable '{key}' not found")
        return _row_to_variable(row)

    async def get_decrypted(self, environment_id: str, key: str) -> Variable:
        """Fetch one variable with its plaintext value. Nothing is written back."""
        variable = await self.get(environment_id, key)
        if not variable.encrypted:
            return variable
        plaintext = self._cipher.decrypt(variable.value)
        return variable.model_copy(update={"value": plaintext})

    # ── Mutations ─────────────────────────────────────────────────

    async def set(
        self,
        environment_id: str,
        key: str,
        value: Optional[str],
        is_secret: bool = False,
        tags: str = "",
        description: str = "",
        *,
        caller: CallerIdentity,
    ) -> Tuple[Variable, bool]:
        """
        Create or update (environment_id, key). Returns (variable, was_created).

        Secrecy follows is_secret of this write only: a secret can become
        plaintext and vice versa. A lost creation race is retried as an update.
        """
        if not key:
            raise ValidationError("Key is required")
        if value is None:
            raise ValidationError("Value is required")
        require_identity(caller)

        payload = self._cipher.to_stored(value, is_secret)
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._upsert(
                    environment_id, key, payload.value, payload.encrypted,
                    tags or "", description or "", caller,
                )
            except IntegrityError as e:
                last_error = e
                logger.warning(
                    f"Concurrent create of '{key}' in {environment_id}, "
                    f"retrying as update (attempt {attempt}/{self._max_attempts})"
                )
            except (OperationalError, AuditWriteError) as e:
                if not _is_transient(e):
                    raise
                last_error = e
                logger.warning(
                    f"Transient storage error writing '{key}' in {environment_id} "
                    f"(attempt {attempt}/{self._max_attempts})"
                )
            except SQLAlchemyError as e:
                logger.error(f"Failed to write variable '{key}' in {environment_id}: {type(e).__name__}")
                raise PersistenceError(f"Failed to write variable '{key}'") from e

        if isinstance(last_error, IntegrityError):
            raise ConflictError(f"Concurrent writes to variable '{key}' could not be resolved") from last_error
        if isinstance(last_error, AuditWriteError):
            raise last_error
        raise PersistenceError(f"Failed to write variable '{key}'") from last_error

    async def _upsert(
        self, environment_id: str, key: str, stored_value: str, encrypted: bool,
        tags: str, description: str, caller: CallerIdentity,
    ) -> Tuple[Variable, bool]:
        async with self._session_factory() as session:
            try:
                row = await self._find_row(session, environment_id, key, for_update=True)
                now = utcnow()
                if row:
                    previous = (row.value, row.is_secret)
                    row.value = stored_value
                    row.encrypted = encrypted
                    row.is_secret = encrypted
                    row.tags = tags
                    row.description = description
                    row.updated_at = max(now, row.updated_at + timedelta(microseconds=1))
                    action = AuditAction.UPDATE
                else:
                    if await session.get(EnvironmentModel, environment_id) is None:
                        raise NotFoundError(f"Environment {environment_id} not found")
                    previous = None
                    row = VariableModel(
                        environment_id=environment_id, key=key,
                        value=stored_value, encrypted=encrypted, is_secret=encrypted,
                        tags=tags, description=description,
                        created_at=now, updated_at=now,
                    )
                    session.add(row)
                    action = AuditAction.CREATE
                await session.flush()

                old_value, new_value = _audit_values(previous, (stored_value, encrypted))
                await self._recorder.record(session, AuditEntry(
                    action=action,
                    entity_type=AuditEntityType.VARIABLE,
                    entity_id=row.id,
                    old_value=old_value,
                    new_value=new_value,
                    caller=caller,
                    details={
                        "environment_id": environment_id,
                        "key": key,
                        "was_secret": previous[1] if previous else None,
                        "is_secret": encrypted,
                    },
                ))
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        created = action is AuditAction.CREATE
        logger.info(
            f"{'Created' if created else 'Updated'} variable '{key}' ({row.id}) "
            f"in {environment_id} secret={encrypted}"
        )
        return _row_to_variable(row), created

    async def delete(self, environment_id: str, key: str, *,
                     caller: CallerIdentity) -> Variable:
        """Remove a variable and return its last state."""
        require_identity(caller)
        try:
            async with self._session_factory() as session:
                try:
                    row = await self._find_row(session, environment_id, key, for_update=True)
                    if not row:
                        raise NotFoundError(f"Variable '{key}' not found")
                    last = _row_to_variable(row)
                    result = await session.execute(
                        sa_delete(VariableModel).where(VariableModel.id == row.id)
                    )
                    if result.rowcount == 0:
                        # removed by a concurrent delete after the lookup
                        raise NotFoundError(f"Variable '{key}' not found")
                    old_value, _ = _audit_values((row.value, row.is_secret), None)
                    await self._recorder.record(session, AuditEntry(
                        action=AuditAction.DELETE,
                        entity_type=AuditEntityType.VARIABLE,
                        entity_id=last.id,
                        old_value=old_value,
                        caller=caller,
                        details={
                            "environment_id": environment_id,
                            "key": key,
                            "was_secret": last.is_secret,
                            "is_secret": None,
                        },
                    ))
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (NotFoundError, AuditWriteError):
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete variable '{key}' in {environment_id}: {type(e).__name__}")
            raise PersistenceError(f"Failed to delete variable '{key}'") from e

        logger.info(f"Deleted variable '{key}' ({last.id}) from {environment_id}")
        return last
