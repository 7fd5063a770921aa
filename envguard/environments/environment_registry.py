"""
Environment Registry: named environments that own variables.
Variables are addressed by environment name at the API boundary and by
environment id internally; resolve() bridges the two.
"""

import json
import logging
from datetime import datetime
from typing import List

from pydantic import BaseModel
from sqlalchemy import func, select, delete as sa_delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from envguard.audit.audit_recorder import (
    AuditAction, AuditEntityType, AuditEntry, AuditRecorder,
)
from envguard.auth.identity import CallerIdentity, require_identity
from envguard.db.models import EnvironmentModel, VariableModel
from envguard.errors import (
    AuditWriteError, ConflictError, DuplicateNameError, NotFoundError,
    PersistenceError, ValidationError,
)

logger = logging.getLogger(__name__)


class Environment(BaseModel):
    id: str
    name: str
    description: str = ""
    created_at: datetime


def _row_to_environment(row: EnvironmentModel) -> Environment:
    return Environment(
        id=row.id, name=row.name,
        description=row.description or "", created_at=row.created_at,
    )


class EnvironmentRegistry:
    """CRUD over named environments."""

    def __init__(self, session_factory: async_sessionmaker, recorder: AuditRecorder):
        self._session_factory = session_factory
        self._recorder = recorder

    async def list(self) -> List[Environment]:
        """All environments ordered by name."""
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(
                    select(EnvironmentModel).order_by(EnvironmentModel.name)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to list environments") from e
        return [_row_to_environment(r) for r in rows]

    async def resolve(self, name: str) -> Environment:
        """Look up an environment by its unique name."""
        try:
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(EnvironmentModel).where(EnvironmentModel.name == name)
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to resolve environment '{name}'") from e
        if not row:
            raise NotFoundError(f"Environment '{name}' not found")
        return _row_to_environment(row)

    async def create(self, name: str, description: str = "", *,
                     caller: CallerIdentity) -> Environment:
        """Create a new environment. Names are unique."""
        if not name:
            raise ValidationError("Name is required")
        require_identity(caller)
        description = description or ""

        try:
            async with self._session_factory() as session:
                try:
                    existing = (await session.execute(
                        select(EnvironmentModel.id).where(EnvironmentModel.name == name)
                    )).scalar_one_or_none()
                    if existing:
                        raise DuplicateNameError(f"Environment '{name}' already exists")
                    row = EnvironmentModel(name=name, description=description)
                    session.add(row)
                    await session.flush()
                    await self._recorder.record(session, AuditEntry(
                        action=AuditAction.CREATE,
                        entity_type=AuditEntityType.ENVIRONMENT,
                        entity_id=row.id,
                        new_value=json.dumps({"name": name, "description": description}),
                        caller=caller,
                    ))
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except IntegrityError as e:
            # lost a race with a concurrent create of the same name
            raise DuplicateNameError(f"Environment '{name}' already exists") from e
        except (DuplicateNameError, AuditWriteError):
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to create environment '{name}': {type(e).__name__}")
            raise PersistenceError(f"Failed to create environment '{name}'") from e

        logger.info(f"Created environment {row.id} ({name})")
        return _row_to_environment(row)

    async def delete(self, name: str, *, caller: CallerIdentity) -> Environment:
        """
        Delete an environment. Refused with ConflictError while it still owns
        variables; delete those first.
        """
        require_identity(caller)
        try:
            async with self._session_factory() as session:
                try:
                    row = (await session.execute(
                        select(EnvironmentModel).where(EnvironmentModel.name == name)
                        .with_for_update()
                    )).scalar_one_or_none()
                    if not row:
                        raise NotFoundError(f"Environment '{name}' not found")
                    owned = (await session.execute(
                        select(func.count(VariableModel.id))
                        .where(VariableModel.environment_id == row.id)
                    )).scalar_one()
                    if owned:
                        raise ConflictError(
                            f"Environment '{name}' still has {owned} variable(s)"
                        )
                    last = _row_to_environment(row)
                    result = await session.execute(
                        sa_delete(EnvironmentModel).where(EnvironmentModel.id == row.id)
                    )
                    if result.rowcount == 0:
                        raise NotFoundError(f"Environment '{name}' not found")
                    await self._recorder.record(session, AuditEntry(
                        action=AuditAction.DELETE,
                        entity_type=AuditEntityType.ENVIRONMENT,
                        entity_id=last.id,
                        old_value=json.dumps({"name": last.name, "description": last.description}),
                        caller=caller,
                    ))
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except IntegrityError as e:
            # a variable was added concurrently; the FK blocks the delete
            raise ConflictError(f"Environment '{name}' still has variables") from e
        except (NotFoundError, ConflictError, AuditWriteError):
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete environment '{name}': {type(e).__name__}")
            raise PersistenceError(f"Failed to delete environment '{name}'") from e

        logger.info(f"Deleted environment {last.id} ({name})")
        return last
