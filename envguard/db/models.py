"""
SQLAlchemy ORM models for EnvGuard.
Maps to the environments, variables and audit_logs tables (Alembic revision 001).
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, String, Text, Integer, Boolean, DateTime,
    CheckConstraint, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from envguard.db.base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Environments ──────────────────────────────────────────────────────────────

class EnvironmentModel(Base):
    """A named namespace that owns variables."""
    __tablename__ = "environments"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: f"env-{uuid.uuid4().hex}"
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Environment id={self.id} name={self.name!r}>"


# ── Variables ─────────────────────────────────────────────────────────────────

class VariableModel(Base):
    """
    A key/value pair scoped to one environment.
    When is_secret is set, value holds a Fernet token and encrypted is True.
    """
    __tablename__ = "variables"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: f"var-{uuid.uuid4().hex}"
    )
    environment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("environments.id"), nullable=False,
    )
    key: Mapped[str] = mapped_column(String(256), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_secret: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tags: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("environment_id", "key", name="uq_variables_environment_key"),
        CheckConstraint("encrypted = is_secret", name="ck_variables_secret_encrypted"),
    )

    def __repr__(self) -> str:
        # value deliberately omitted
        return f"<Variable id={self.id} key={self.key!r} secret={self.is_secret}>"


# ── Audit Log ─────────────────────────────────────────────────────────────────

class AuditLogModel(Base):
    """Append-only record of a mutation. Rows are never updated or deleted."""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_name: Mapped[str] = mapped_column(String(128), default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    details: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), default=dict
    )

    __table_args__ = (
        Index("ix_audit_logs_timestamp", "timestamp"),
        Index("ix_audit_logs_action_entity", "action", "entity_type"),
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} {self.action} {self.entity_type}:{self.entity_id}>"
