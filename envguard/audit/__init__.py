"""Audit trail: append-only, redacted history of every mutation."""
from .audit_recorder import AuditRecorder, AuditEntry, AuditLogEntry, AuditAction, AuditEntityType, REDACTED

__all__ = ["AuditRecorder", "AuditEntry", "AuditLogEntry", "AuditAction", "AuditEntityType", "REDACTED"]
