"""
Error taxonomy for the EnvGuard core.

The core raises these; the HTTP layer maps them to status codes. Messages
name environments, keys and ids only, never variable values.
"""


class EnvGuardError(Exception):
    """Base class for every error the core surfaces."""


class NotFoundError(EnvGuardError):
    """Environment or variable is absent."""


class ValidationError(EnvGuardError):
    """A required field or the caller identity is missing or malformed."""


class DuplicateNameError(EnvGuardError):
    """An environment with the requested name already exists."""


class ConflictError(EnvGuardError):
    """A concurrent write on the same record could not be resolved, or the
    record is still referenced and cannot be removed."""


class DecryptionError(EnvGuardError):
    """Ciphertext cannot be read with the current master key."""


class PersistenceError(EnvGuardError):
    """Underlying storage failure."""


class AuditWriteError(PersistenceError):
    """The audit entry for a mutation could not be written."""
