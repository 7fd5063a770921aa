"""
Fernet-based encryption for secret variable values at rest.

Usage:
    from envguard.utils.crypto import Cipher

    cipher = Cipher(master_key)
    token = cipher.encrypt("s3cr3t")   # → base64 Fernet token string
    plain = cipher.decrypt(token)      # → "s3cr3t"

The master key is owned by the Cipher instance. Build the process-wide one with
Cipher.from_settings(); tests construct their own with a fresh key.
"""

import base64
import binascii
import hashlib
import logging
from typing import NamedTuple, Union

from cryptography.fernet import Fernet, InvalidToken

from envguard.errors import DecryptionError

logger = logging.getLogger(__name__)


class StoredPayload(NamedTuple):
    """What actually gets persisted for a variable value."""
    value: str
    encrypted: bool


def _fernet_key(master_key: Union[str, bytes]) -> bytes:
    """Accept a Fernet key as-is, stretch anything else with SHA-256."""
    raw = master_key.encode() if isinstance(master_key, str) else master_key
    if not raw:
        raise ValueError("master key must not be empty")
    try:
        Fernet(raw)
        return raw
    except (ValueError, binascii.Error):
        digest = hashlib.sha256(raw).digest()
        return base64.urlsafe_b64encode(digest)


class Cipher:
    """Symmetric encrypt/decrypt keyed by a single master key."""

    def __init__(self, master_key: Union[str, bytes]):
        self._fernet = Fernet(_fernet_key(master_key))

    def __repr__(self) -> str:
        return "<Cipher fernet>"

    @classmethod
    def from_settings(cls, app_settings) -> "Cipher":
        key = app_settings.encryption_key
        if not key:
            if not app_settings.is_dev:
                raise ValueError(
                    "ENCRYPTION_KEY not set. Generate one with: "
                    'python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
                )
            # Derive a deterministic key from DATABASE_URL for dev convenience
            logger.warning(
                "ENCRYPTION_KEY not set: using derived key from DATABASE_URL. "
                "Set ENCRYPTION_KEY in production!"
            )
            key = app_settings.database_url
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string → Fernet token (base64 string)."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a Fernet token → plaintext string."""
        token = ciphertext.encode("utf-8") if isinstance(ciphertext, str) else ciphertext
        # Reject non-canonical encodings, otherwise a flipped padding bit in the
        # last base64 character would decode to the same token.
        try:
            raw = base64.b64decode(token, altchars=b"-_", validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError("Failed to decrypt value: malformed token") from None
        if base64.urlsafe_b64encode(raw) != token:
            raise DecryptionError("Failed to decrypt value: malformed token")
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except (InvalidToken, UnicodeDecodeError):
            raise DecryptionError("Failed to decrypt value: key mismatch or corrupted data") from None

    def to_stored(self, value: str, is_secret: bool) -> StoredPayload:
        """Map (value, is_secret) to the payload that gets persisted."""
        if is_secret:
            return StoredPayload(self.encrypt(value), True)
        return StoredPayload(value, False)
