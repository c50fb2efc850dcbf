"""
Token Cipher
Symmetric at-rest encryption for Xero client secrets and OAuth tokens.

Stored format: ``v1:<fernet token>``. Values without a version prefix are
legacy plaintext rows written before encryption was introduced and are
returned unchanged.
"""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.integrations.xero.exceptions import XeroIntegrationError

logger = logging.getLogger(__name__)

CURRENT_VERSION = "v1"
_PREFIX = f"{CURRENT_VERSION}:"


class SecretDecryptionError(XeroIntegrationError):
    """A versioned secret could not be decrypted (wrong or rotated key)."""

    code = "XERO_SECRET_DECRYPTION_FAILED"
    status_code = 500
    default_message = "Stored Xero credentials could not be decrypted."


def _derive_fernet_key(key: str) -> bytes:
    """
    Accept either a Fernet key or an arbitrary passphrase.

    Passphrases are stretched with SHA-256 into a 32-byte urlsafe key.
    """
    raw = key.encode()
    try:
        if len(base64.urlsafe_b64decode(raw)) == 32:
            return raw
    except ValueError:
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())


class SecretCipher:
    """
    Encrypts and decrypts stored secrets.

    Handles:
    - Versioned ciphertext for new writes
    - Pass-through of legacy plaintext values on read
    """

    def __init__(self, key: Optional[str] = None):
        self._fernet = Fernet(_derive_fernet_key(key or settings.token_encryption_key))

    @staticmethod
    def is_encrypted(value: str) -> bool:
        """Check whether a stored value carries the version prefix."""
        return value.startswith(_PREFIX)

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        """Encrypt a secret for storage. None and empty values pass through."""
        if not value:
            return value
        token = self._fernet.encrypt(value.encode()).decode()
        return f"{_PREFIX}{token}"

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored secret.

        Args:
            value: Stored value (versioned ciphertext or legacy plaintext)

        Returns:
            Plaintext secret

        Raises:
            SecretDecryptionError: If a versioned value fails to decrypt
        """
        if not value:
            return value

        if not self.is_encrypted(value):
            # TODO: drop once legacy plaintext rows are re-encrypted by a backfill
            logger.debug(
                "Read legacy plaintext secret (%s)",
                "bearer token" if value.startswith("eyJ") else "opaque value",
            )
            return value

        try:
            return self._fernet.decrypt(value[len(_PREFIX):].encode()).decode()
        except InvalidToken as e:
            logger.error("Failed to decrypt stored Xero secret; encryption key mismatch?")
            raise SecretDecryptionError() from e
