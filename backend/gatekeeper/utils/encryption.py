"""Encryption utilities for secrets stored in the settings table.

The OIDC client secret is the only setting marked ``encrypted``. It is stored
with Fernet (AES-128-CBC + HMAC) when ``GATEKEEPER_ENCRYPTION_KEY`` is set.
"""

import os
import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "GATEKEEPER_ENCRYPTION_KEY"


class EncryptionService:
    """Encrypt and decrypt setting values with a Fernet key.

    Key Generation:
        python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            encryption_key: Base64-encoded Fernet key (default: from env var)

        Raises:
            ValueError: If encryption key is not configured or invalid
        """
        key_str = encryption_key or os.getenv(ENCRYPTION_KEY_ENV)

        if not key_str:
            raise ValueError(
                f"Encryption key not configured. Set {ENCRYPTION_KEY_ENV} environment variable."
            )

        try:
            self.cipher = Fernet(key_str.encode("utf-8"))
        except (ValueError, TypeError) as e:
            raise ValueError(
                f"Invalid encryption key format: {e}. "
                "Key must be a valid base64-encoded Fernet key (44 characters)."
            ) from None

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string. Empty strings are stored as-is."""
        if plaintext is None:
            raise ValueError("Cannot encrypt None value")

        if plaintext == "":
            return ""

        return self.cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt an encrypted string.

        Raises:
            ValueError: If ciphertext is None, was tampered with, or the key changed
        """
        if ciphertext is None:
            raise ValueError("Cannot decrypt None value")

        if ciphertext == "":
            return ""

        try:
            return self.cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("Decryption failed: Invalid token (wrong key or tampered data)")
            raise ValueError(
                "Failed to decrypt data. The encryption key has changed or the value "
                "was tampered with. Re-enter the value in the settings store."
            ) from None

    def is_encrypted(self, value: str) -> bool:
        """Heuristic check for a Fernet token (version byte 0x80 encodes as 'g')."""
        if not value or len(value) < 7:
            return False
        return value.startswith("gAAAAA")


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get or create the process-wide encryption service.

    Raises:
        ValueError: If encryption key is not configured
    """
    global _encryption_service

    if _encryption_service is None:
        _encryption_service = EncryptionService()

    return _encryption_service


def is_encryption_configured() -> bool:
    """Check if an encryption key is present in the environment."""
    return bool(os.getenv(ENCRYPTION_KEY_ENV))
