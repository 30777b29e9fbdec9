"""Encryption service for the stored Odoo API key."""

from typing import Optional
from cryptography.fernet import Fernet
from syncbridge.config import settings
from syncbridge.services.sync_result import ConfigurationError


class EncryptionService:
    """Service for encrypting and decrypting credentials at rest."""

    def __init__(self, key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            key: Fernet key (defaults to settings.encryption_key).

        Raises:
            ConfigurationError: If the key is missing or malformed.
        """
        key = key or settings.encryption_key
        if not key:
            raise ConfigurationError(
                "ENCRYPTION_KEY is not set but ODOO_API_KEY_ENCRYPTED is. Generate a key with: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        try:
            self._fernet = Fernet(key.encode())
        except Exception as e:
            raise ConfigurationError(f"Invalid ENCRYPTION_KEY format: {e}")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext string.

        Args:
            plaintext: The string to encrypt.

        Returns:
            The encrypted string (base64 encoded).
        """
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ciphertext string.

        Raises:
            InvalidToken: If the ciphertext is invalid or corrupted.
        """
        return self._fernet.decrypt(ciphertext.encode()).decode()
