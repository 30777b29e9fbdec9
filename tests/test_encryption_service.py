"""Tests for encryption service."""

import os
import pytest
from unittest.mock import patch
from cryptography.fernet import Fernet, InvalidToken

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from syncbridge.services.encryption_service import EncryptionService
from syncbridge.services.sync_result import ConfigurationError


def test_encryption_service_encrypt_decrypt():
    """Test that encryption service can encrypt and decrypt data."""
    service = EncryptionService(Fernet.generate_key().decode())

    plaintext = "odoo-api-key-12345"
    encrypted = service.encrypt(plaintext)

    # Encrypted should be different from plaintext
    assert encrypted != plaintext
    assert service.decrypt(encrypted) == plaintext


def test_encryption_service_uses_configured_key():
    """Test that the key defaults to settings.encryption_key."""
    key = Fernet.generate_key().decode()
    with patch("syncbridge.services.encryption_service.settings") as mock_settings:
        mock_settings.encryption_key = key
        service = EncryptionService()

    assert EncryptionService(key).decrypt(service.encrypt("secret")) == "secret"


def test_encryption_service_missing_key():
    """Test that a missing key raises a configuration error."""
    with patch("syncbridge.services.encryption_service.settings") as mock_settings:
        mock_settings.encryption_key = None
        with pytest.raises(ConfigurationError, match="ENCRYPTION_KEY"):
            EncryptionService()


def test_encryption_service_invalid_key():
    """Test that a malformed key raises a configuration error."""
    with pytest.raises(ConfigurationError, match="Invalid ENCRYPTION_KEY"):
        EncryptionService("not-a-fernet-key")


def test_decrypt_with_wrong_key_fails():
    """Test that data encrypted with one key cannot be read with another."""
    encrypted = EncryptionService(Fernet.generate_key().decode()).encrypt("secret")

    with pytest.raises(InvalidToken):
        EncryptionService(Fernet.generate_key().decode()).decrypt(encrypted)
