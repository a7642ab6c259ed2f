"""
Credential Decryption for Mail Accounts

Two kinds of secrets are stored alongside mail accounts:

- IMAP passwords for relay/receive-only accounts, stored as an
  AES-256-CBC ciphertext (hex) plus its initialization vector (hex),
  encrypted with the process-wide EMAIL_ENCRYPTION_KEY.
- OAuth token sets for API accounts, stored as a Fernet token produced by
  the CredentialVault.

Key material is always supplied through a KeyProvider so the providers never
read ambient environment state themselves.
"""

import base64
import binascii
import json
import logging
import os
from typing import Any, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from inboxsync.core.config import SyncSettings, get_settings

logger = logging.getLogger(__name__)

AES_KEY_BYTES = 32
AES_BLOCK_BITS = 128


class CredentialVaultError(Exception):
    """Base exception for credential vault operations."""
    pass


class EncryptionError(CredentialVaultError):
    """Error during encryption."""
    pass


class DecryptionError(CredentialVaultError):
    """Error during decryption."""
    pass


class KeyProvider(Protocol):
    """Source of the symmetric key used for stored IMAP credentials."""

    def get_key(self) -> bytes:
        ...


class StaticKeyProvider:
    """Key provider backed by a fixed hex-encoded key."""

    def __init__(self, hex_key: Optional[str]):
        self._hex_key = hex_key

    def get_key(self) -> bytes:
        return _decode_hex_key(self._hex_key)


class SettingsKeyProvider:
    """Key provider reading EMAIL_ENCRYPTION_KEY from sync settings."""

    def __init__(self, settings: Optional[SyncSettings] = None):
        self._settings = settings

    def get_key(self) -> bytes:
        settings = self._settings or get_settings()
        return _decode_hex_key(settings.email_encryption_key)


def _decode_hex_key(hex_key: Optional[str]) -> bytes:
    if not hex_key:
        raise DecryptionError("Encryption key is not configured")
    try:
        key = bytes.fromhex(hex_key.strip())
    except ValueError:
        raise DecryptionError("Encryption key is not valid hex")
    if len(key) != AES_KEY_BYTES:
        raise DecryptionError(
            f"Encryption key must be {AES_KEY_BYTES} bytes, got {len(key)}"
        )
    return key


class ImapCredentialCipher:
    """
    AES-256-CBC cipher for stored IMAP credentials.

    The plaintext is a JSON object such as {"password": "..."}; the
    ciphertext and IV are both stored hex-encoded.
    """

    def __init__(self, key_provider: KeyProvider):
        self.key_provider = key_provider

    def encrypt(self, payload: dict[str, Any]) -> tuple[str, str]:
        """
        Encrypt a credential payload.

        Returns:
            Tuple of (ciphertext hex, iv hex)
        """
        try:
            key = self.key_provider.get_key()
        except DecryptionError as e:
            raise EncryptionError(str(e))

        iv = os.urandom(AES_BLOCK_BITS // 8)
        padder = padding.PKCS7(AES_BLOCK_BITS).padder()
        data = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        encrypted = encryptor.update(data) + encryptor.finalize()
        return encrypted.hex(), iv.hex()

    def decrypt(self, encrypted_hex: str, iv_hex: Optional[str]) -> dict[str, Any]:
        """
        Decrypt a stored credential blob.

        Raises:
            DecryptionError: On a missing IV, a wrong key or corrupted data
        """
        key = self.key_provider.get_key()

        if not iv_hex:
            raise DecryptionError("Credential IV is missing")

        try:
            iv = bytes.fromhex(iv_hex)
            encrypted = bytes.fromhex(encrypted_hex)
        except (ValueError, TypeError):
            raise DecryptionError("Credential blob is not valid hex")

        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(encrypted) + decryptor.finalize()
            unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
            decrypted = unpadder.update(padded) + unpadder.finalize()
            return json.loads(decrypted.decode("utf-8"))
        except ValueError as e:
            # Bad padding, bad IV length, undecodable bytes and invalid JSON
            # all surface as ValueError subclasses.
            logger.error(f"IMAP credential decryption failed: {e}")
            raise DecryptionError("Failed to decrypt IMAP credentials")


class CredentialVault:
    """
    Fernet vault for OAuth token sets.

    Usage:
        vault = CredentialVault(master_key="...")
        encrypted = vault.encrypt({"access_token": "...", "refresh_token": "..."})
        tokens = vault.decrypt(encrypted)
    """

    def __init__(
        self,
        master_key: Optional[str] = None,
        salt: Optional[str] = None,
        settings: Optional[SyncSettings] = None,
    ):
        settings = settings or get_settings()
        key = master_key or settings.credential_vault_key
        if not key:
            raise CredentialVaultError("Credential vault key is not configured")

        salt_value = salt or settings.credential_vault_salt
        self._cipher = Fernet(self._derive_key(key, salt_value.encode()))

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive a Fernet-compatible key from a password."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def encrypt(self, data: dict[str, Any]) -> str:
        """Encrypt a dictionary of credentials into a base64 string."""
        try:
            json_data = json.dumps(data, default=str)
            encrypted = self._cipher.encrypt(json_data.encode())
            return base64.urlsafe_b64encode(encrypted).decode()
        except (TypeError, ValueError) as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt credentials: {e}")

    def decrypt(self, encrypted_data: str) -> dict[str, Any]:
        """
        Decrypt an encrypted credential string.

        Raises:
            DecryptionError: If decryption fails
        """
        try:
            encrypted_bytes = base64.urlsafe_b64decode(encrypted_data.encode())
            decrypted = self._cipher.decrypt(encrypted_bytes)
            return json.loads(decrypted.decode())
        except InvalidToken:
            logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
            raise DecryptionError("Failed to decrypt: Invalid key or corrupted data")
        except (binascii.Error, ValueError) as e:
            logger.error(f"Decryption failed: {e}")
            raise DecryptionError("Failed to decrypt: Invalid data format")

    def encrypt_field(self, value: str) -> str:
        """Encrypt a single string field."""
        return self.encrypt({"value": value})

    def decrypt_field(self, encrypted_data: str) -> str:
        """Decrypt a single encrypted field."""
        return self.decrypt(encrypted_data).get("value", "")


__all__ = [
    "CredentialVault",
    "CredentialVaultError",
    "EncryptionError",
    "DecryptionError",
    "KeyProvider",
    "StaticKeyProvider",
    "SettingsKeyProvider",
    "ImapCredentialCipher",
]
