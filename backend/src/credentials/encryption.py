"""
Credential encryption at rest.

Implements AES-256-GCM with a per-call scrypt-derived key.

Blob layout (hex-encoded, fixed-width header):

    salt (64 bytes) || iv (16 bytes) || auth tag (16 bytes) || ciphertext

SECURITY:
- A fresh random salt and IV are generated for every encryption
- The per-operation key is derived from ENCRYPTION_KEY + salt via scrypt
  (deliberately slow), executed off the event loop
- Tampered or malformed blobs raise IntegrityError, never plaintext
- Plaintext and key material are never logged

The length constants are part of the persisted format. Changing any of them
breaks every blob already stored in the database.

Usage:
    cipher = SecretCipher(settings.encryption_key)

    encrypted = await cipher.encrypt("client-secret")
    plaintext = await cipher.decrypt(encrypted)
"""

import asyncio
import logging
import re
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from src.platform.errors import ConfigurationError, IntegrityError

logger = logging.getLogger(__name__)


SALT_SIZE = 64
IV_SIZE = 16
TAG_SIZE = 16
KEY_SIZE = 32  # AES-256
MIN_MASTER_KEY_LENGTH = 32

# scrypt cost parameters (N, r, p)
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

HEADER_SIZE = SALT_SIZE + IV_SIZE + TAG_SIZE
MIN_ENCRYPTED_LENGTH = HEADER_SIZE * 2

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class SecretCipher:
    """
    Authenticated symmetric encryption for credential fields.

    One instance is created at startup and shared by everything that reads or
    writes secrets. Construction validates the master key so a missing or
    weak key fails the process before any request is served.
    """

    def __init__(self, master_key: Optional[str]):
        """
        Args:
            master_key: Long-lived master secret (ENCRYPTION_KEY)

        Raises:
            ConfigurationError: If the key is missing or shorter than 32 characters
        """
        if not master_key or len(master_key) < MIN_MASTER_KEY_LENGTH:
            logger.error(
                "Encryption key not configured or too short",
                extra={
                    "has_key": bool(master_key),
                    "min_length": MIN_MASTER_KEY_LENGTH,
                }
            )
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be set and at least {MIN_MASTER_KEY_LENGTH} characters long",
                details={"min_length": MIN_MASTER_KEY_LENGTH},
            )
        self._master_key = master_key.encode("utf-8")

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
        return kdf.derive(self._master_key)

    def _encrypt_sync(self, plaintext: str) -> str:
        salt = secrets.token_bytes(SALT_SIZE)
        iv = secrets.token_bytes(IV_SIZE)
        key = self._derive_key(salt)

        # AESGCM.encrypt returns ciphertext + tag concatenated
        ciphertext_with_tag = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext = ciphertext_with_tag[:-TAG_SIZE]
        auth_tag = ciphertext_with_tag[-TAG_SIZE:]

        return (salt + iv + auth_tag + ciphertext).hex()

    def _decrypt_sync(self, blob: str) -> str:
        if len(blob) % 2 != 0 or not _HEX_RE.match(blob):
            raise IntegrityError("Encrypted value is not valid hex")

        data = bytes.fromhex(blob)
        if len(data) < HEADER_SIZE:
            raise IntegrityError("Encrypted value is truncated")

        salt = data[:SALT_SIZE]
        iv = data[SALT_SIZE:SALT_SIZE + IV_SIZE]
        auth_tag = data[SALT_SIZE + IV_SIZE:HEADER_SIZE]
        ciphertext = data[HEADER_SIZE:]

        key = self._derive_key(salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag:
            raise IntegrityError(
                "Decryption failed: data may have been tampered with or the encryption key changed"
            )

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise IntegrityError("Decrypted value is not valid UTF-8")

    async def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret for storage.

        Args:
            plaintext: Value to encrypt (client secret, refresh token, proxy password)

        Returns:
            Hex blob safe for database storage

        Raises:
            ValueError: If plaintext is empty
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty value")

        encrypted = await asyncio.to_thread(self._encrypt_sync, plaintext)
        logger.debug(
            "Secret encrypted",
            extra={"operation": "encrypt", "result": "success"}
        )
        return encrypted

    async def decrypt(self, blob: str) -> str:
        """
        Decrypt a stored secret.

        SECURITY: the returned value must stay in memory for the duration of
        one operation and must NEVER be logged.

        Raises:
            ValueError: If blob is empty
            IntegrityError: If the blob is malformed or fails authentication
        """
        if not blob:
            raise ValueError("Cannot decrypt empty value")

        try:
            decrypted = await asyncio.to_thread(self._decrypt_sync, blob)
        except IntegrityError as e:
            logger.error(
                "Secret decryption failed",
                extra={"operation": "decrypt", "reason": e.message}
            )
            raise
        logger.debug(
            "Secret decrypted",
            extra={"operation": "decrypt", "result": "success"}
        )
        return decrypted

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        """
        Format heuristic: hex alphabet and at least the fixed header length.

        A long hex-looking plaintext will be misclassified as encrypted; the
        credential_kind column and explicit encrypt() calls on every write
        path keep this to legacy rows only.
        """
        if not value:
            return False
        return len(value) >= MIN_ENCRYPTED_LENGTH and bool(_HEX_RE.match(value))

    async def encrypt_if_needed(self, value: Optional[str]) -> Optional[str]:
        """Encrypt unless the value already looks like a blob."""
        if not value:
            return None
        if self.is_encrypted(value):
            return value
        return await self.encrypt(value)

    async def decrypt_if_needed(self, value: Optional[str]) -> Optional[str]:
        """Decrypt blobs; return legacy plaintext values unchanged."""
        if not value:
            return None
        if not self.is_encrypted(value):
            return value
        return await self.decrypt(value)

    async def validate(self) -> bool:
        """
        Round-trip a probe value.

        Call during startup to fail fast if the crypto backend is unusable.
        """
        probe = secrets.token_hex(8)
        if await self.decrypt(await self.encrypt(probe)) != probe:
            raise ConfigurationError("Encryption self-check failed")
        logger.info("Credential encryption validated successfully")
        return True

    @staticmethod
    def generate_master_key() -> str:
        """Generate a random master key suitable for ENCRYPTION_KEY."""
        return secrets.token_urlsafe(48)
