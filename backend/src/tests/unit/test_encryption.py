"""
Unit tests for SecretCipher.

CRITICAL: These tests verify:
1. Round-trip encryption for arbitrary secrets
2. Fixed blob layout (salt || iv || tag || ciphertext, hex)
3. Tampered or foreign blobs raise IntegrityError, never plaintext
4. Missing or short master keys fail at construction
"""

import pytest

from src.credentials.encryption import (
    HEADER_SIZE,
    MIN_ENCRYPTED_LENGTH,
    SecretCipher,
)
from src.platform.errors import ConfigurationError, IntegrityError


class TestSecretCipherConstruction:

    def test_missing_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            SecretCipher(None)

    def test_short_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            SecretCipher("x" * 31)
        assert exc_info.value.details["min_length"] == 32

    def test_minimum_length_key_accepted(self):
        SecretCipher("k" * 32)

    def test_generated_master_key_is_long_enough(self):
        key = SecretCipher.generate_master_key()
        assert len(key) >= 32
        SecretCipher(key)


class TestRoundTrip:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plaintext", [
        "s3cr3t",
        "a",
        "пароль-с-юникодом",
        "x" * 1000,
        "deadbeef" * 40,
    ])
    async def test_decrypt_inverts_encrypt(self, cipher, plaintext):
        blob = await cipher.encrypt(plaintext)
        assert await cipher.decrypt(blob) == plaintext

    @pytest.mark.asyncio
    async def test_blob_layout_and_length(self, cipher):
        blob = await cipher.encrypt("s3cr3t")

        assert "s3cr3t" not in blob
        assert len(blob) == 2 * (HEADER_SIZE + len("s3cr3t"))
        assert len(blob) >= MIN_ENCRYPTED_LENGTH
        int(blob, 16)

    @pytest.mark.asyncio
    async def test_same_plaintext_different_blobs(self, cipher):
        first = await cipher.encrypt("same-value")
        second = await cipher.encrypt("same-value")

        assert first != second
        # fresh salt per call
        assert first[:128] != second[:128]

    @pytest.mark.asyncio
    async def test_empty_values_rejected(self, cipher):
        with pytest.raises(ValueError, match="Cannot encrypt empty"):
            await cipher.encrypt("")
        with pytest.raises(ValueError, match="Cannot decrypt empty"):
            await cipher.decrypt("")

    @pytest.mark.asyncio
    async def test_validate_succeeds(self, cipher):
        assert await cipher.validate() is True


class TestTamperDetection:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("byte_index", [0, 70, 85, 96, 100])
    async def test_flipped_byte_raises_integrity_error(self, cipher, byte_index):
        blob = await cipher.encrypt("s3cr3t-value")
        data = bytearray(bytes.fromhex(blob))
        data[byte_index] ^= 0x01

        with pytest.raises(IntegrityError):
            await cipher.decrypt(data.hex())

    @pytest.mark.asyncio
    async def test_wrong_master_key_raises_integrity_error(self, cipher):
        blob = await cipher.encrypt("s3cr3t")
        other = SecretCipher("another-master-key-that-is-32-chars-long")

        with pytest.raises(IntegrityError):
            await other.decrypt(blob)

    @pytest.mark.asyncio
    async def test_truncated_blob_raises_integrity_error(self, cipher):
        blob = await cipher.encrypt("s3cr3t")
        with pytest.raises(IntegrityError, match="truncated"):
            await cipher.decrypt(blob[:100])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("blob", ["not-hex-at-all", "abc", "zz" * 120])
    async def test_non_hex_raises_integrity_error(self, cipher, blob):
        with pytest.raises(IntegrityError):
            await cipher.decrypt(blob)


class TestIdempotentWrappers:

    def test_is_encrypted_heuristic(self):
        assert SecretCipher.is_encrypted("ab" * 96) is True
        assert SecretCipher.is_encrypted("AB" * 96) is True
        assert SecretCipher.is_encrypted("ab" * 95) is False
        assert SecretCipher.is_encrypted("s3cr3t") is False
        assert SecretCipher.is_encrypted("g" * 200) is False
        assert SecretCipher.is_encrypted(None) is False
        assert SecretCipher.is_encrypted("") is False

    @pytest.mark.asyncio
    async def test_encrypt_if_needed_skips_existing_blob(self, cipher):
        blob = await cipher.encrypt("s3cr3t")
        assert await cipher.encrypt_if_needed(blob) == blob

    @pytest.mark.asyncio
    async def test_encrypt_if_needed_encrypts_plaintext(self, cipher):
        blob = await cipher.encrypt_if_needed("s3cr3t")
        assert SecretCipher.is_encrypted(blob)
        assert await cipher.decrypt(blob) == "s3cr3t"

    @pytest.mark.asyncio
    async def test_decrypt_if_needed_passes_legacy_plaintext(self, cipher):
        assert await cipher.decrypt_if_needed("legacy-plain-secret") == "legacy-plain-secret"

    @pytest.mark.asyncio
    async def test_wrappers_map_empty_to_none(self, cipher):
        assert await cipher.encrypt_if_needed("") is None
        assert await cipher.encrypt_if_needed(None) is None
        assert await cipher.decrypt_if_needed("") is None
        assert await cipher.decrypt_if_needed(None) is None

    @pytest.mark.asyncio
    async def test_decrypt_if_needed_never_returns_tampered_blob(self, cipher):
        blob = await cipher.encrypt("s3cr3t")
        tampered = blob[:-2] + ("00" if blob[-2:] != "00" else "01")

        with pytest.raises(IntegrityError):
            await cipher.decrypt_if_needed(tampered)
