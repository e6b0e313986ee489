"""Tests for AES-256-GCM blob encryption."""

from __future__ import annotations

import base64
import os

import pytest
from cryptography.exceptions import InvalidTag

from evidence_engine.security.encryption import BlobEncryptor, decode_key


@pytest.fixture
def encryptor() -> BlobEncryptor:
    """Create a BlobEncryptor with a random key."""
    return BlobEncryptor(os.urandom(32))


class TestBlobEncryptor:
    """Round-trip and edge-case tests for BlobEncryptor."""

    def test_encrypt_decrypt_round_trip(self, encryptor: BlobEncryptor) -> None:
        plaintext = "売上高,4500億円\n".encode()
        sealed = encryptor.encrypt(plaintext)
        assert plaintext not in sealed
        assert encryptor.decrypt(sealed) == plaintext

    def test_different_nonces(self, encryptor: BlobEncryptor) -> None:
        """Two encryptions of the same bytes should produce different blobs."""
        s1 = encryptor.encrypt(b"same bytes")
        s2 = encryptor.encrypt(b"same bytes")
        assert s1 != s2
        assert encryptor.decrypt(s1) == encryptor.decrypt(s2) == b"same bytes"

    def test_empty_payload(self, encryptor: BlobEncryptor) -> None:
        assert encryptor.decrypt(encryptor.encrypt(b"")) == b""

    def test_sealed_size(self, encryptor: BlobEncryptor) -> None:
        # nonce (12) + tag (16)
        assert len(encryptor.encrypt(b"x" * 100)) == 128

    def test_invalid_key_length(self) -> None:
        with pytest.raises(ValueError, match="32-byte"):
            BlobEncryptor(b"short")

    def test_too_short(self, encryptor: BlobEncryptor) -> None:
        with pytest.raises(ValueError, match="too short"):
            encryptor.decrypt(b"short")

    def test_tampered_blob(self, encryptor: BlobEncryptor) -> None:
        sealed = bytearray(encryptor.encrypt(b"figures"))
        sealed[-1] ^= 0xFF
        with pytest.raises(InvalidTag):
            encryptor.decrypt(bytes(sealed))

    def test_wrong_key(self) -> None:
        sealed = BlobEncryptor(os.urandom(32)).encrypt(b"secret")
        with pytest.raises(InvalidTag):
            BlobEncryptor(os.urandom(32)).decrypt(sealed)

    def test_associated_data_must_match(self, encryptor: BlobEncryptor) -> None:
        sealed = encryptor.encrypt(b"secret", associated_data=b"key-a")
        assert encryptor.decrypt(sealed, associated_data=b"key-a") == b"secret"
        with pytest.raises(InvalidTag):
            encryptor.decrypt(sealed, associated_data=b"key-b")


class TestDecodeKey:
    def test_valid(self) -> None:
        key = os.urandom(32)
        assert decode_key(base64.b64encode(key).decode()) == key

    @pytest.mark.parametrize(
        "raw",
        [None, "", "not base64!!", base64.b64encode(b"too short").decode()],
    )
    def test_rejected(self, raw) -> None:
        assert decode_key(raw) is None
