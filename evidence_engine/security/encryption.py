"""AES-256-GCM encryption for retained evidence files at rest.

Uses 12-byte random nonces (96-bit, NIST recommended for GCM).
Stored format: nonce || ciphertext || tag (raw bytes, no encoding).

Usage:
    from evidence_engine.security.encryption import blob_encryptor

    sealed = blob_encryptor.encrypt(raw_bytes, associated_data=b"sha256-hex")
    raw_bytes = blob_encryptor.decrypt(sealed, associated_data=b"sha256-hex")
"""

from __future__ import annotations

import base64
import logging
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from evidence_engine.config import settings

logger = logging.getLogger(__name__)

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM
_TAG_SIZE = 16


class BlobEncryptor:
    """AES-256-GCM encryptor for whole files.

    Stateless apart from the key; each encrypt call generates a fresh nonce.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            msg = f"AES-256 requires a 32-byte key, got {len(key)} bytes"
            raise ValueError(msg)
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
        """Encrypt bytes. Returns nonce + ciphertext + tag."""
        nonce = os.urandom(_NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, associated_data)

    def decrypt(self, sealed: bytes, associated_data: bytes | None = None) -> bytes:
        """Decrypt bytes produced by encrypt()."""
        if len(sealed) < _NONCE_SIZE + _TAG_SIZE:
            msg = "Invalid encrypted blob: too short"
            raise ValueError(msg)
        return self._aesgcm.decrypt(sealed[:_NONCE_SIZE], sealed[_NONCE_SIZE:], associated_data)


def decode_key(raw: str | None) -> bytes | None:
    """Decode a base64 ENCRYPTION_KEY. None when unset, malformed or not 32 bytes."""
    if not raw:
        return None
    try:
        key = base64.b64decode(raw, validate=True)
    except ValueError:
        return None
    return key if len(key) == 32 else None


def _configured_encryptor() -> BlobEncryptor:
    key = decode_key(settings.security.encryption_key)
    if key is None:
        # Retained blobs written under an ephemeral key become unreadable after restart
        logger.warning("ENCRYPTION_KEY missing or invalid — retained evidence uses an ephemeral key")
        key = os.urandom(32)
    return BlobEncryptor(key)


# Module-level singleton
blob_encryptor = _configured_encryptor()
