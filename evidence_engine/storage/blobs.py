"""Filesystem blob store for retained evidence bytes.

Blobs are content-addressed by their sha256 hex digest and laid out as
<root>/<first two hex chars>/<digest>. When an encryptor is configured every
blob is sealed with AES-256-GCM and bound to its key as associated data, so a
blob copied under another name fails to decrypt.

File I/O runs in worker threads; the event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
from datetime import UTC, datetime
from pathlib import Path

from cryptography.exceptions import InvalidTag

from evidence_engine.config import settings
from evidence_engine.security.encryption import BlobEncryptor, blob_encryptor

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


def blob_key_for(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class LocalBlobStore:
    """Content-addressed, optionally encrypted local file store."""

    def __init__(self, root: str | Path | None = None, encryptor: BlobEncryptor | None = None) -> None:
        self._root = Path(root or settings.storage.storage_root)
        self._encryptor = encryptor

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            msg = f"Invalid blob key: {key!r}"
            raise ValueError(msg)
        return self._root / key[:2] / key

    async def put(self, data: bytes, key: str | None = None) -> str:
        """Store bytes and return their key.

        Storing the same content again only refreshes the blob's mtime, which
        restarts its retention window.
        """
        blob_key = key or blob_key_for(data)
        path = self._path(blob_key)
        payload = self._encryptor.encrypt(data, blob_key.encode()) if self._encryptor else data

        def _write() -> bool:
            if path.exists():
                os.utime(path)
                return False
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(payload)
            os.replace(tmp, path)
            return True

        if await asyncio.to_thread(_write):
            logger.debug("Stored blob %s (%d bytes)", blob_key[:12], len(data))
        return blob_key

    async def get(self, key: str) -> bytes | None:
        """Return the stored bytes, or None if the blob is missing or unreadable."""
        path = self._path(key)

        def _read() -> bytes | None:
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None

        payload = await asyncio.to_thread(_read)
        if payload is None or self._encryptor is None:
            return payload
        try:
            return self._encryptor.decrypt(payload, key.encode())
        except (InvalidTag, ValueError):
            logger.error("Blob %s failed to decrypt — wrong key or corrupted file", key[:12])
            return None

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _unlink() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        return await asyncio.to_thread(_unlink)

    async def list_older_than(self, cutoff: datetime) -> list[str]:
        """Keys of blobs last stored (or re-stored) before cutoff."""
        threshold = cutoff.timestamp() if cutoff.tzinfo else cutoff.replace(tzinfo=UTC).timestamp()

        def _scan() -> list[str]:
            if not self._root.exists():
                return []
            return sorted(
                path.name
                for path in self._root.glob("*/*")
                if _KEY_RE.match(path.name) and path.stat().st_mtime < threshold
            )

        return await asyncio.to_thread(_scan)

    async def usage(self) -> int:
        """Total bytes on disk under the store root."""

        def _sum() -> int:
            if not self._root.exists():
                return 0
            return sum(path.stat().st_size for path in self._root.glob("*/*") if path.is_file())

        return await asyncio.to_thread(_sum)


# Module-level singleton, encrypted at rest
blob_store = LocalBlobStore(encryptor=blob_encryptor)
