"""Storage optimization — image recompression, text gzip and dedup.

Counters behind get_storage_stats() are accumulated from real work; disk
usage comes from the blob store.
"""

from __future__ import annotations

import asyncio
import gzip
import inspect
import io
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from PIL import Image, ImageOps, UnidentifiedImageError

from evidence_engine.config import settings
from evidence_engine.exceptions import ValidationError
from evidence_engine.formats import resolve_mime
from evidence_engine.schemas.storage import OptimizationResult, StorageStats
from evidence_engine.security.scanner import calculate_file_hash
from evidence_engine.storage.blobs import LocalBlobStore, blob_store

logger = logging.getLogger(__name__)

_COMPRESSIBLE_MARKERS = ("text", "json", "csv", "xml")

# (done, total) → None, sync or async
ProgressCallback = Callable[[int, int], Any]


def _encode_image(
    data: bytes,
    max_side: int,
    quality: int,
    fmt: str | None,
) -> tuple[bytes, str, dict[str, int]]:
    """Downscale and re-encode. Returns (bytes, format, original dimensions)."""
    try:
        with Image.open(io.BytesIO(data)) as opened:
            transposed = ImageOps.exif_transpose(opened)
            img = transposed if transposed is not None else opened.copy()
    except (UnidentifiedImageError, OSError) as exc:
        msg = f"Cannot optimize image: {exc}"
        raise ValidationError(msg) from exc

    dimensions = {"width": img.width, "height": img.height}
    if max(img.size) > max_side:
        img.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)

    has_alpha = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
    target = (fmt or ("png" if has_alpha else "jpeg")).lower()

    out = io.BytesIO()
    if target in ("jpeg", "jpg"):
        target = "jpeg"
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.save(out, format="JPEG", quality=quality, optimize=True, progressive=True)
    elif target == "png":
        img.save(out, format="PNG", optimize=True, compress_level=9)
    elif target == "webp":
        img.save(out, format="WEBP", quality=quality)
    else:
        msg = f"Unsupported output format: {fmt}"
        raise ValidationError(msg)
    return out.getvalue(), target, dimensions


class StorageOptimizer:
    """Shrinks files before they are retained, deduplicating by checksum."""

    def __init__(
        self,
        store: LocalBlobStore | None = None,
        max_file_size: int | None = None,
        image_quality: int | None = None,
        image_max_side: int | None = None,
        limit_bytes: int | None = None,
    ) -> None:
        cfg = settings.storage
        self._store = store
        self._max_file_size = max_file_size or cfg.storage_max_file_size_mb * 1024 * 1024
        self._quality = image_quality or cfg.storage_image_quality
        self._max_side = image_max_side or cfg.storage_image_max_side
        self._limit_bytes = limit_bytes or cfg.limit_bytes

        self._checksum_cache: dict[str, OptimizationResult] = {}
        self._total_files = 0
        self._total_original = 0
        self._total_optimized = 0
        self._ratio_sum = 0.0
        self._duplicates = 0

    async def optimize_image(
        self,
        data: bytes,
        filename: str,
        max_side: int | None = None,
        quality: int | None = None,
        fmt: str | None = None,
    ) -> OptimizationResult:
        """Downscale and recompress an image. Keeps the original bytes if re-encoding grows them.

        Raises:
            ValidationError: File too large or not a decodable image.
        """
        self._check_size(data)
        start = time.monotonic()
        checksum = calculate_file_hash(data)
        if cached := self._dedup(checksum, filename):
            return cached

        encoded, fmt_used, _ = await asyncio.to_thread(
            _encode_image, data, max_side or self._max_side, quality or self._quality, fmt,
        )
        if len(encoded) >= len(data) and fmt is None:
            encoded, fmt_used = data, "original"

        return await self._record(data, encoded, filename, fmt_used, checksum, start)

    async def optimize_file(self, data: bytes, filename: str, mime_type: str | None = None) -> OptimizationResult:
        """Optimize by type: images recompressed, text gzipped, everything else stored as-is."""
        self._check_size(data)
        mime = resolve_mime(filename, mime_type)
        if mime.startswith("image/"):
            return await self.optimize_image(data, filename)

        start = time.monotonic()
        checksum = calculate_file_hash(data)
        if cached := self._dedup(checksum, filename):
            return cached

        encoded, fmt_used = data, "original"
        if any(marker in mime for marker in _COMPRESSIBLE_MARKERS):
            compressed = await asyncio.to_thread(gzip.compress, data, 9)
            if len(compressed) < len(data):
                encoded, fmt_used = compressed, "gzip"

        return await self._record(data, encoded, filename, fmt_used, checksum, start)

    async def batch_optimize(
        self,
        files: Sequence[tuple[bytes, str, str | None]],
        max_concurrent: int = 3,
        progress_callback: ProgressCallback | None = None,
    ) -> list[OptimizationResult]:
        """Optimize (data, filename, mime_type) triples concurrently.

        Failed files are logged and left out; successes keep input order.
        """
        semaphore = asyncio.Semaphore(max(max_concurrent, 1))
        done = 0
        total = len(files)

        async def _one(data: bytes, filename: str, mime_type: str | None) -> OptimizationResult | None:
            nonlocal done
            async with semaphore:
                try:
                    return await self.optimize_file(data, filename, mime_type)
                except ValidationError as exc:
                    logger.warning("Skipping %s: %s", filename, exc)
                    return None
                finally:
                    done += 1
                    if progress_callback is not None:
                        outcome = progress_callback(done, total)
                        if inspect.isawaitable(outcome):
                            await outcome

        results = await asyncio.gather(*[_one(*f) for f in files])
        optimized = [r for r in results if r is not None]
        logger.info("Batch optimized %d/%d files", len(optimized), total)
        return optimized

    async def get_storage_stats(self) -> StorageStats:
        used = await self._store.usage() if self._store else self._total_optimized
        return StorageStats(
            total_files=self._total_files,
            total_original_size=self._total_original,
            total_optimized_size=self._total_optimized,
            total_saved=max(self._total_original - self._total_optimized, 0),
            average_compression_ratio=round(self._ratio_sum / self._total_files, 4) if self._total_files else 0.0,
            duplicates_found=self._duplicates,
            used_bytes=used,
            limit_bytes=self._limit_bytes,
        )

    # ── Internals ────────────────────────────────────────────────────

    def _check_size(self, data: bytes) -> None:
        if len(data) > self._max_file_size:
            msg = f"File too large: {len(data)} bytes exceeds limit of {self._max_file_size} bytes"
            raise ValidationError(msg)

    def _dedup(self, checksum: str, filename: str) -> OptimizationResult | None:
        previous = self._checksum_cache.get(checksum)
        if previous is None:
            return None
        self._duplicates += 1
        logger.info("Duplicate file %s matches %s", filename, previous.filename)
        return previous.model_copy(update={"filename": filename, "deduplicated": True, "processing_time_ms": 0})

    async def _record(
        self,
        original: bytes,
        encoded: bytes,
        filename: str,
        fmt: str,
        checksum: str,
        start: float,
    ) -> OptimizationResult:
        blob_key = await self._store.put(encoded) if self._store else None
        ratio = len(encoded) / len(original) if original else 1.0
        result = OptimizationResult(
            filename=filename,
            original_size=len(original),
            optimized_size=len(encoded),
            compression_ratio=round(ratio, 4),
            format=fmt,
            checksum=checksum,
            blob_key=blob_key,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )
        self._checksum_cache[checksum] = result
        self._total_files += 1
        self._total_original += len(original)
        self._total_optimized += len(encoded)
        self._ratio_sum += ratio

        logger.info(
            "Optimized %s: %d -> %d bytes (%.1f%%, %s)",
            filename,
            len(original),
            len(encoded),
            ratio * 100,
            fmt,
        )
        return result


# Module-level singleton
storage_optimizer = StorageOptimizer(store=blob_store)
