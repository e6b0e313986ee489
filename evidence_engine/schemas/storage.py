"""Storage optimization result schemas."""

from __future__ import annotations

from pydantic import BaseModel


class OptimizationResult(BaseModel):
    """Outcome of optimizing one file."""

    filename: str
    original_size: int
    optimized_size: int
    compression_ratio: float
    format: str
    checksum: str
    deduplicated: bool = False
    blob_key: str | None = None
    processing_time_ms: int = 0

    @property
    def saved_bytes(self) -> int:
        return max(self.original_size - self.optimized_size, 0)


class StorageStats(BaseModel):
    """Real counters accumulated by the optimizer and blob store."""

    total_files: int = 0
    total_original_size: int = 0
    total_optimized_size: int = 0
    total_saved: int = 0
    average_compression_ratio: float = 0.0
    duplicates_found: int = 0
    used_bytes: int = 0
    limit_bytes: int = 0

    @property
    def utilization(self) -> float:
        return self.used_bytes / self.limit_bytes if self.limit_bytes else 0.0
