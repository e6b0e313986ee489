"""Job cost model and the daily cost window (cost unit: JPY).

Estimates drive admission control only; actual cost is computed from what
the job really did and is what the daily window accumulates.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from evidence_engine.models.enums import JobType

_MB = 1024 * 1024

OCR_COST_PER_MB = 0.5
OCR_COST_PER_SECOND = 0.1
OCR_MIN_COST = 0.1
TRANSFORM_BASE_COST = 0.05
TRANSFORM_COST_PER_TABLE = 0.1
TRANSFORM_COST_PER_MB = 0.01
COMPRESS_COST_PER_FILE = 0.05
STORAGE_COST_PER_FILE = 0.02

# Slack for float accumulation when comparing against the ceiling
_EPSILON = 1e-9


def ocr_cost(size_bytes: int, elapsed_seconds: float = 0.0) -> float:
    """Size in whole MB plus elapsed time in whole seconds, with a floor."""
    megabytes = math.ceil(max(size_bytes, 0) / _MB)
    seconds = math.ceil(max(elapsed_seconds, 0.0))
    return round(max(OCR_MIN_COST, megabytes * OCR_COST_PER_MB + seconds * OCR_COST_PER_SECOND), 4)


def transform_cost(table_count: int, size_bytes: int = 0) -> float:
    megabytes = math.ceil(max(size_bytes, 0) / _MB)
    return round(
        TRANSFORM_BASE_COST + max(table_count, 0) * TRANSFORM_COST_PER_TABLE + megabytes * TRANSFORM_COST_PER_MB,
        4,
    )


def _file_count(payload: dict[str, Any]) -> int:
    files = payload.get("files")
    if isinstance(files, list):
        return max(len(files), 1)
    return max(int(payload.get("file_count", 1)), 1)


def estimate_job_cost(job_type: JobType, payload: dict[str, Any]) -> float:
    """Advisory cost used for admission."""
    if job_type == JobType.OCR:
        return ocr_cost(int(payload.get("size", 0)))
    if job_type == JobType.TRANSFORM:
        return transform_cost(int(payload.get("table_count", 1)), int(payload.get("size", 0)))
    if job_type == JobType.COMPRESS:
        return round(COMPRESS_COST_PER_FILE * _file_count(payload), 4)
    return round(STORAGE_COST_PER_FILE * _file_count(payload), 4)


def actual_job_cost(job_type: JobType, payload: dict[str, Any], elapsed_seconds: float, result: Any) -> float:
    """Cost recorded on completion. Handlers may report counts in a dict result."""
    facts = dict(payload)
    if isinstance(result, dict):
        facts.update({k: v for k, v in result.items() if k in ("size", "table_count", "file_count", "files")})
    if job_type == JobType.OCR:
        return ocr_cost(int(facts.get("size", 0)), elapsed_seconds)
    return estimate_job_cost(job_type, facts)


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class DailyCostWindow:
    """Cost spent since the last local midnight.

    The window is reset lazily: every admission decision calls
    reset_if_window_elapsed() first, so no background timer touches it.
    """

    limit: float
    clock: Callable[[], datetime] = _local_now
    spent: float = 0.0
    window_start: date = field(init=False)

    def __post_init__(self) -> None:
        self.window_start = self.clock().date()

    def reset_if_window_elapsed(self, now: datetime | None = None) -> bool:
        """Zero the counter when a midnight boundary has passed. Returns True on reset."""
        today = (now or self.clock()).date()
        if today != self.window_start:
            self.window_start = today
            self.spent = 0.0
            return True
        return False

    def can_admit(self, estimate: float, reserved: float = 0.0) -> bool:
        """Would spent + reserved + estimate stay within the ceiling?"""
        return self.spent + reserved + estimate <= self.limit + _EPSILON

    def record(self, cost: float) -> None:
        self.spent += cost

    @property
    def remaining(self) -> float:
        return max(self.limit - self.spent, 0.0)
