"""Processing queue schemas — jobs live only in memory."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from evidence_engine.models.enums import JobPriority, JobState, JobType


class JobSpec(BaseModel):
    """What a caller submits to add_job. Unset fields fall back to queue defaults."""

    type: JobType
    priority: JobPriority = JobPriority.MEDIUM
    payload: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = Field(default=None, ge=0)
    timeout_ms: int | None = Field(default=None, gt=0)
    estimated_cost: float | None = Field(default=None, ge=0.0)


class ProcessingJob(BaseModel):
    """One unit of queued work. Occupies exactly one state at a time."""

    id: str
    type: JobType
    priority: JobPriority
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.PENDING
    retries: int = 0
    max_retries: int = 3
    timeout_ms: int
    estimated_cost: float = 0.0
    actual_cost: float | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: Any = None

    @property
    def attempts(self) -> int:
        """Execution attempts so far, counting the current one when running."""
        return self.retries if self.state == JobState.PENDING else self.retries + 1


class QueueMetrics(BaseModel):
    """Point-in-time queue counters. Times are in milliseconds."""

    total_jobs: int = 0
    pending_jobs: int = 0
    running_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    total_cost: float = 0.0
    daily_cost: float = 0.0
    avg_processing_time: float = 0.0
    queue_wait_time: float = 0.0
