"""SystemEvent schema — notifications published by the engine.

Subscribers (structlog event logger, pollable channels) consume these
asynchronously; nothing in the core waits on them.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Evidence lifecycle
    EVIDENCE_RECEIVED = "evidence.received"
    EVIDENCE_REJECTED = "evidence.rejected"
    EVIDENCE_PROCESSED = "evidence.processed"
    EVIDENCE_FAILED = "evidence.failed"
    EVIDENCE_REPROCESSED = "evidence.reprocessed"
    EVIDENCE_STRUCTURED = "evidence.structured"
    EVIDENCE_DELETED = "evidence.deleted"

    # Security
    SECURITY_SCAN_COMPLETED = "security.scan_completed"
    RATE_LIMITED = "security.rate_limited"

    # OCR
    OCR_STARTED = "ocr.started"
    OCR_COMPLETED = "ocr.completed"
    OCR_FAILED = "ocr.failed"

    # Queue
    JOB_ADDED = "job.added"
    JOB_STARTED = "job.started"
    JOB_COMPLETED = "job.completed"
    JOB_RETRYING = "job.retrying"
    JOB_FAILED = "job.failed"
    COST_LIMIT_REACHED = "queue.cost_limit_reached"
    DAILY_COST_RESET = "queue.daily_cost_reset"

    # External
    EXTERNAL_FETCH = "external.fetch"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_MAINTENANCE = "system.maintenance"
    STORAGE_WARNING = "system.storage_warning"


class SystemEvent(BaseModel):
    """Immutable notification flowing through the event channel."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    evidence_id: str | None = None
    job_id: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
