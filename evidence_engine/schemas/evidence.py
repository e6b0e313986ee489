"""Evidence schemas — the in-memory shape of an ingested document.

Content and metadata are always present once an Evidence exists, possibly empty.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from evidence_engine.models.enums import EntityKind, EvidenceSource, EvidenceType, ProcessingStatus
from evidence_engine.schemas.ocr import OcrResult
from evidence_engine.schemas.security import SecurityScanResult

Cell = str | int | float


def new_evidence_id() -> str:
    return f"evidence_{uuid.uuid4().hex}"


# ── Content building blocks ──────────────────────────────────────────


class TableData(BaseModel):
    """A header+rows table pulled from a document."""

    title: str | None = None
    headers: list[str] = Field(default_factory=list)
    rows: list[list[Cell]] = Field(default_factory=list)
    sheet: str | None = None
    footnotes: list[str] = Field(default_factory=list)


class ImageRef(BaseModel):
    """An image referenced by a document (absolute URL for fetched pages)."""

    url: str
    alt: str = ""
    width: int | None = None
    height: int | None = None


class EntityMatch(BaseModel):
    """One structured entity found in text."""

    kind: EntityKind
    value: str
    start: int
    end: int
    confidence: float
    normalized: float | None = None
    unit: str | None = None


class StructuredData(BaseModel):
    """Entities grouped by business subject."""

    market_data: list[dict[str, Any]] = Field(default_factory=list)
    competitor_data: list[dict[str, Any]] = Field(default_factory=list)
    financial_data: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.market_data or self.competitor_data or self.financial_data)


class EvidenceContent(BaseModel):
    """Everything extracted from the raw bytes."""

    text: str = ""
    tables: list[TableData] = Field(default_factory=list)
    images: list[ImageRef] = Field(default_factory=list)
    urls: list[str] = Field(default_factory=list)
    ocr_results: list[OcrResult] = Field(default_factory=list)
    entities: list[EntityMatch] = Field(default_factory=list)
    structured: StructuredData = Field(default_factory=StructuredData)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None


class EvidenceMetadata(BaseModel):
    """Processing facts about an Evidence.

    Extra keys are allowed so queue jobs can overlay their own results
    (e.g. ocr_reprocess, storage) without a schema change.
    """

    model_config = ConfigDict(extra="allow")

    processing_time_ms: int = 0
    extracted_at: datetime | None = None
    language: str = "unknown"
    checksum: str | None = None
    cost_estimate: float = 0.0
    security_scan: SecurityScanResult | None = None
    structured: dict[str, Any] | None = None
    raw_blob_key: str | None = None
    page_count: int | None = None
    dimensions: dict[str, int] | None = None
    needs_reprocessing: bool = False
    error: str | None = None


# ── Evidence ─────────────────────────────────────────────────────────


class Evidence(BaseModel):
    """A single ingested document and everything derived from it."""

    id: str = Field(default_factory=new_evidence_id)
    type: EvidenceType
    source: EvidenceSource = EvidenceSource.UPLOAD
    original_filename: str
    mime_type: str
    size: int = 0
    status: ProcessingStatus = ProcessingStatus.PENDING
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    content: EvidenceContent = Field(default_factory=EvidenceContent)
    metadata: EvidenceMetadata = Field(default_factory=EvidenceMetadata)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ProcessingOptions(BaseModel):
    """Caller options for extraction."""

    enable_ocr: bool = True
    ocr_languages: str | None = None
    preprocess_image: bool = True
    source_url: str | None = None
    quality_threshold: float = 0.8


# ── Queries ──────────────────────────────────────────────────────────


class EvidenceFilter(BaseModel):
    """Equality/range filters understood by every repository."""

    type: EvidenceType | None = None
    source: EvidenceSource | None = None
    status: ProcessingStatus | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


class EvidencePage(BaseModel):
    items: list[Evidence] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class EvidenceStatistics(BaseModel):
    """Aggregate counts over non-deleted evidence."""

    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_status: dict[str, int] = Field(default_factory=dict)
    by_source: dict[str, int] = Field(default_factory=dict)
    total_size: int = 0
    average_quality: float = 0.0
