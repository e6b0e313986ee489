"""Schemas for derived, footnoted tables and the structuring bundle."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from evidence_engine.models.enums import ExtractionMethod, FootnoteKind, FootnoteType, TableDataType
from evidence_engine.schemas.evidence import Cell, EntityMatch


class Footnote(BaseModel):
    """A provenance or confidence annotation on a table."""

    id: str
    text: str
    source: str | None = None
    confidence: float = 1.0
    type: FootnoteType
    kind: FootnoteKind
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class TableMetadata(BaseModel):
    data_type: TableDataType = TableDataType.GENERAL
    extraction_method: ExtractionMethod = ExtractionMethod.STRUCTURED
    processing_time_ms: int = 0
    source_quality: float = 0.0
    table_confidence: float = 0.0
    footnote_completeness: float = 0.0
    currency: str | None = None
    period: str | None = None
    region: str | None = None


class TransformedTable(BaseModel):
    """A rendering-ready table with footnotes and a blended quality score."""

    title: str
    headers: list[str] = Field(default_factory=list)
    rows: list[list[Cell]] = Field(default_factory=list)
    footnotes: list[Footnote] = Field(default_factory=list)
    metadata: TableMetadata = Field(default_factory=TableMetadata)
    quality_score: float = 0.0

    def has_caveat(self) -> bool:
        return any(f.type == FootnoteType.CAVEAT for f in self.footnotes)


class QualityAssessment(BaseModel):
    ocr_quality: float = 0.0
    table_detection_confidence: float = 0.0
    entity_extraction_accuracy: float = 0.0
    footnote_completeness: float = 0.0
    overall: float = 0.0


class StructuredBundle(BaseModel):
    """Tables, entities and footnotes cached into Evidence.metadata.structured."""

    tables: list[TransformedTable] = Field(default_factory=list)
    entities: list[EntityMatch] = Field(default_factory=list)
    footnotes: list[Footnote] = Field(default_factory=list)
    quality: QualityAssessment = Field(default_factory=QualityAssessment)
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: str = "1.0"
