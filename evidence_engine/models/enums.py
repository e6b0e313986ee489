"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization and PostgreSQL native enum types.
"""

from __future__ import annotations

from enum import Enum


class EvidenceType(str, Enum):
    """Kind of ingested document — drives extractor dispatch."""

    CSV = "csv"
    EXCEL = "excel"
    PDF = "pdf"
    IMAGE = "image"
    URL = "url"  # fetched HTML page
    TEXT = "text"
    UNKNOWN = "unknown"


class EvidenceSource(str, Enum):
    """How the bytes reached the engine."""

    UPLOAD = "upload"
    URL_FETCH = "url_fetch"


class ProcessingStatus(str, Enum):
    """Evidence lifecycle status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Background job kinds handled by the processing queue."""

    OCR = "ocr"
    TRANSFORM = "transform"
    COMPRESS = "compress"
    STORAGE = "storage"


class JobPriority(str, Enum):
    """Admission priority. Lower rank is dispatched first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.MEDIUM: 1, JobPriority.LOW: 2}


class JobState(str, Enum):
    """Where a job currently lives inside the queue."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FootnoteType(str, Enum):
    """Presentation class of a table footnote."""

    CITATION = "citation"
    EXPLANATION = "explanation"
    CAVEAT = "caveat"


class FootnoteKind(str, Enum):
    """Provenance role of a footnote — used for completeness scoring."""

    SOURCE = "source"
    EXTERNAL_SOURCE = "external_source"
    QUALITY_NOTICE = "quality_notice"
    DATA_NOTICE = "data_notice"
    REGENERATION_WARNING = "regeneration_warning"
    ORIGINAL = "original"


class TableDataType(str, Enum):
    """Inferred subject of a table."""

    MARKET = "market"
    COMPETITOR = "competitor"
    FINANCIAL = "financial"
    GENERAL = "general"


class ExtractionMethod(str, Enum):
    """How a table's cells were obtained."""

    OCR = "ocr"
    STRUCTURED = "structured"
    TEXT = "text"
    MANUAL = "manual"


class OcrQuality(str, Enum):
    """Coarse OCR quality class."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EntityKind(str, Enum):
    """Structured entity kinds detected in extracted text."""

    AMOUNT = "amount"
    PERCENTAGE = "percentage"
    DATE = "date"
    COMPANY = "company"
    MARKET_SIZE = "market_size"
    MARKET_SHARE = "market_share"
    REVENUE = "revenue"
    COMPETITOR = "competitor"
