"""Shared types for per-type extractors."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from evidence_engine.ocr.engine import OcrEngine
from evidence_engine.schemas.evidence import EvidenceContent, ProcessingOptions

# Native-parse confidence per source kind; OCR-derived text uses OCR confidence instead
STRUCTURED_QUALITY = 0.95
NATIVE_TEXT_QUALITY = 0.9


@dataclass(frozen=True)
class ExtractionContext:
    """Everything an extractor may need besides the bytes."""

    filename: str
    mime_type: str
    options: ProcessingOptions
    ocr: OcrEngine


@dataclass
class ExtractionOutput:
    """Raw extraction result before entity detection and metadata."""

    content: EvidenceContent = field(default_factory=EvidenceContent)
    quality_score: float = 0.0
    ocr_used: bool = False
    page_count: int | None = None
    dimensions: dict[str, int] | None = None


# Type alias for extractor functions
ExtractorFn = Callable[[bytes, ExtractionContext], Coroutine[Any, Any, ExtractionOutput]]


def decode_text(data: bytes) -> str:
    """Decode uploaded text: UTF-8 (BOM stripped), then Shift_JIS, then lossy UTF-8."""
    for encoding in ("utf-8-sig", "cp932"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")
