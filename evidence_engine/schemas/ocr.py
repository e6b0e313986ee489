"""Pydantic schemas for OCR results and quality reports.

Confidences are on a 0.0–1.0 scale throughout.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from evidence_engine.models.enums import OcrQuality


class BoundingBox(BaseModel):
    """Pixel box around one recognized line."""

    x: int
    y: int
    width: int
    height: int
    text: str = ""
    confidence: float = 0.0


class OcrWord(BaseModel):
    """A single recognized word."""

    text: str
    confidence: float
    bbox: BoundingBox | None = None


class OcrResult(BaseModel):
    """Output of one recognition run."""

    text: str = ""
    confidence: float = 0.0
    language: str = ""
    words: list[OcrWord] = Field(default_factory=list)
    bounding_boxes: list[BoundingBox] = Field(default_factory=list)
    processing_time_ms: int = 0
    page: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class OcrQualityReport(BaseModel):
    """Quality classification with actionable recommendations."""

    quality: OcrQuality
    confidence: float
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
