"""Deterministic OCR quality evaluation.

Classifies an OcrResult as high/medium/low and lists concrete issues, each
paired with a recommendation the uploader can act on.
"""

from __future__ import annotations

import re

from evidence_engine.models.enums import OcrQuality
from evidence_engine.schemas.ocr import OcrQualityReport, OcrResult

# Thresholds (confidence scale 0.0–1.0)
LOW_CONFIDENCE = 0.50
HIGH_CONFIDENCE = 0.80
MEDIUM_CONFIDENCE = 0.60
WORD_CONFIDENCE_FLOOR = 0.60
LOW_WORD_RATIO = 0.30
MIN_TEXT_LENGTH = 10
GARBLED_RATIO = 0.15

# Letters/digits in any script, whitespace, and common ASCII + CJK punctuation
_PLAIN_CHAR = re.compile(r"[\w\s.,;:!?()\[\]{}'\"%/\\\-+&@#*=<>|~^$¥€£、。，．・「」『』（）：％〜ー]")


def garbled_ratio(text: str) -> float:
    """Fraction of non-space characters that are not plain letters, digits or punctuation."""
    chars = [c for c in text if not c.isspace()]
    if not chars:
        return 0.0
    garbled = sum(1 for c in chars if c == "�" or not _PLAIN_CHAR.fullmatch(c))
    return garbled / len(chars)


def evaluate_quality(result: OcrResult) -> OcrQualityReport:
    """Classify OCR quality and collect issues with recommendations."""
    issues: list[str] = []
    recommendations: list[str] = []

    if result.confidence < LOW_CONFIDENCE:
        issues.append(f"Low recognition confidence ({result.confidence:.0%})")
        recommendations.append("Re-scan the document at a higher resolution (300 dpi or more)")

    if len(result.text.strip()) < MIN_TEXT_LENGTH:
        issues.append("Very little text recognized")
        recommendations.append("Check that the image contains readable text and is the right way up")

    if result.words:
        weak = sum(1 for w in result.words if w.confidence < WORD_CONFIDENCE_FLOOR)
        if weak / len(result.words) > LOW_WORD_RATIO:
            issues.append(f"Many low-confidence words ({weak}/{len(result.words)})")
            recommendations.append("Increase contrast or enable image preprocessing")

    ratio = garbled_ratio(result.text)
    if ratio > GARBLED_RATIO:
        issues.append(f"High garbled character ratio ({ratio:.0%})")
        recommendations.append("Verify the OCR language setting matches the document language")

    if result.confidence > HIGH_CONFIDENCE and not issues:
        quality = OcrQuality.HIGH
    elif result.confidence > MEDIUM_CONFIDENCE and len(issues) < 2:
        quality = OcrQuality.MEDIUM
    else:
        quality = OcrQuality.LOW

    return OcrQualityReport(
        quality=quality,
        confidence=result.confidence,
        issues=issues,
        recommendations=recommendations,
    )
