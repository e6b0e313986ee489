"""Extractor registry — maps EvidenceType to extraction functions.

Every concrete EvidenceType must have an extractor; the check below fails
at import time if one is missing.
"""

from __future__ import annotations

from evidence_engine.extraction.base import ExtractorFn
from evidence_engine.extraction.extractors import csv_table, html, image, pdf, spreadsheet, text
from evidence_engine.models.enums import EvidenceType

EXTRACTORS: dict[EvidenceType, ExtractorFn] = {
    EvidenceType.CSV: csv_table.extract,
    EvidenceType.EXCEL: spreadsheet.extract,
    EvidenceType.PDF: pdf.extract,
    EvidenceType.IMAGE: image.extract,
    EvidenceType.URL: html.extract,
    EvidenceType.TEXT: text.extract,
}

SUPPORTED_TYPES: frozenset[EvidenceType] = frozenset(EXTRACTORS)

_missing = set(EvidenceType) - {EvidenceType.UNKNOWN} - SUPPORTED_TYPES
if _missing:
    raise RuntimeError(f"No extractor registered for: {sorted(t.value for t in _missing)}")
