"""Plain-text extraction with text-table detection."""

from __future__ import annotations

from evidence_engine.extraction.base import NATIVE_TEXT_QUALITY, ExtractionContext, ExtractionOutput, decode_text
from evidence_engine.extraction.tables import detect_text_tables
from evidence_engine.schemas.evidence import EvidenceContent


async def extract(data: bytes, ctx: ExtractionContext) -> ExtractionOutput:
    text = decode_text(data)
    tables = [d.table for d in detect_text_tables(text)]
    return ExtractionOutput(content=EvidenceContent(text=text, tables=tables), quality_score=NATIVE_TEXT_QUALITY)
