"""CSV extraction: quote-aware parsing, first row as headers, numeric coercion."""

from __future__ import annotations

import asyncio
import csv
import io

from evidence_engine.exceptions import ValidationError
from evidence_engine.extraction.base import (
    STRUCTURED_QUALITY,
    ExtractionContext,
    ExtractionOutput,
    decode_text,
)
from evidence_engine.extraction.values import parse_value
from evidence_engine.schemas.evidence import EvidenceContent, TableData


def parse_csv(data: bytes, title: str | None = None) -> tuple[str, TableData]:
    """Parse CSV bytes into (text, table).

    Raises:
        ValidationError: If the file has no non-blank rows.
    """
    text = decode_text(data)
    rows = [row for row in csv.reader(io.StringIO(text, newline="")) if any(cell.strip() for cell in row)]
    if not rows:
        msg = "CSV file is empty"
        raise ValidationError(msg)

    headers = [cell.strip() for cell in rows[0]]
    body = [[parse_value(cell) for cell in row] for row in rows[1:]]
    return text, TableData(title=title, headers=headers, rows=body)


async def extract(data: bytes, ctx: ExtractionContext) -> ExtractionOutput:
    text, table = await asyncio.to_thread(parse_csv, data, ctx.filename)
    return ExtractionOutput(
        content=EvidenceContent(text=text, tables=[table]),
        quality_score=STRUCTURED_QUALITY,
    )
