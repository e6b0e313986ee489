"""PDF extraction with an OCR fallback for scanned documents.

Embedded text and native tables come from pdfplumber. When the embedded
text is shorter than the configured minimum the PDF is treated as scanned:
its first pages are rendered to images and recognized. OCR failures here
are not fatal; the embedded text (however short) is kept.
"""

from __future__ import annotations

import asyncio
import io
import logging

import pdfplumber
from PIL import Image

from evidence_engine.config import settings
from evidence_engine.exceptions import OcrError, OcrTimeout
from evidence_engine.extraction.base import NATIVE_TEXT_QUALITY, ExtractionContext, ExtractionOutput
from evidence_engine.extraction.tables import detect_text_tables
from evidence_engine.extraction.values import parse_value
from evidence_engine.schemas.evidence import EvidenceContent, TableData
from evidence_engine.schemas.ocr import OcrResult

logger = logging.getLogger(__name__)


def read_pdf(data: bytes) -> tuple[str, list[TableData], int]:
    """Return (embedded text, native tables, page count)."""
    texts: list[str] = []
    tables: list[TableData] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page_no, page in enumerate(pdf.pages, start=1):
            page_text = page.extract_text() or ""
            if page_text.strip():
                texts.append(page_text)
            for index, raw_table in enumerate(page.extract_tables(), start=1):
                rows = [[(cell or "").strip() for cell in row] for row in raw_table if row]
                rows = [row for row in rows if any(row)]
                if len(rows) < 2:
                    continue
                tables.append(TableData(
                    title=f"Page {page_no} table {index}",
                    headers=rows[0],
                    rows=[[parse_value(cell) for cell in row] for row in rows[1:]],
                ))
        page_count = len(pdf.pages)
    return "\n\n".join(texts), tables, page_count


def render_pages(data: bytes, max_pages: int, dpi: int) -> list[Image.Image]:
    """Rasterize the first max_pages pages."""
    images: list[Image.Image] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages[:max_pages]:
            images.append(page.to_image(resolution=dpi).original.copy())
    return images


async def _ocr_pages(data: bytes, ctx: ExtractionContext) -> list[OcrResult]:
    images = await asyncio.to_thread(
        render_pages, data, settings.ocr.ocr_max_pdf_pages, settings.ocr.ocr_pdf_render_dpi
    )
    results: list[OcrResult] = []
    for page_no, image in enumerate(images, start=1):
        results.append(await ctx.ocr.extract_text_from_pil(
            image,
            languages=ctx.options.ocr_languages,
            preprocess_image=ctx.options.preprocess_image,
            page=page_no,
        ))
    return results


async def extract(data: bytes, ctx: ExtractionContext) -> ExtractionOutput:
    text, tables, page_count = await asyncio.to_thread(read_pdf, data)
    content = EvidenceContent(text=text, tables=tables)
    output = ExtractionOutput(content=content, quality_score=NATIVE_TEXT_QUALITY, page_count=page_count)

    if len(text.strip()) >= settings.ocr.ocr_min_pdf_text_length or not ctx.options.enable_ocr:
        return output

    logger.info("PDF %s has %d chars of embedded text — running OCR", ctx.filename, len(text.strip()))
    try:
        results = await _ocr_pages(data, ctx)
    except OcrTimeout as exc:
        content.warnings.append(f"OCR timed out for scanned PDF: {exc}")
        return output
    except OcrError as exc:
        content.warnings.append(f"OCR failed for scanned PDF: {exc}")
        return output

    content.ocr_results = results
    ocr_text = "\n\n".join(r.text for r in results if not r.is_empty)
    if len(ocr_text.strip()) > len(text.strip()):
        content.text = ocr_text
        scored = [r for r in results if not r.is_empty]
        output.quality_score = sum(r.confidence for r in scored) / len(scored)
        output.ocr_used = True
        if not content.tables:
            content.tables = [d.table for d in detect_text_tables(ocr_text)]
    return output
