"""Raster image extraction: OCR (unless disabled) plus pixel dimensions."""

from __future__ import annotations

import asyncio
import logging

from evidence_engine.exceptions import OcrTimeout
from evidence_engine.extraction.base import ExtractionContext, ExtractionOutput
from evidence_engine.extraction.tables import detect_text_tables
from evidence_engine.ocr.preprocessor import image_dimensions
from evidence_engine.schemas.evidence import EvidenceContent

logger = logging.getLogger(__name__)


async def extract(data: bytes, ctx: ExtractionContext) -> ExtractionOutput:
    dimensions = await asyncio.to_thread(image_dimensions, data)
    content = EvidenceContent()
    output = ExtractionOutput(content=content, dimensions=dimensions)

    if not ctx.options.enable_ocr:
        content.warnings.append("OCR disabled — no text extracted from image")
        return output

    try:
        result = await ctx.ocr.extract_text_from_image(
            data,
            languages=ctx.options.ocr_languages,
            preprocess_image=ctx.options.preprocess_image,
        )
    except OcrTimeout as exc:
        # Degrade to an empty-text record rather than failing the upload
        logger.warning("OCR timeout for %s", ctx.filename)
        content.warnings.append(str(exc))
        return output

    content.text = result.text
    content.ocr_results = [result]
    content.tables = [d.table for d in detect_text_tables(result.text)]
    report = ctx.ocr.evaluate_quality(result)
    content.warnings.extend(f"OCR: {issue}" for issue in report.issues)

    output.quality_score = result.confidence
    output.ocr_used = True
    return output
