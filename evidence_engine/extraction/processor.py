"""Content extractor — turns raw bytes into a complete Evidence.

Flow:
    1. Detect the evidence type (UNKNOWN is rejected)
    2. Dispatch to the registered extractor
    3. Detect structured entities over the extracted text
    4. Build metadata (timing, checksum, language, cost estimate)

Persistence is the caller's job; this module never touches storage.
"""

from __future__ import annotations

import hashlib
import logging
import time
from datetime import UTC, datetime

from evidence_engine.events import emit
from evidence_engine.exceptions import ExtractionFailure, ValidationError
from evidence_engine.extraction.base import ExtractionContext, ExtractorFn
from evidence_engine.extraction.detect import detect_evidence_type
from evidence_engine.extraction.entities import build_structured_data, extract_entities
from evidence_engine.extraction.extractors import EXTRACTORS
from evidence_engine.extraction.language import detect_language
from evidence_engine.formats import resolve_mime
from evidence_engine.models.enums import EvidenceSource, EvidenceType, ProcessingStatus
from evidence_engine.ocr.engine import OcrEngine, ocr_engine
from evidence_engine.queue.costs import ocr_cost
from evidence_engine.schemas.events import EventType, SystemEvent
from evidence_engine.schemas.evidence import Evidence, EvidenceMetadata, ProcessingOptions

logger = logging.getLogger(__name__)


class FileProcessor:
    """Type-dispatching extractor producing finished Evidence objects."""

    def __init__(
        self,
        ocr: OcrEngine | None = None,
        extractors: dict[EvidenceType, ExtractorFn] | None = None,
    ) -> None:
        self._ocr = ocr or ocr_engine
        self._extractors = extractors if extractors is not None else EXTRACTORS

    async def process_file(
        self,
        data: bytes,
        filename: str,
        mime_type: str | None,
        source: EvidenceSource = EvidenceSource.UPLOAD,
        options: ProcessingOptions | None = None,
    ) -> Evidence:
        """Extract text, tables and entities from one file.

        Args:
            data: Raw file bytes (already security-scanned).
            filename: Original filename (or URL for fetched pages).
            mime_type: Declared MIME type.
            source: How the bytes arrived.
            options: Extraction options; defaults when None.

        Returns:
            A COMPLETED Evidence with content and metadata fully populated.

        Raises:
            ValidationError: Unknown type or malformed input (e.g. empty CSV).
            ExtractionFailure: The type-specific parser failed.
        """
        opts = options or ProcessingOptions()
        evidence_type = detect_evidence_type(filename, mime_type)
        if evidence_type == EvidenceType.UNKNOWN:
            msg = f"Unsupported evidence type: {filename} ({mime_type or 'no MIME type'})"
            raise ValidationError(msg)

        extractor = self._extractors[evidence_type]
        ctx = ExtractionContext(
            filename=filename,
            mime_type=resolve_mime(filename, mime_type),
            options=opts,
            ocr=self._ocr,
        )

        start = time.monotonic()
        try:
            output = await extractor(data, ctx)
        except (ValidationError, ExtractionFailure):
            raise
        except Exception as exc:
            logger.warning("%s extraction failed for %s: %s", evidence_type.value, filename, exc)
            raise ExtractionFailure(
                f"{evidence_type.value.upper()} extraction failed: {exc}",
                evidence_type=evidence_type.value,
            ) from exc

        content = output.content
        content.entities = extract_entities(content.text)
        content.structured = build_structured_data(content.entities)

        elapsed = time.monotonic() - start
        now = datetime.now(UTC)
        metadata = EvidenceMetadata(
            processing_time_ms=int(elapsed * 1000),
            extracted_at=now,
            language=detect_language(content.text),
            checksum=hashlib.sha256(data).hexdigest(),
            cost_estimate=ocr_cost(len(data), elapsed) if output.ocr_used else 0.0,
            page_count=output.page_count,
            dimensions=output.dimensions,
        )

        evidence = Evidence(
            type=evidence_type,
            source=source,
            original_filename=filename,
            mime_type=ctx.mime_type or (mime_type or ""),
            size=len(data),
            status=ProcessingStatus.COMPLETED,
            quality_score=min(max(output.quality_score, 0.0), 1.0),
            content=content,
            metadata=metadata,
            processed_at=now,
        )

        await emit(SystemEvent(
            event_type=EventType.EVIDENCE_PROCESSED,
            evidence_id=evidence.id,
            data={
                "type": evidence_type.value,
                "tables": len(content.tables),
                "entities": len(content.entities),
                "quality_score": round(evidence.quality_score, 3),
                "ocr_used": output.ocr_used,
            },
            source_module="extraction.processor",
        ))
        logger.info(
            "Extracted %s (%s): %d chars, %d tables, quality=%.2f",
            filename,
            evidence_type.value,
            len(content.text),
            len(content.tables),
            evidence.quality_score,
        )
        return evidence


# Module-level singleton
file_processor = FileProcessor()
