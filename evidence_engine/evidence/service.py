"""Evidence service — the ingestion entry point.

process_file / import_from_url flow:
    1. Rate limit (per client, when a client id is given)
    2. Type check — UNKNOWN is a ValidationError, nothing persisted
    3. Security scan — unsafe input raises SecurityRejection, nothing persisted
    4. Extraction — failures save a FAILED record, then re-raise
    5. Raw bytes retained (encrypted, keyed by checksum) for reprocessing
    6. COMPLETED Evidence saved

Background work (OCR reprocessing, structuring, compression, retention) is
submitted to the processing queue; see queue.handlers.

Usage:
    from evidence_engine.evidence.service import build_evidence_service

    service = build_evidence_service(queue=processing_queue)
    evidence = await service.process_file(data, "report.pdf", "application/pdf")
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

from evidence_engine.config import settings
from evidence_engine.events import emit
from evidence_engine.evidence.fetcher import UrlFetcher, url_fetcher, validate_url
from evidence_engine.evidence.repository import EvidenceRepository, SqlEvidenceRepository
from evidence_engine.exceptions import (
    EvidenceNotFound,
    ExtractionFailure,
    OcrError,
    RateLimitExceeded,
    SecurityRejection,
    ValidationError,
)
from evidence_engine.extraction.detect import detect_evidence_type
from evidence_engine.extraction.extractors.pdf import render_pages
from evidence_engine.extraction.processor import FileProcessor, file_processor
from evidence_engine.models.enums import EvidenceSource, EvidenceType, JobPriority, JobType, ProcessingStatus
from evidence_engine.ocr.engine import OcrEngine, ocr_engine
from evidence_engine.queue.service import ProcessingQueue
from evidence_engine.schemas.events import EventType, SystemEvent
from evidence_engine.schemas.evidence import (
    Evidence,
    EvidenceContent,
    EvidenceFilter,
    EvidenceMetadata,
    EvidencePage,
    EvidenceStatistics,
    ProcessingOptions,
)
from evidence_engine.schemas.queue import JobSpec
from evidence_engine.schemas.security import ScanOptions, SecurityScanResult
from evidence_engine.schemas.transform import StructuredBundle
from evidence_engine.security.rate_limiter import RateLimiter
from evidence_engine.security.scanner import SecurityScanner, security_scanner
from evidence_engine.storage.blobs import LocalBlobStore
from evidence_engine.transform.service import DataTransformationService, transformation_service
from evidence_engine.transform.structuring import build_structured_bundle

logger = logging.getLogger(__name__)


def filename_for_url(url: str, content_type: str) -> str:
    """Name fetched content: the path's basename when it carries an extension, else the URL itself."""
    if "html" in content_type.lower():
        return url
    name = PurePosixPath(urlparse(url).path).name
    return name if PurePosixPath(name).suffix else url


class EvidenceService:
    """Orchestrates scanning, extraction, persistence and follow-up jobs."""

    def __init__(
        self,
        repository: EvidenceRepository,
        *,
        scanner: SecurityScanner | None = None,
        processor: FileProcessor | None = None,
        ocr: OcrEngine | None = None,
        fetcher: UrlFetcher | None = None,
        blob_store: LocalBlobStore | None = None,
        queue: ProcessingQueue | None = None,
        rate_limiter: RateLimiter | None = None,
        transformer: DataTransformationService | None = None,
        retain_raw_files: bool | None = None,
    ) -> None:
        self._repository = repository
        self._scanner = scanner or security_scanner
        self._processor = processor or file_processor
        self._ocr = ocr or ocr_engine
        self._fetcher = fetcher or url_fetcher
        self._blob_store = blob_store
        self._queue = queue
        self._rate_limiter = rate_limiter
        self._transformer = transformer or transformation_service
        self._retain_raw = (
            retain_raw_files if retain_raw_files is not None else settings.storage.storage_retain_raw_files
        )

    @property
    def repository(self) -> EvidenceRepository:
        return self._repository

    # ── Ingestion ────────────────────────────────────────────────────

    async def process_file(
        self,
        data: bytes,
        filename: str,
        mime_type: str | None,
        source: EvidenceSource = EvidenceSource.UPLOAD,
        options: ProcessingOptions | None = None,
        client_id: str | None = None,
    ) -> Evidence:
        """Scan, extract and persist one uploaded file.

        Raises:
            RateLimitExceeded: The client exceeded its upload window.
            ValidationError: Unknown evidence type or malformed input.
            SecurityRejection: The scan found a problem; names the failed checks.
            ExtractionFailure: The parser failed (a FAILED record is saved first).
        """
        if client_id is not None:
            await self._check_rate_limit(client_id)
        return await self._ingest(data, filename, mime_type, source, options or ProcessingOptions(), ScanOptions())

    async def import_from_url(
        self,
        url: str,
        options: ProcessingOptions | None = None,
        client_id: str | None = None,
    ) -> Evidence:
        """Fetch a URL and ingest its content as URL_FETCH evidence.

        Raises:
            ValidationError: Not an http(s) URL, or unsupported content.
            FetchError: Timeout, transport failure or HTTP status >= 400.
            SecurityRejection: The fetched content failed the scan.
        """
        target = validate_url(url)
        if client_id is not None:
            await self._check_rate_limit(client_id)

        logger.info("Importing from URL: %s", target)
        resource = await self._fetcher.fetch(target)
        mime_type = resource.content_type.split(";", 1)[0].strip().lower() or None
        filename = filename_for_url(resource.final_url, resource.content_type)

        opts = (options or ProcessingOptions()).model_copy(update={"source_url": resource.final_url})
        is_page = detect_evidence_type(filename, mime_type) == EvidenceType.URL
        scan_options = ScanOptions(allow_html_scripts=is_page)
        return await self._ingest(resource.content, filename, mime_type, EvidenceSource.URL_FETCH, opts, scan_options)

    async def _ingest(
        self,
        data: bytes,
        filename: str,
        mime_type: str | None,
        source: EvidenceSource,
        options: ProcessingOptions,
        scan_options: ScanOptions,
    ) -> Evidence:
        start = time.monotonic()
        evidence_type = detect_evidence_type(filename, mime_type)
        if evidence_type == EvidenceType.UNKNOWN:
            msg = f"Unsupported evidence type: {filename} ({mime_type or 'no MIME type'})"
            raise ValidationError(msg)

        await emit(SystemEvent(
            event_type=EventType.EVIDENCE_RECEIVED,
            data={"type": evidence_type.value, "source": source.value, "size": len(data)},
            source_module="evidence.service",
        ))

        scan = await self._scanner.scan_file(data, filename, mime_type, scan_options)
        await emit(SystemEvent(
            event_type=EventType.SECURITY_SCAN_COMPLETED,
            data={"is_safe": scan.is_safe, "scan_time_ms": scan.scan_time_ms},
            source_module="evidence.service",
        ))
        if not scan.is_safe:
            await emit(SystemEvent(
                event_type=EventType.EVIDENCE_REJECTED,
                data={"filename": filename, "failed_checks": scan.failed_checks()},
                source_module="evidence.service",
            ))
            raise SecurityRejection(scan)

        try:
            evidence = await self._processor.process_file(data, filename, mime_type, source, options)
        except (ExtractionFailure, ValidationError) as exc:
            elapsed = time.monotonic() - start
            logger.error("Processing of %s failed after %.0fms: %s", filename, elapsed * 1000, exc)
            await self._save_failed(evidence_type, filename, mime_type, source, str(exc), scan)
            raise

        evidence.metadata.security_scan = scan
        if self._retain_raw and self._blob_store is not None:
            evidence.metadata.raw_blob_key = await self._retain(data, evidence.metadata.checksum)

        await self._repository.save(evidence)
        logger.info(
            "Evidence %s saved (%s, %d bytes) in %.0fms",
            evidence.id,
            evidence.type.value,
            evidence.size,
            (time.monotonic() - start) * 1000,
        )
        return evidence

    async def _retain(self, data: bytes, checksum: str | None) -> str | None:
        try:
            return await self._blob_store.put(data, checksum)  # type: ignore[union-attr]
        except OSError:
            logger.exception("Could not retain raw bytes (checksum=%s)", (checksum or "")[:12])
            return None

    async def _save_failed(
        self,
        evidence_type: EvidenceType,
        filename: str,
        mime_type: str | None,
        source: EvidenceSource,
        error: str,
        scan: SecurityScanResult,
    ) -> None:
        """Persist a FAILED record. Never masks the original error."""
        now = datetime.now(UTC)
        failed = Evidence(
            type=evidence_type,
            source=source,
            original_filename=filename,
            mime_type=mime_type or "",
            size=0,
            status=ProcessingStatus.FAILED,
            content=EvidenceContent(error=error),
            metadata=EvidenceMetadata(processing_time_ms=0, extracted_at=now, error=error, security_scan=scan),
            processed_at=now,
        )
        try:
            await self._repository.save(failed)
        except Exception:
            logger.exception("Failed to save error record for %s", filename)
            return
        await emit(SystemEvent(
            event_type=EventType.EVIDENCE_FAILED,
            evidence_id=failed.id,
            data={"type": evidence_type.value, "error": error[:200]},
            source_module="evidence.service",
        ))

    async def _check_rate_limit(self, client_id: str) -> None:
        if self._rate_limiter is None:
            return
        allowed, retry_after = await self._rate_limiter.check_upload(client_id)
        if not allowed:
            await emit(SystemEvent(
                event_type=EventType.RATE_LIMITED,
                data={"client_id": client_id, "retry_after": retry_after},
                source_module="evidence.service",
            ))
            raise RateLimitExceeded(retry_after)

    # ── Queries ──────────────────────────────────────────────────────

    async def get_evidence(self, evidence_id: str) -> Evidence:
        evidence = await self._repository.find(evidence_id)
        if evidence is None:
            raise EvidenceNotFound(evidence_id)
        return evidence

    async def list_evidence(
        self,
        filters: EvidenceFilter | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> EvidencePage:
        if page < 1 or not 1 <= limit <= 100:
            msg = f"Invalid pagination: page={page} limit={limit} (page >= 1, 1 <= limit <= 100)"
            raise ValidationError(msg)
        return await self._repository.list(filters, page, limit)

    async def get_statistics(self) -> EvidenceStatistics:
        return await self._repository.statistics()

    # ── Mutations ────────────────────────────────────────────────────

    async def delete_evidence(self, evidence_id: str) -> None:
        """Soft-delete: the record gets a tombstone and disappears from listings."""
        if not await self._repository.soft_delete(evidence_id):
            raise EvidenceNotFound(evidence_id)
        await emit(SystemEvent(
            event_type=EventType.EVIDENCE_DELETED,
            evidence_id=evidence_id,
            source_module="evidence.service",
        ))
        logger.info("Evidence %s soft-deleted", evidence_id)

    async def reprocess_evidence(self, evidence_id: str, options: ProcessingOptions | None = None) -> Evidence:
        """Re-run extraction over the retained original bytes.

        The fresh result replaces content, metadata and quality wholesale;
        id, creation time, scan verdict and blob key are kept.

        Raises:
            EvidenceNotFound: Unknown or deleted id.
            ValidationError: The original bytes were not retained.
            ExtractionFailure: Extraction failed; the stored record is unchanged.
        """
        current = await self.get_evidence(evidence_id)
        data = await self._raw_bytes(current)

        fresh = await self._processor.process_file(
            data, current.original_filename, current.mime_type, current.source, options or ProcessingOptions(),
        )
        fresh.id = current.id
        fresh.created_at = current.created_at
        fresh.metadata.security_scan = current.metadata.security_scan
        fresh.metadata.raw_blob_key = current.metadata.raw_blob_key

        await self._repository.update(fresh)
        await emit(SystemEvent(
            event_type=EventType.EVIDENCE_REPROCESSED,
            evidence_id=fresh.id,
            data={"quality_score": round(fresh.quality_score, 3), "previous": round(current.quality_score, 3)},
            source_module="evidence.service",
        ))
        logger.info("Reprocessed %s: quality %.2f -> %.2f", fresh.id, current.quality_score, fresh.quality_score)
        return fresh

    async def structure_evidence(self, evidence_id: str) -> StructuredBundle:
        """Build tables/footnotes/quality, cache them in metadata.structured.

        A low overall score marks the evidence for reprocessing and, when
        the original bytes are retained, queues an OCR reprocess job.
        """
        evidence = await self.get_evidence(evidence_id)
        bundle = await build_structured_bundle(evidence, self._transformer)

        evidence.metadata.structured = bundle.model_dump(mode="json")
        low_quality = bundle.quality.overall < settings.reprocess_threshold
        evidence.metadata.needs_reprocessing = low_quality
        await self._repository.update(evidence)

        if low_quality and self._queue is not None and evidence.metadata.raw_blob_key:
            job_id = await self._queue.add_job(JobSpec(
                type=JobType.OCR,
                priority=JobPriority.LOW,
                payload={"evidence_id": evidence.id, "size": evidence.size},
            ))
            logger.info("Queued OCR reprocess %s for %s (overall=%.2f)", job_id, evidence.id, bundle.quality.overall)

        await emit(SystemEvent(
            event_type=EventType.EVIDENCE_STRUCTURED,
            evidence_id=evidence.id,
            data={
                "tables": len(bundle.tables),
                "overall": bundle.quality.overall,
                "needs_reprocessing": low_quality,
            },
            source_module="evidence.service",
        ))
        return bundle

    async def rerun_ocr(self, evidence_id: str, languages: str | None = None) -> dict[str, Any]:
        """OCR the retained bytes again and overlay the outcome on metadata.

        Content is left untouched; the overlay lives under metadata.ocr_reprocess.

        Raises:
            ValidationError: Not an image or PDF, or bytes not retained.
        """
        evidence = await self.get_evidence(evidence_id)
        if evidence.type not in (EvidenceType.IMAGE, EvidenceType.PDF):
            msg = f"OCR reprocessing only applies to images and PDFs, not {evidence.type.value}"
            raise ValidationError(msg)
        data = await self._raw_bytes(evidence)

        try:
            if evidence.type == EvidenceType.IMAGE:
                results = [await self._ocr.extract_text_from_image(data, languages)]
            else:
                pages = await self._render_pdf(evidence.id, data)
                results = [
                    await self._ocr.extract_text_from_pil(page, languages, page=index)
                    for index, page in enumerate(pages, start=1)
                ]
        except OcrError as exc:
            overlay: dict[str, Any] = {"error": str(exc), "processed_at": datetime.now(UTC).isoformat()}
        else:
            text_length = sum(len(r.text) for r in results)
            confidence = sum(r.confidence for r in results) / len(results) if results else 0.0
            reports = [self._ocr.evaluate_quality(r) for r in results]
            overlay = {
                "text_length": text_length,
                "confidence": round(confidence, 4),
                "pages": len(results),
                "quality": [r.quality.value for r in reports],
                "issues": sorted({issue for r in reports for issue in r.issues}),
                "languages": languages or settings.ocr.ocr_languages,
                "processed_at": datetime.now(UTC).isoformat(),
            }
            evidence.metadata.needs_reprocessing = confidence < settings.reprocess_threshold

        evidence.metadata.ocr_reprocess = overlay  # type: ignore[attr-defined]
        await self._repository.update(evidence)
        return overlay

    async def overlay_metadata(self, evidence_id: str, key: str, value: Any) -> Evidence:
        """Merge one key into metadata, leaving everything else untouched."""
        evidence = await self.get_evidence(evidence_id)
        setattr(evidence.metadata, key, value)
        await self._repository.update(evidence)
        return evidence

    async def load_raw_bytes(self, evidence_id: str) -> tuple[Evidence, bytes]:
        evidence = await self.get_evidence(evidence_id)
        return evidence, await self._raw_bytes(evidence)

    async def _render_pdf(self, evidence_id: str, data: bytes) -> list[Any]:
        try:
            return await asyncio.to_thread(
                render_pages, data, settings.ocr.ocr_max_pdf_pages, settings.ocr.ocr_pdf_render_dpi,
            )
        except Exception as exc:
            msg = f"Could not render PDF pages for {evidence_id}: {exc}"
            raise ExtractionFailure(msg, evidence_type=EvidenceType.PDF.value) from exc

    async def _raw_bytes(self, evidence: Evidence) -> bytes:
        key = evidence.metadata.raw_blob_key
        if not key or self._blob_store is None:
            msg = f"Original bytes for {evidence.id} were not retained; cannot reprocess"
            raise ValidationError(msg)
        data = await self._blob_store.get(key)
        if data is None:
            msg = f"Original bytes for {evidence.id} are no longer available; cannot reprocess"
            raise ValidationError(msg)
        return data


def build_evidence_service(queue: ProcessingQueue | None = None) -> EvidenceService:
    """Production wiring: SQL repository, encrypted blob store, Redis rate limiter."""
    from evidence_engine.security.rate_limiter import rate_limiter
    from evidence_engine.storage.blobs import blob_store

    return EvidenceService(
        SqlEvidenceRepository(),
        blob_store=blob_store,
        queue=queue,
        rate_limiter=rate_limiter,
    )
