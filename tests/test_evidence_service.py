"""Tests for the evidence service.

Covers:
- Upload flow: scan, extract, retain raw bytes, persist
- Rejections: unknown type, failed security scan, rate limit (nothing persisted)
- Extraction failure persists a FAILED record and re-raises
- URL import: fetched page ingested, HTTP 404 persists nothing
- Queries, soft delete, reprocessing, structuring and OCR re-runs
"""

from __future__ import annotations

import hashlib
import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from evidence_engine.events import open_channel
from evidence_engine.evidence.fetcher import FetchedResource, UrlFetcher
from evidence_engine.evidence.repository import InMemoryEvidenceRepository
from evidence_engine.evidence.service import EvidenceService, filename_for_url
from evidence_engine.exceptions import (
    EvidenceNotFound,
    ExtractionFailure,
    FetchError,
    RateLimitExceeded,
    SecurityRejection,
    ValidationError,
)
from evidence_engine.extraction.processor import FileProcessor
from evidence_engine.models.enums import (
    EntityKind,
    EvidenceSource,
    EvidenceType,
    JobPriority,
    JobType,
    ProcessingStatus,
)
from evidence_engine.ocr.engine import OcrEngine
from evidence_engine.ocr.quality import evaluate_quality
from evidence_engine.schemas.events import EventType
from evidence_engine.schemas.evidence import EntityMatch, Evidence, EvidenceContent, EvidenceFilter, TableData
from evidence_engine.schemas.ocr import OcrResult
from evidence_engine.security.scanner import SecurityScanner
from evidence_engine.storage.blobs import LocalBlobStore

CSV_BYTES = b"name,amount\nA,100\nB,200"
PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\n%%EOF"
EICAR_CSV = b"name,value\nX5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*\n"


# ── Helpers ──────────────────────────────────────────────────────────


def _mock_ocr(result: OcrResult | None = None) -> MagicMock:
    ocr = MagicMock(spec=OcrEngine)
    ocr.extract_text_from_image = AsyncMock(return_value=result or OcrResult())
    ocr.extract_text_from_pil = AsyncMock(return_value=result or OcrResult())
    ocr.evaluate_quality = MagicMock(side_effect=evaluate_quality)
    return ocr


def _png() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (60, 30), "white").save(buf, format="PNG")
    return buf.getvalue()


def _service(
    repo: InMemoryEvidenceRepository,
    *,
    ocr: MagicMock | None = None,
    blob_store: LocalBlobStore | None = None,
    **kwargs,
) -> EvidenceService:
    ocr = ocr or _mock_ocr()
    kwargs.setdefault("processor", FileProcessor(ocr=ocr))
    return EvidenceService(
        repo,
        scanner=SecurityScanner(),
        ocr=ocr,
        blob_store=blob_store,
        retain_raw_files=True,
        **kwargs,
    )


@pytest.fixture
def repo() -> InMemoryEvidenceRepository:
    return InMemoryEvidenceRepository()


@pytest.fixture
def store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


# ── Upload ───────────────────────────────────────────────────────────


class TestProcessFile:
    @pytest.mark.asyncio()
    async def test_csv_upload_persisted(self, repo, store):
        service = _service(repo, blob_store=store)
        channel = open_channel([EventType.EVIDENCE_RECEIVED, EventType.SECURITY_SCAN_COMPLETED])

        evidence = await service.process_file(CSV_BYTES, "data.csv", "text/csv")

        assert evidence.status is ProcessingStatus.COMPLETED
        assert evidence.type is EvidenceType.CSV
        assert evidence.metadata.security_scan.is_safe is True
        assert evidence.metadata.raw_blob_key == hashlib.sha256(CSV_BYTES).hexdigest()
        assert await store.get(evidence.metadata.raw_blob_key) == CSV_BYTES

        stored = await repo.find(evidence.id)
        assert stored.content.tables[0].rows == [["A", 100], ["B", 200]]
        assert [e.event_type for e in channel.drain()] == [
            EventType.EVIDENCE_RECEIVED,
            EventType.SECURITY_SCAN_COMPLETED,
        ]

    @pytest.mark.asyncio()
    async def test_raw_bytes_not_retained_without_store(self, repo):
        evidence = await _service(repo).process_file(CSV_BYTES, "data.csv", "text/csv")
        assert evidence.metadata.raw_blob_key is None

    @pytest.mark.asyncio()
    async def test_unknown_type_persists_nothing(self, repo):
        channel = open_channel([EventType.SECURITY_SCAN_COMPLETED])

        with pytest.raises(ValidationError, match="Unsupported evidence type"):
            await _service(repo).process_file(b"PK\x03\x04", "archive.zip", "application/zip")

        assert len(repo) == 0
        assert channel.poll() is None

    @pytest.mark.asyncio()
    async def test_security_rejection_persists_nothing(self, repo):
        channel = open_channel([EventType.EVIDENCE_REJECTED])

        with pytest.raises(SecurityRejection) as exc_info:
            await _service(repo).process_file(EICAR_CSV, "infected.csv", "text/csv")

        assert exc_info.value.scan.virus_found is True
        assert "virus" in str(exc_info.value).lower()
        assert len(repo) == 0
        assert channel.poll().data["filename"] == "infected.csv"

    @pytest.mark.asyncio()
    async def test_extraction_failure_saves_failed_record(self, repo):
        processor = MagicMock(spec=FileProcessor)
        processor.process_file = AsyncMock(
            side_effect=ExtractionFailure("PDF extraction failed: broken xref", evidence_type="pdf")
        )
        channel = open_channel([EventType.EVIDENCE_FAILED])
        service = _service(repo, processor=processor)

        with pytest.raises(ExtractionFailure, match="broken xref"):
            await service.process_file(PDF_BYTES, "report.pdf", "application/pdf")

        page = await repo.list()
        assert page.total == 1
        failed = page.items[0]
        assert failed.status is ProcessingStatus.FAILED
        assert failed.type is EvidenceType.PDF
        assert failed.content.error == "PDF extraction failed: broken xref"
        assert failed.metadata.security_scan.is_safe is True
        assert channel.poll().evidence_id == failed.id

    @pytest.mark.asyncio()
    async def test_rate_limited(self, repo):
        limiter = MagicMock()
        limiter.check_upload = AsyncMock(return_value=(False, 30))
        channel = open_channel([EventType.RATE_LIMITED])

        with pytest.raises(RateLimitExceeded) as exc_info:
            await _service(repo, rate_limiter=limiter).process_file(
                CSV_BYTES, "data.csv", "text/csv", client_id="client-1",
            )

        assert exc_info.value.retry_after == 30
        assert len(repo) == 0
        assert channel.poll().data == {"client_id": "client-1", "retry_after": 30}

    @pytest.mark.asyncio()
    async def test_rate_limit_skipped_without_client(self, repo):
        limiter = MagicMock()
        limiter.check_upload = AsyncMock(return_value=(False, 30))

        await _service(repo, rate_limiter=limiter).process_file(CSV_BYTES, "data.csv", "text/csv")

        limiter.check_upload.assert_not_awaited()


# ── URL import ───────────────────────────────────────────────────────


class TestImportFromUrl:
    @pytest.mark.asyncio()
    async def test_page_imported(self, repo):
        fetcher = MagicMock(spec=UrlFetcher)
        fetcher.fetch = AsyncMock(return_value=FetchedResource(
            url="https://example.com/q3",
            final_url="https://example.com/reports/q3",
            status_code=200,
            content_type="text/html; charset=utf-8",
            content=b"<html><body><script>track()</script><p>Quarterly market report</p></body></html>",
        ))

        evidence = await _service(repo, fetcher=fetcher).import_from_url("https://example.com/q3")

        assert evidence.source is EvidenceSource.URL_FETCH
        assert evidence.type is EvidenceType.URL
        assert evidence.original_filename == "https://example.com/reports/q3"
        assert "Quarterly market report" in evidence.content.text
        assert "track()" not in evidence.content.text
        assert await repo.find(evidence.id) is not None

    @pytest.mark.asyncio()
    async def test_http_404_persists_nothing(self, repo):
        fetcher = MagicMock(spec=UrlFetcher)
        fetcher.fetch = AsyncMock(side_effect=FetchError("HTTP 404 Not Found", status_code=404))

        with pytest.raises(FetchError) as exc_info:
            await _service(repo, fetcher=fetcher).import_from_url("https://example.com/missing")

        assert exc_info.value.status_code == 404
        assert len(repo) == 0

    @pytest.mark.asyncio()
    async def test_bad_scheme_never_fetches(self, repo):
        fetcher = MagicMock(spec=UrlFetcher)
        fetcher.fetch = AsyncMock()

        with pytest.raises(ValidationError):
            await _service(repo, fetcher=fetcher).import_from_url("ftp://example.com/data.csv")

        fetcher.fetch.assert_not_awaited()

    @pytest.mark.parametrize(
        ("url", "content_type", "expected"),
        [
            ("https://example.com/data/sales.csv", "text/csv", "sales.csv"),
            ("https://example.com/page.html", "text/html", "https://example.com/page.html"),
            ("https://example.com/export", "text/csv", "https://example.com/export"),
        ],
    )
    def test_filename_for_url(self, url, content_type, expected):
        assert filename_for_url(url, content_type) == expected


# ── Queries and deletion ─────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio()
    async def test_get_list_statistics(self, repo):
        service = _service(repo)
        csv = await service.process_file(CSV_BYTES, "data.csv", "text/csv")
        text = await service.process_file(b"plain notes", "notes.txt", "text/plain")

        assert (await service.get_evidence(csv.id)).id == csv.id
        page = await service.list_evidence(EvidenceFilter(type=EvidenceType.TEXT))
        assert [e.id for e in page.items] == [text.id]

        stats = await service.get_statistics()
        assert stats.total == 2
        assert stats.by_type == {"csv": 1, "text": 1}

    @pytest.mark.asyncio()
    async def test_get_missing(self, repo):
        with pytest.raises(EvidenceNotFound):
            await _service(repo).get_evidence("evidence_missing")

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(("page", "limit"), [(0, 20), (1, 0), (1, 101)])
    async def test_invalid_pagination(self, repo, page, limit):
        with pytest.raises(ValidationError, match="Invalid pagination"):
            await _service(repo).list_evidence(page=page, limit=limit)

    @pytest.mark.asyncio()
    async def test_soft_delete(self, repo):
        service = _service(repo)
        evidence = await service.process_file(CSV_BYTES, "data.csv", "text/csv")
        channel = open_channel([EventType.EVIDENCE_DELETED])

        await service.delete_evidence(evidence.id)

        with pytest.raises(EvidenceNotFound):
            await service.get_evidence(evidence.id)
        assert await repo.find(evidence.id, include_deleted=True) is not None
        assert (await service.get_statistics()).total == 0
        assert channel.poll().evidence_id == evidence.id

        with pytest.raises(EvidenceNotFound):
            await service.delete_evidence(evidence.id)


# ── Reprocessing ─────────────────────────────────────────────────────


class TestReprocess:
    @pytest.mark.asyncio()
    async def test_reprocess_keeps_identity(self, repo, store):
        service = _service(repo, blob_store=store)
        original = await service.process_file(CSV_BYTES, "data.csv", "text/csv")
        channel = open_channel([EventType.EVIDENCE_REPROCESSED])

        fresh = await service.reprocess_evidence(original.id)

        assert fresh.id == original.id
        assert fresh.created_at == original.created_at
        assert fresh.metadata.raw_blob_key == original.metadata.raw_blob_key
        assert fresh.metadata.security_scan is not None
        assert fresh.content.tables[0].rows == [["A", 100], ["B", 200]]
        assert len(repo) == 1
        assert channel.poll().evidence_id == original.id

    @pytest.mark.asyncio()
    async def test_reprocess_without_retained_bytes(self, repo):
        service = _service(repo)
        evidence = await service.process_file(CSV_BYTES, "data.csv", "text/csv")

        with pytest.raises(ValidationError, match="not retained"):
            await service.reprocess_evidence(evidence.id)

    @pytest.mark.asyncio()
    async def test_reprocess_after_blob_removed(self, repo, store):
        service = _service(repo, blob_store=store)
        evidence = await service.process_file(CSV_BYTES, "data.csv", "text/csv")
        await store.delete(evidence.metadata.raw_blob_key)

        with pytest.raises(ValidationError, match="no longer available"):
            await service.reprocess_evidence(evidence.id)

    @pytest.mark.asyncio()
    async def test_rerun_ocr_overlays_metadata(self, repo, store):
        ocr = _mock_ocr(OcrResult(text="Revenue 4500 yen", confidence=0.92, language="eng"))
        service = _service(repo, ocr=ocr, blob_store=store)
        evidence = await service.process_file(_png(), "scan.png", "image/png")
        before = (await repo.find(evidence.id)).content.text

        overlay = await service.rerun_ocr(evidence.id, "eng")

        assert overlay["pages"] == 1
        assert overlay["confidence"] == pytest.approx(0.92)
        assert overlay["languages"] == "eng"
        stored = await repo.find(evidence.id)
        assert stored.metadata.model_extra["ocr_reprocess"] == overlay
        assert stored.metadata.needs_reprocessing is False
        assert stored.content.text == before

    @pytest.mark.asyncio()
    async def test_rerun_ocr_rejects_tables(self, repo, store):
        service = _service(repo, blob_store=store)
        evidence = await service.process_file(CSV_BYTES, "data.csv", "text/csv")

        with pytest.raises(ValidationError, match="only applies to images and PDFs"):
            await service.rerun_ocr(evidence.id)


# ── Structuring ──────────────────────────────────────────────────────


class TestStructureEvidence:
    @pytest.mark.asyncio()
    async def test_low_quality_queues_ocr(self, repo):
        queue = AsyncMock()
        queue.add_job = AsyncMock(return_value="job_1")
        evidence = Evidence(type=EvidenceType.IMAGE, original_filename="scan.png", mime_type="image/png", size=2048)
        evidence.metadata.raw_blob_key = "ab" * 32
        await repo.save(evidence)

        bundle = await _service(repo, queue=queue).structure_evidence(evidence.id)

        assert bundle.quality.overall == 0.0
        stored = await repo.find(evidence.id)
        assert stored.metadata.needs_reprocessing is True
        assert stored.metadata.structured["quality"]["overall"] == 0.0

        spec = queue.add_job.await_args.args[0]
        assert spec.type is JobType.OCR
        assert spec.priority is JobPriority.LOW
        assert spec.payload == {"evidence_id": evidence.id, "size": 2048}

    @pytest.mark.asyncio()
    async def test_good_quality_not_queued(self, repo):
        queue = AsyncMock()
        evidence = Evidence(
            type=EvidenceType.CSV,
            original_filename="sales.csv",
            mime_type="text/csv",
            quality_score=0.95,
            content=EvidenceContent(
                tables=[TableData(title="Sales", headers=["year", "revenue"], rows=[[2023, 1200]])],
                entities=[EntityMatch(kind=EntityKind.PERCENTAGE, value="12%", start=0, end=3, confidence=0.9)],
            ),
        )
        evidence.metadata.raw_blob_key = "cd" * 32
        await repo.save(evidence)
        channel = open_channel([EventType.EVIDENCE_STRUCTURED])

        bundle = await _service(repo, queue=queue).structure_evidence(evidence.id)

        assert bundle.quality.overall > 0.8
        assert len(bundle.tables) == 1
        assert (await repo.find(evidence.id)).metadata.needs_reprocessing is False
        queue.add_job.assert_not_awaited()
        assert channel.poll().data["needs_reprocessing"] is False
