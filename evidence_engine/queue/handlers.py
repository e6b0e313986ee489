"""Default job handlers binding queue job types to the services.

    ocr        re-OCR retained bytes, overlay metadata.ocr_reprocess
    transform  structuring pass, cached into metadata.structured
    compress   optimize retained bytes, overlay metadata.storage
    storage    retention cleanup (old blobs, expired tombstones)

Handlers raise QueueJobFailure for bad payloads or failed work so the queue
retries them; their return values feed the actual-cost model.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from evidence_engine.exceptions import EvidenceEngineError, QueueJobFailure
from evidence_engine.models.enums import JobType
from evidence_engine.queue.service import JobHandler, ProcessingQueue
from evidence_engine.schemas.queue import ProcessingJob
from evidence_engine.storage.blobs import LocalBlobStore
from evidence_engine.storage.optimizer import StorageOptimizer
from evidence_engine.storage.retention import enforce_storage_retention

if TYPE_CHECKING:
    from evidence_engine.evidence.service import EvidenceService

logger = logging.getLogger(__name__)


def _evidence_id(job: ProcessingJob) -> str:
    evidence_id = job.payload.get("evidence_id")
    if not isinstance(evidence_id, str) or not evidence_id:
        msg = f"Job {job.id} ({job.type.value}) has no evidence_id in its payload"
        raise QueueJobFailure(msg)
    return evidence_id


def build_default_handlers(
    service: EvidenceService,
    optimizer: StorageOptimizer,
    store: LocalBlobStore,
) -> dict[JobType, JobHandler]:
    """Handlers closed over the given services."""

    async def ocr_job(job: ProcessingJob) -> dict[str, Any]:
        evidence_id = _evidence_id(job)
        try:
            overlay = await service.rerun_ocr(evidence_id, job.payload.get("languages"))
        except EvidenceEngineError as exc:
            raise QueueJobFailure(str(exc)) from exc
        if "error" in overlay:
            raise QueueJobFailure(overlay["error"])
        return overlay

    async def transform_job(job: ProcessingJob) -> dict[str, Any]:
        evidence_id = _evidence_id(job)
        try:
            bundle = await service.structure_evidence(evidence_id)
        except EvidenceEngineError as exc:
            raise QueueJobFailure(str(exc)) from exc
        return {
            "evidence_id": evidence_id,
            "table_count": len(bundle.tables),
            "overall": bundle.quality.overall,
        }

    async def compress_job(job: ProcessingJob) -> dict[str, Any]:
        evidence_id = _evidence_id(job)
        try:
            evidence, data = await service.load_raw_bytes(evidence_id)
            result = await optimizer.optimize_file(data, evidence.original_filename, evidence.mime_type)
            await service.overlay_metadata(evidence_id, "storage", result.model_dump(mode="json"))
        except EvidenceEngineError as exc:
            raise QueueJobFailure(str(exc)) from exc
        return {"evidence_id": evidence_id, "file_count": 1, "saved_bytes": result.saved_bytes}

    async def storage_job(job: ProcessingJob) -> dict[str, Any]:
        try:
            summary = await enforce_storage_retention(
                store,
                service.repository,
                days=job.payload.get("days"),
            )
        except Exception as exc:
            logger.exception("Storage retention failed in job %s", job.id)
            raise QueueJobFailure(f"Storage retention failed: {exc}") from exc
        return {"file_count": max(summary["blobs_deleted"], 1), **summary}

    return {
        JobType.OCR: ocr_job,
        JobType.TRANSFORM: transform_job,
        JobType.COMPRESS: compress_job,
        JobType.STORAGE: storage_job,
    }


def register_default_handlers(
    queue: ProcessingQueue,
    service: EvidenceService,
    optimizer: StorageOptimizer,
    store: LocalBlobStore,
) -> None:
    for job_type, handler in build_default_handlers(service, optimizer, store).items():
        queue.register_handler(job_type, handler)
    logger.info("Registered default handlers: %s", ", ".join(t.value for t in JobType))
