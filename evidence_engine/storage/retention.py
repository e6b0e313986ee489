"""Storage retention and utilization monitoring.

enforce_storage_retention() deletes retained blobs older than the cleanup
window that no live evidence references, and purges evidence rows
soft-deleted before the same cutoff.
check_storage_utilization() warns above the warn ratio and schedules a
cleanup job above the cleanup ratio, unless one is already pending or running.

Both are safe to call on every schedule tick: cutoffs make them idempotent.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from evidence_engine.config import settings
from evidence_engine.events import emit
from evidence_engine.models.enums import JobPriority, JobType
from evidence_engine.schemas.events import EventType, SystemEvent
from evidence_engine.schemas.queue import JobSpec
from evidence_engine.storage.blobs import LocalBlobStore

if TYPE_CHECKING:
    from evidence_engine.evidence.repository import EvidenceRepository
    from evidence_engine.queue.service import ProcessingQueue

logger = logging.getLogger(__name__)


async def enforce_storage_retention(
    store: LocalBlobStore,
    repository: EvidenceRepository | None = None,
    days: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Run the retention policy. Returns a summary dict.

    Expired tombstones are purged first; an old blob is then deleted only if
    no live evidence still references it. Store and repository errors
    propagate so the calling job fails and is retried.
    """
    summary: dict[str, int] = {"blobs_deleted": 0, "blobs_kept": 0, "evidence_purged": 0}
    window = days if days is not None else settings.storage.storage_cleanup_days
    cutoff = (now or datetime.now(UTC)) - timedelta(days=window)

    in_use: set[str] = set()
    if repository is not None:
        summary["evidence_purged"] = await repository.purge_deleted(cutoff)
        in_use = await repository.referenced_blob_keys()

    for key in await store.list_older_than(cutoff):
        if key in in_use:
            summary["blobs_kept"] += 1
            continue
        if await store.delete(key):
            summary["blobs_deleted"] += 1

    await emit(SystemEvent(
        event_type=EventType.SYSTEM_MAINTENANCE,
        data={"action": "storage_retention", "cutoff": cutoff.date().isoformat(), **summary},
        source_module="storage.retention",
    ))
    logger.info(
        "Storage retention complete: blobs=%d evidence=%d (cutoff=%s)",
        summary["blobs_deleted"],
        summary["evidence_purged"],
        cutoff.date(),
    )
    return summary


async def check_storage_utilization(
    store: LocalBlobStore,
    queue: ProcessingQueue | None = None,
    limit_bytes: int | None = None,
) -> float:
    """Compare blob usage to the limit. Returns the utilization ratio."""
    cfg = settings.storage
    limit = limit_bytes or cfg.limit_bytes
    used = await store.usage()
    ratio = used / limit if limit else 0.0

    if ratio >= cfg.storage_cleanup_ratio:
        logger.error("Storage at %.1f%% of limit — scheduling cleanup", ratio * 100)
        await emit(SystemEvent(
            event_type=EventType.STORAGE_WARNING,
            data={"level": "critical", "used_bytes": used, "limit_bytes": limit, "utilization": round(ratio, 4)},
            source_module="storage.retention",
        ))
        if queue is not None and queue.has_active(JobType.STORAGE):
            logger.info("Storage cleanup already pending or running; not scheduling another")
        elif queue is not None:
            await queue.add_job(JobSpec(
                type=JobType.STORAGE,
                priority=JobPriority.LOW,
                payload={"action": "retention", "file_count": 1},
            ))
    elif ratio >= cfg.storage_warn_ratio:
        logger.warning("Storage at %.1f%% of limit", ratio * 100)
        await emit(SystemEvent(
            event_type=EventType.STORAGE_WARNING,
            data={"level": "warning", "used_bytes": used, "limit_bytes": limit, "utilization": round(ratio, 4)},
            source_module="storage.retention",
        ))
    return ratio
