"""Evidence persistence.

EvidenceRepository is the seam the service depends on. Two implementations:
    SqlEvidenceRepository       SQLAlchemy async (PostgreSQL JSONB in production)
    InMemoryEvidenceRepository  dict-backed, for tests and local runs

Deleted evidence is a tombstone (deleted_at set): hidden from list and
statistics, still returned by find(include_deleted=True), removed for good
by purge_deleted().
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import ColumnElement, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from evidence_engine.db.engine import async_session_factory
from evidence_engine.models.evidence import EvidenceRecord
from evidence_engine.schemas.evidence import (
    Evidence,
    EvidenceContent,
    EvidenceFilter,
    EvidenceMetadata,
    EvidencePage,
    EvidenceStatistics,
)

logger = logging.getLogger(__name__)


class EvidenceRepository(Protocol):
    async def save(self, evidence: Evidence) -> Evidence: ...

    async def find(self, evidence_id: str, include_deleted: bool = False) -> Evidence | None: ...

    async def list(self, filters: EvidenceFilter | None = None, page: int = 1, limit: int = 20) -> EvidencePage: ...

    async def update(self, evidence: Evidence) -> Evidence: ...

    async def soft_delete(self, evidence_id: str, when: datetime | None = None) -> bool: ...

    async def purge_deleted(self, cutoff: datetime) -> int: ...

    async def referenced_blob_keys(self) -> set[str]: ...

    async def statistics(self) -> EvidenceStatistics: ...


# ── Record mapping ───────────────────────────────────────────────────


def to_record(evidence: Evidence) -> EvidenceRecord:
    return EvidenceRecord(
        id=evidence.id,
        evidence_type=evidence.type.value,
        source=evidence.source.value,
        status=evidence.status.value,
        original_filename=evidence.original_filename[:255],
        mime_type=evidence.mime_type[:100],
        size=evidence.size,
        quality_score=evidence.quality_score,
        content=evidence.content.model_dump(mode="json"),
        metadata_=evidence.metadata.model_dump(mode="json"),
        created_at=evidence.created_at,
        processed_at=evidence.processed_at,
        deleted_at=evidence.deleted_at,
        error=evidence.content.error,
    )


def from_record(record: EvidenceRecord) -> Evidence:
    return Evidence(
        id=record.id,
        type=record.evidence_type,
        source=record.source,
        original_filename=record.original_filename,
        mime_type=record.mime_type,
        size=record.size,
        status=record.status,
        quality_score=record.quality_score,
        content=EvidenceContent.model_validate(record.content or {}),
        metadata=EvidenceMetadata.model_validate(record.metadata_ or {}),
        created_at=record.created_at,
        processed_at=record.processed_at,
        deleted_at=record.deleted_at,
    )


def blob_keys_in(metadata: dict[str, Any]) -> set[str]:
    """Blob keys a serialized metadata document points at (raw bytes, optimized copy)."""
    keys = [metadata.get("raw_blob_key")]
    storage = metadata.get("storage")
    if isinstance(storage, dict):
        keys.append(storage.get("blob_key"))
    return {key for key in keys if isinstance(key, str) and key}


def _conditions(filters: EvidenceFilter | None) -> list[ColumnElement[bool]]:
    conds: list[ColumnElement[bool]] = [EvidenceRecord.deleted_at.is_(None)]
    if filters is None:
        return conds
    if filters.type is not None:
        conds.append(EvidenceRecord.evidence_type == filters.type.value)
    if filters.source is not None:
        conds.append(EvidenceRecord.source == filters.source.value)
    if filters.status is not None:
        conds.append(EvidenceRecord.status == filters.status.value)
    if filters.created_from is not None:
        conds.append(EvidenceRecord.created_at >= filters.created_from)
    if filters.created_to is not None:
        conds.append(EvidenceRecord.created_at <= filters.created_to)
    return conds


# ── SQLAlchemy ───────────────────────────────────────────────────────


class SqlEvidenceRepository:
    """Async SQLAlchemy repository; one session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session_factory

    async def save(self, evidence: Evidence) -> Evidence:
        async with self._session_factory() as db:
            db.add(to_record(evidence))
            await db.commit()
        return evidence

    async def find(self, evidence_id: str, include_deleted: bool = False) -> Evidence | None:
        async with self._session_factory() as db:
            record = await db.get(EvidenceRecord, evidence_id)
        if record is None or (record.deleted_at is not None and not include_deleted):
            return None
        return from_record(record)

    async def list(self, filters: EvidenceFilter | None = None, page: int = 1, limit: int = 20) -> EvidencePage:
        page = max(page, 1)
        conds = _conditions(filters)
        async with self._session_factory() as db:
            total = (await db.execute(select(func.count(EvidenceRecord.id)).where(*conds))).scalar() or 0
            result = await db.execute(
                select(EvidenceRecord)
                .where(*conds)
                .order_by(EvidenceRecord.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            records = list(result.scalars().all())
        return EvidencePage(items=[from_record(r) for r in records], total=total, page=page, limit=limit)

    async def update(self, evidence: Evidence) -> Evidence:
        async with self._session_factory() as db:
            await db.merge(to_record(evidence))
            await db.commit()
        return evidence

    async def soft_delete(self, evidence_id: str, when: datetime | None = None) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(EvidenceRecord)
                .where(EvidenceRecord.id == evidence_id, EvidenceRecord.deleted_at.is_(None))
                .values(deleted_at=when or datetime.now(UTC))
            )
            await db.commit()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def purge_deleted(self, cutoff: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(EvidenceRecord).where(
                    EvidenceRecord.deleted_at.isnot(None),
                    EvidenceRecord.deleted_at < cutoff,
                )
            )
            await db.commit()
        count = result.rowcount  # type: ignore[attr-defined]
        if count:
            logger.info("Purged %d soft-deleted evidence rows (cutoff=%s)", count, cutoff.date())
        return count

    async def referenced_blob_keys(self) -> set[str]:
        """Blob keys still used by live (non-deleted) evidence."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(EvidenceRecord.metadata_).where(EvidenceRecord.deleted_at.is_(None))
            )
            documents = list(result.scalars().all())
        keys: set[str] = set()
        for document in documents:
            keys |= blob_keys_in(document or {})
        return keys

    async def statistics(self) -> EvidenceStatistics:
        live = EvidenceRecord.deleted_at.is_(None)
        async with self._session_factory() as db:
            row = (await db.execute(
                select(
                    func.count(EvidenceRecord.id),
                    func.coalesce(func.sum(EvidenceRecord.size), 0),
                    func.coalesce(func.avg(EvidenceRecord.quality_score), 0.0),
                ).where(live)
            )).one()
            by: dict[str, dict[str, int]] = {}
            for name, column in (
                ("type", EvidenceRecord.evidence_type),
                ("status", EvidenceRecord.status),
                ("source", EvidenceRecord.source),
            ):
                result = await db.execute(select(column, func.count(EvidenceRecord.id)).where(live).group_by(column))
                by[name] = {key: count for key, count in result.all()}

        return EvidenceStatistics(
            total=row[0] or 0,
            total_size=int(row[1] or 0),
            average_quality=round(float(row[2] or 0.0), 4),
            by_type=by["type"],
            by_status=by["status"],
            by_source=by["source"],
        )


# ── In-memory ────────────────────────────────────────────────────────


class InMemoryEvidenceRepository:
    """Dict-backed repository. Stores and returns copies, never shared objects."""

    def __init__(self) -> None:
        self._items: dict[str, Evidence] = {}

    def __len__(self) -> int:
        return len(self._items)

    async def save(self, evidence: Evidence) -> Evidence:
        self._items[evidence.id] = evidence.model_copy(deep=True)
        return evidence

    async def find(self, evidence_id: str, include_deleted: bool = False) -> Evidence | None:
        item = self._items.get(evidence_id)
        if item is None or (item.is_deleted and not include_deleted):
            return None
        return item.model_copy(deep=True)

    async def list(self, filters: EvidenceFilter | None = None, page: int = 1, limit: int = 20) -> EvidencePage:
        page = max(page, 1)
        matches = sorted(
            (e for e in self._items.values() if _matches(e, filters)),
            key=lambda e: e.created_at,
            reverse=True,
        )
        window = matches[(page - 1) * limit : page * limit]
        return EvidencePage(
            items=[e.model_copy(deep=True) for e in window],
            total=len(matches),
            page=page,
            limit=limit,
        )

    async def update(self, evidence: Evidence) -> Evidence:
        self._items[evidence.id] = evidence.model_copy(deep=True)
        return evidence

    async def soft_delete(self, evidence_id: str, when: datetime | None = None) -> bool:
        item = self._items.get(evidence_id)
        if item is None or item.is_deleted:
            return False
        item.deleted_at = when or datetime.now(UTC)
        return True

    async def purge_deleted(self, cutoff: datetime) -> int:
        expired = [k for k, e in self._items.items() if e.deleted_at is not None and e.deleted_at < cutoff]
        for key in expired:
            del self._items[key]
        return len(expired)

    async def referenced_blob_keys(self) -> set[str]:
        keys: set[str] = set()
        for evidence in self._items.values():
            if not evidence.is_deleted:
                keys |= blob_keys_in(evidence.metadata.model_dump(mode="json"))
        return keys

    async def statistics(self) -> EvidenceStatistics:
        live = [e for e in self._items.values() if not e.is_deleted]
        return EvidenceStatistics(
            total=len(live),
            by_type=dict(Counter(e.type.value for e in live)),
            by_status=dict(Counter(e.status.value for e in live)),
            by_source=dict(Counter(e.source.value for e in live)),
            total_size=sum(e.size for e in live),
            average_quality=round(sum(e.quality_score for e in live) / len(live), 4) if live else 0.0,
        )


def _matches(evidence: Evidence, filters: EvidenceFilter | None) -> bool:
    if evidence.is_deleted:
        return False
    if filters is None:
        return True
    checks: list[tuple[Any, Any]] = [
        (filters.type, evidence.type),
        (filters.source, evidence.source),
        (filters.status, evidence.status),
    ]
    if any(wanted is not None and wanted != actual for wanted, actual in checks):
        return False
    if filters.created_from is not None and evidence.created_at < filters.created_from:
        return False
    return not (filters.created_to is not None and evidence.created_at > filters.created_to)
