"""Tests for evidence repositories.

Covers:
- InMemoryEvidenceRepository: copy semantics, filters, pagination, tombstones, stats
- Record mapping between Evidence and EvidenceRecord
- Blob keys still referenced by live evidence
- SqlEvidenceRepository against a mocked session
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from evidence_engine.evidence.repository import (
    InMemoryEvidenceRepository,
    SqlEvidenceRepository,
    from_record,
    to_record,
)
from evidence_engine.models.enums import EvidenceSource, EvidenceType, ProcessingStatus
from evidence_engine.models.evidence import EvidenceRecord
from evidence_engine.schemas.evidence import Evidence, EvidenceContent, EvidenceFilter, TableData

# ── Helpers ──────────────────────────────────────────────────────────

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _evidence(
    n: int = 0,
    evidence_type: EvidenceType = EvidenceType.CSV,
    status: ProcessingStatus = ProcessingStatus.COMPLETED,
    source: EvidenceSource = EvidenceSource.UPLOAD,
    quality: float = 0.9,
    size: int = 100,
) -> Evidence:
    return Evidence(
        type=evidence_type,
        source=source,
        original_filename=f"file_{n}.csv",
        mime_type="text/csv",
        size=size,
        status=status,
        quality_score=quality,
        created_at=BASE_TIME + timedelta(hours=n),
    )


@pytest.fixture
def repo() -> InMemoryEvidenceRepository:
    return InMemoryEvidenceRepository()


def _session_factory(db: AsyncMock) -> MagicMock:
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=db)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


# ── In-memory ────────────────────────────────────────────────────────


class TestInMemoryRepository:
    @pytest.mark.asyncio()
    async def test_save_and_find_return_copies(self, repo):
        evidence = _evidence()
        await repo.save(evidence)
        evidence.original_filename = "mutated.csv"

        found = await repo.find(evidence.id)
        assert found.original_filename == "file_0.csv"
        found.quality_score = 0.1
        assert (await repo.find(evidence.id)).quality_score == 0.9

    @pytest.mark.asyncio()
    async def test_find_missing(self, repo):
        assert await repo.find("evidence_missing") is None

    @pytest.mark.asyncio()
    async def test_update_replaces(self, repo):
        evidence = _evidence()
        await repo.save(evidence)
        evidence.status = ProcessingStatus.FAILED
        await repo.update(evidence)
        assert (await repo.find(evidence.id)).status is ProcessingStatus.FAILED

    @pytest.mark.asyncio()
    async def test_list_newest_first_with_pages(self, repo):
        items = [_evidence(n) for n in range(5)]
        for item in items:
            await repo.save(item)

        first = await repo.list(page=1, limit=2)
        last = await repo.list(page=3, limit=2)

        assert [e.id for e in first.items] == [items[4].id, items[3].id]
        assert [e.id for e in last.items] == [items[0].id]
        assert first.total == 5
        assert first.total_pages == 3

    @pytest.mark.asyncio()
    async def test_list_page_clamped(self, repo):
        await repo.save(_evidence())
        page = await repo.list(page=0)
        assert page.page == 1
        assert len(page.items) == 1

    @pytest.mark.asyncio()
    async def test_list_filters(self, repo):
        csv = _evidence(0)
        pdf = _evidence(1, evidence_type=EvidenceType.PDF)
        failed = _evidence(2, status=ProcessingStatus.FAILED)
        fetched = _evidence(3, evidence_type=EvidenceType.URL, source=EvidenceSource.URL_FETCH)
        for item in (csv, pdf, failed, fetched):
            await repo.save(item)

        by_type = await repo.list(EvidenceFilter(type=EvidenceType.PDF))
        by_status = await repo.list(EvidenceFilter(status=ProcessingStatus.FAILED))
        by_source = await repo.list(EvidenceFilter(source=EvidenceSource.URL_FETCH))
        by_range = await repo.list(
            EvidenceFilter(created_from=BASE_TIME + timedelta(hours=1), created_to=BASE_TIME + timedelta(hours=2))
        )

        assert [e.id for e in by_type.items] == [pdf.id]
        assert [e.id for e in by_status.items] == [failed.id]
        assert [e.id for e in by_source.items] == [fetched.id]
        assert [e.id for e in by_range.items] == [failed.id, pdf.id]

    @pytest.mark.asyncio()
    async def test_soft_delete_hides_but_keeps_tombstone(self, repo):
        evidence = _evidence()
        await repo.save(evidence)

        assert await repo.soft_delete(evidence.id) is True
        assert await repo.find(evidence.id) is None
        tombstone = await repo.find(evidence.id, include_deleted=True)
        assert tombstone.is_deleted
        assert (await repo.list()).total == 0

    @pytest.mark.asyncio()
    async def test_soft_delete_twice_or_missing(self, repo):
        evidence = _evidence()
        await repo.save(evidence)
        await repo.soft_delete(evidence.id)

        assert await repo.soft_delete(evidence.id) is False
        assert await repo.soft_delete("evidence_missing") is False

    @pytest.mark.asyncio()
    async def test_purge_deleted(self, repo):
        old, recent, live = _evidence(0), _evidence(1), _evidence(2)
        for item in (old, recent, live):
            await repo.save(item)
        await repo.soft_delete(old.id, when=BASE_TIME)
        await repo.soft_delete(recent.id, when=BASE_TIME + timedelta(days=10))

        purged = await repo.purge_deleted(BASE_TIME + timedelta(days=5))

        assert purged == 1
        assert len(repo) == 2
        assert await repo.find(old.id, include_deleted=True) is None
        assert await repo.find(live.id) is not None

    @pytest.mark.asyncio()
    async def test_referenced_blob_keys_skip_deleted(self, repo):
        live, dead, bare = _evidence(0), _evidence(1), _evidence(2)
        live.metadata.raw_blob_key = "a" * 64
        live.metadata.storage = {"format": "gzip", "blob_key": "b" * 64}
        dead.metadata.raw_blob_key = "c" * 64
        for item in (live, dead, bare):
            await repo.save(item)
        await repo.soft_delete(dead.id)

        assert await repo.referenced_blob_keys() == {"a" * 64, "b" * 64}

    @pytest.mark.asyncio()
    async def test_statistics_skip_deleted(self, repo):
        await repo.save(_evidence(0, quality=0.9, size=100))
        await repo.save(_evidence(1, evidence_type=EvidenceType.PDF, quality=0.6, size=50))
        await repo.save(_evidence(2, status=ProcessingStatus.FAILED, quality=0.0, size=10))
        gone = _evidence(3, quality=1.0, size=999)
        await repo.save(gone)
        await repo.soft_delete(gone.id)

        stats = await repo.statistics()

        assert stats.total == 3
        assert stats.by_type == {"csv": 2, "pdf": 1}
        assert stats.by_status == {"completed": 2, "failed": 1}
        assert stats.by_source == {"upload": 3}
        assert stats.total_size == 160
        assert stats.average_quality == pytest.approx(0.5)

    @pytest.mark.asyncio()
    async def test_statistics_empty(self, repo):
        stats = await repo.statistics()
        assert stats.total == 0
        assert stats.average_quality == 0.0


# ── Record mapping ───────────────────────────────────────────────────


class TestRecordMapping:
    def test_round_trip(self):
        evidence = _evidence(evidence_type=EvidenceType.EXCEL)
        evidence.content = EvidenceContent(
            text="Revenue",
            tables=[TableData(title="Q3", headers=["a"], rows=[["x"]])],
            error="partial read",
        )
        evidence.metadata.language = "en"

        record = to_record(evidence)
        assert record.evidence_type == "excel"
        assert record.metadata_["language"] == "en"
        assert record.error == "partial read"

        restored = from_record(record)
        assert restored.id == evidence.id
        assert restored.type is EvidenceType.EXCEL
        assert restored.content.tables[0].title == "Q3"
        assert restored.metadata.language == "en"

    def test_long_filename_truncated(self):
        evidence = _evidence()
        evidence.original_filename = "x" * 400 + ".csv"
        assert len(to_record(evidence).original_filename) == 255


# ── SQLAlchemy ───────────────────────────────────────────────────────


class TestSqlRepository:
    @pytest.mark.asyncio()
    async def test_save_adds_record(self):
        db = AsyncMock()
        db.add = MagicMock()
        repo = SqlEvidenceRepository(_session_factory(db))

        evidence = _evidence()
        await repo.save(evidence)

        record = db.add.call_args.args[0]
        assert isinstance(record, EvidenceRecord)
        assert record.id == evidence.id
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_find_hides_tombstones(self):
        evidence = _evidence()
        evidence.deleted_at = BASE_TIME
        db = AsyncMock()
        db.get = AsyncMock(return_value=to_record(evidence))
        repo = SqlEvidenceRepository(_session_factory(db))

        assert await repo.find(evidence.id) is None
        found = await repo.find(evidence.id, include_deleted=True)
        assert found.id == evidence.id

    @pytest.mark.asyncio()
    async def test_soft_delete_reports_rowcount(self):
        db = AsyncMock()
        db.execute = AsyncMock(return_value=MagicMock(rowcount=0))
        repo = SqlEvidenceRepository(_session_factory(db))

        assert await repo.soft_delete("evidence_missing") is False
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_referenced_blob_keys(self):
        result = MagicMock()
        result.scalars.return_value.all.return_value = [
            {"raw_blob_key": "a" * 64, "storage": {"format": "gzip", "blob_key": "b" * 64}},
            {"raw_blob_key": None},
            None,
        ]
        db = AsyncMock()
        db.execute = AsyncMock(return_value=result)
        repo = SqlEvidenceRepository(_session_factory(db))

        assert await repo.referenced_blob_keys() == {"a" * 64, "b" * 64}
