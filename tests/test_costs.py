"""Tests for the job cost model and the daily cost window."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from evidence_engine.models.enums import JobType
from evidence_engine.queue.costs import (
    DailyCostWindow,
    actual_job_cost,
    estimate_job_cost,
    ocr_cost,
    transform_cost,
)

MB = 1024 * 1024


class TestOcrCost:
    def test_floor(self):
        assert ocr_cost(0, 0.0) == pytest.approx(0.1)

    def test_size_rounds_up_to_whole_megabytes(self):
        assert ocr_cost(1, 0.0) == pytest.approx(0.5)
        assert ocr_cost(MB + 1, 0.0) == pytest.approx(1.0)

    def test_elapsed_rounds_up_to_whole_seconds(self):
        assert ocr_cost(MB, 0.2) == pytest.approx(0.6)
        assert ocr_cost(MB, 2.5) == pytest.approx(0.8)


class TestEstimates:
    def test_transform(self):
        assert transform_cost(2) == pytest.approx(0.25)
        assert estimate_job_cost(JobType.TRANSFORM, {}) == pytest.approx(0.15)

    def test_compress_counts_files(self):
        assert estimate_job_cost(JobType.COMPRESS, {"files": ["a", "b", "c"]}) == pytest.approx(0.15)
        assert estimate_job_cost(JobType.COMPRESS, {"file_count": 4}) == pytest.approx(0.2)
        assert estimate_job_cost(JobType.COMPRESS, {}) == pytest.approx(0.05)

    def test_storage(self):
        assert estimate_job_cost(JobType.STORAGE, {"file_count": 5}) == pytest.approx(0.1)

    def test_ocr_uses_size(self):
        assert estimate_job_cost(JobType.OCR, {"size": 3 * MB}) == pytest.approx(1.5)

    def test_actual_cost_uses_result_counts(self):
        cost = actual_job_cost(JobType.TRANSFORM, {"evidence_id": "e"}, 0.1, {"table_count": 3, "other": 9})
        assert cost == pytest.approx(0.35)

    def test_actual_ocr_cost_includes_time(self):
        assert actual_job_cost(JobType.OCR, {"size": MB}, 1.2, None) == pytest.approx(0.7)


class TestDailyCostWindow:
    def _clock(self, start: datetime):
        state = {"now": start}
        return state, lambda: state["now"]

    def test_admission(self):
        window = DailyCostWindow(limit=1.0)
        assert window.can_admit(1.0)
        assert not window.can_admit(0.6, reserved=0.5)
        window.record(0.7)
        assert window.remaining == pytest.approx(0.3)
        assert window.can_admit(0.3)
        assert not window.can_admit(0.31)

    def test_float_accumulation_tolerated(self):
        window = DailyCostWindow(limit=0.3)
        for _ in range(3):
            window.record(0.1)
        assert window.can_admit(0.0)

    def test_reset_at_midnight(self):
        state, clock = self._clock(datetime(2026, 3, 2, 23, 59, tzinfo=UTC))
        window = DailyCostWindow(limit=1.0, clock=clock)
        window.record(0.9)

        assert window.reset_if_window_elapsed() is False
        state["now"] += timedelta(minutes=2)
        assert window.reset_if_window_elapsed() is True
        assert window.spent == 0.0
        assert window.reset_if_window_elapsed() is False

    def test_explicit_now(self):
        window = DailyCostWindow(limit=1.0, clock=lambda: datetime(2026, 3, 2, 12, tzinfo=UTC))
        window.record(0.5)
        assert window.reset_if_window_elapsed(datetime(2026, 3, 3, 0, 1, tzinfo=UTC)) is True
        assert window.remaining == pytest.approx(1.0)

    def test_default_window_follows_local_date(self):
        window = DailyCostWindow(limit=1.0)
        now = window.clock()

        assert now.utcoffset() == datetime.now().astimezone().utcoffset()
        assert window.window_start == datetime.now().astimezone().date()
