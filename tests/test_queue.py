"""Tests for the processing queue: admission caps, priority, retries, cost ceiling."""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime, timedelta

import pytest

from evidence_engine.events import open_channel
from evidence_engine.exceptions import ValidationError
from evidence_engine.models.enums import JobPriority, JobState, JobType
from evidence_engine.queue.service import ProcessingQueue
from evidence_engine.schemas.events import EventType
from evidence_engine.schemas.queue import JobSpec, ProcessingJob

ALL_TYPES = list(JobType)


# ── Helpers ──────────────────────────────────────────────────────────


async def _ok(job: ProcessingJob) -> dict:
    return {"done": job.id}


def _queue(handler=_ok, **kwargs) -> ProcessingQueue:
    """Queue with the same handler for every job type and fast defaults."""
    kwargs.setdefault("tick_interval", 0.01)
    kwargs.setdefault("daily_cost_limit", 1000.0)
    kwargs.setdefault("default_timeout_ms", 2000)
    kwargs.setdefault("default_max_retries", 0)
    return ProcessingQueue({t: handler for t in ALL_TYPES}, **kwargs)


class _Clock:
    """Settable clock for the daily cost window."""

    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


# ── Submission ───────────────────────────────────────────────────────


class TestAddJob:
    @pytest.mark.asyncio()
    async def test_job_pending_until_started(self):
        queue = _queue()
        job_id = await queue.add_job(JobSpec(type=JobType.OCR, payload={"size": 1024}))

        assert job_id.startswith("job_")
        job = queue.get_job_status(job_id)
        assert job.state is JobState.PENDING
        assert job.estimated_cost == pytest.approx(0.5)
        metrics = queue.get_metrics()
        assert (metrics.total_jobs, metrics.pending_jobs, metrics.running_jobs) == (1, 1, 0)

    @pytest.mark.asyncio()
    async def test_defaults_applied(self):
        queue = _queue(default_max_retries=4, default_timeout_ms=1234)
        job = queue.get_job_status(await queue.add_job(JobSpec(type=JobType.COMPRESS)))
        assert job.max_retries == 4
        assert job.timeout_ms == 1234
        assert job.priority is JobPriority.MEDIUM

    @pytest.mark.asyncio()
    async def test_explicit_estimate_wins(self):
        queue = _queue()
        job = queue.get_job_status(await queue.add_job(JobSpec(type=JobType.OCR, estimated_cost=2.5)))
        assert job.estimated_cost == 2.5

    @pytest.mark.asyncio()
    async def test_no_handler(self):
        queue = ProcessingQueue({JobType.OCR: _ok})
        with pytest.raises(ValidationError, match="No handler registered"):
            await queue.add_job(JobSpec(type=JobType.STORAGE))

    @pytest.mark.asyncio()
    async def test_unknown_job_id(self):
        assert _queue().get_job_status("job_missing") is None

    @pytest.mark.asyncio()
    async def test_emits_job_added(self):
        channel = open_channel([EventType.JOB_ADDED])
        queue = _queue()
        job_id = await queue.add_job(JobSpec(type=JobType.TRANSFORM, priority=JobPriority.HIGH))

        event = channel.poll()
        assert event.job_id == job_id
        assert event.data["priority"] == "high"

    @pytest.mark.asyncio()
    async def test_has_active_until_finished(self):
        queue = _queue()
        assert queue.has_active(JobType.STORAGE) is False

        await queue.add_job(JobSpec(type=JobType.STORAGE))
        assert queue.has_active(JobType.STORAGE) is True
        assert queue.has_active(JobType.OCR) is False

        await queue.start()
        await queue.wait_idle()
        await queue.shutdown()
        assert queue.has_active(JobType.STORAGE) is False


# ── Execution ────────────────────────────────────────────────────────


class TestExecution:
    @pytest.mark.asyncio()
    async def test_runs_to_completion(self):
        channel = open_channel([EventType.JOB_STARTED, EventType.JOB_COMPLETED])
        queue = _queue()
        await queue.start()
        job_id = await queue.add_job(JobSpec(type=JobType.STORAGE, payload={"file_count": 2}))
        await queue.wait_idle()
        await queue.shutdown()

        job = queue.get_job_status(job_id)
        assert job.state is JobState.COMPLETED
        assert job.result == {"done": job_id}
        assert job.actual_cost == pytest.approx(0.04)
        assert job.started_at is not None
        assert job.completed_at is not None
        assert [e.event_type for e in channel.drain()] == [EventType.JOB_STARTED, EventType.JOB_COMPLETED]

        metrics = queue.get_metrics()
        assert metrics.completed_jobs == 1
        assert metrics.daily_cost == pytest.approx(0.04)
        assert metrics.total_cost == pytest.approx(0.04)

    @pytest.mark.asyncio()
    async def test_handler_gets_a_copy(self):
        async def mutate(job: ProcessingJob) -> None:
            job.payload["evidence_id"] = "tampered"

        queue = _queue(mutate)
        await queue.start()
        job_id = await queue.add_job(JobSpec(type=JobType.TRANSFORM, payload={"evidence_id": "ev_1"}))
        await queue.wait_idle()
        await queue.shutdown()

        assert queue.get_job_status(job_id).payload == {"evidence_id": "ev_1"}

    @pytest.mark.asyncio()
    async def test_status_is_a_snapshot(self):
        queue = _queue()
        job_id = await queue.add_job(JobSpec(type=JobType.OCR))
        snapshot = queue.get_job_status(job_id)
        snapshot.state = JobState.FAILED
        assert queue.get_job_status(job_id).state is JobState.PENDING

    @pytest.mark.asyncio()
    async def test_priority_then_fifo(self):
        order: list[str] = []

        async def record(job: ProcessingJob) -> None:
            order.append(job.payload["name"])

        queue = _queue(record, max_concurrent=1)
        for name, priority in [
            ("low-1", JobPriority.LOW),
            ("high-1", JobPriority.HIGH),
            ("medium-1", JobPriority.MEDIUM),
            ("high-2", JobPriority.HIGH),
            ("low-2", JobPriority.LOW),
        ]:
            await queue.add_job(JobSpec(type=JobType.TRANSFORM, priority=priority, payload={"name": name}))

        await queue.start()
        await queue.wait_idle()
        await queue.shutdown()

        assert order == ["high-1", "high-2", "medium-1", "low-1", "low-2"]

    @pytest.mark.asyncio()
    async def test_ocr_cap_does_not_block_other_types(self):
        """Five OCR jobs with an OCR cap of 2 and a global cap of 3."""
        gate = asyncio.Event()

        async def blocked(job: ProcessingJob) -> None:
            await gate.wait()

        queue = _queue(blocked, max_concurrent=3, type_limits={JobType.OCR: 2})
        await queue.start()
        ocr_ids = [await queue.add_job(JobSpec(type=JobType.OCR)) for _ in range(5)]

        assert queue.running_counts() == {JobType.OCR: 2}
        metrics = queue.get_metrics()
        assert (metrics.running_jobs, metrics.pending_jobs) == (2, 3)

        transform_id = await queue.add_job(JobSpec(type=JobType.TRANSFORM))
        assert queue.get_job_status(transform_id).state is JobState.RUNNING
        assert queue.running_counts() == {JobType.OCR: 2, JobType.TRANSFORM: 1}

        # Global cap reached: another type has to wait too
        compress_id = await queue.add_job(JobSpec(type=JobType.COMPRESS))
        assert queue.get_job_status(compress_id).state is JobState.PENDING

        gate.set()
        await queue.wait_idle()
        await queue.shutdown()

        assert all(queue.get_job_status(i).state is JobState.COMPLETED for i in [*ocr_ids, transform_id, compress_id])
        assert queue.peak_running_by_type[JobType.OCR] == 2
        assert queue.peak_running == 3

    @pytest.mark.asyncio()
    async def test_history_is_bounded(self):
        queue = _queue(history_size=2)
        await queue.start()
        ids = [await queue.add_job(JobSpec(type=JobType.STORAGE)) for _ in range(3)]
        await queue.wait_idle()
        await queue.shutdown()

        assert queue.get_job_status(ids[0]) is None
        assert queue.get_job_status(ids[2]).state is JobState.COMPLETED


# ── Failures ─────────────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio()
    async def test_max_retries_plus_one_attempts(self):
        attempts: list[int] = []
        channel = open_channel([EventType.JOB_RETRYING, EventType.JOB_FAILED])

        async def boom(job: ProcessingJob) -> None:
            attempts.append(job.retries)
            raise RuntimeError("boom")

        queue = _queue(boom)
        await queue.start()
        job_id = await queue.add_job(JobSpec(type=JobType.COMPRESS, max_retries=2))
        await queue.wait_idle()
        await queue.shutdown()

        assert attempts == [0, 1, 2]
        job = queue.get_job_status(job_id)
        assert job.state is JobState.FAILED
        assert job.retries == 2
        assert job.error == "boom"
        assert job.actual_cost == 0.0

        events = channel.drain()
        assert [e.event_type for e in events] == [
            EventType.JOB_RETRYING,
            EventType.JOB_RETRYING,
            EventType.JOB_FAILED,
        ]
        assert events[-1].data["attempts"] == 3

        metrics = queue.get_metrics()
        assert metrics.failed_jobs == 1
        assert metrics.daily_cost == 0.0

    @pytest.mark.asyncio()
    async def test_retry_then_success(self):
        calls = 0

        async def flaky(job: ProcessingJob) -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ValueError("transient")
            return "ok"

        queue = _queue(flaky)
        await queue.start()
        job_id = await queue.add_job(JobSpec(type=JobType.TRANSFORM, max_retries=3))
        await queue.wait_idle()
        await queue.shutdown()

        job = queue.get_job_status(job_id)
        assert job.state is JobState.COMPLETED
        assert job.retries == 1
        assert job.result == "ok"
        assert job.error is None

    @pytest.mark.asyncio()
    async def test_timeout_counts_as_failure(self):
        async def slow(job: ProcessingJob) -> None:
            await asyncio.sleep(5)

        queue = _queue(slow)
        await queue.start()
        job_id = await queue.add_job(JobSpec(type=JobType.OCR, timeout_ms=20, max_retries=0))
        await queue.wait_idle()
        await queue.shutdown()

        job = queue.get_job_status(job_id)
        assert job.state is JobState.FAILED
        assert job.error == "Job timed out after 20ms"

    @pytest.mark.asyncio()
    async def test_error_without_message_uses_class_name(self):
        async def bare(job: ProcessingJob) -> None:
            raise KeyError

        queue = _queue(bare)
        await queue.start()
        job_id = await queue.add_job(JobSpec(type=JobType.STORAGE))
        await queue.wait_idle()
        await queue.shutdown()

        assert queue.get_job_status(job_id).error == "KeyError"


# ── Daily cost ceiling ───────────────────────────────────────────────


class TestCostCeiling:
    @pytest.mark.asyncio()
    async def test_jobs_deferred_until_window_resets(self):
        clock = _Clock()
        channel = open_channel([EventType.COST_LIMIT_REACHED, EventType.DAILY_COST_RESET])
        queue = _queue(daily_cost_limit=1.0, clock=clock)
        await queue.start()

        first = await queue.add_job(JobSpec(type=JobType.COMPRESS, payload={"file_count": 12}))
        second = await queue.add_job(JobSpec(type=JobType.COMPRESS, payload={"file_count": 12}))
        # Reserved cost of the running job counts against the ceiling
        assert queue.get_job_status(second).state is JobState.PENDING

        await queue.wait_idle()
        assert queue.get_job_status(first).state is JobState.COMPLETED
        assert queue.get_job_status(second).state is JobState.PENDING
        assert queue.get_metrics().daily_cost == pytest.approx(0.6)
        assert queue.cost_window.spent <= queue.cost_window.limit

        events = channel.drain()
        assert [e.event_type for e in events] == [EventType.COST_LIMIT_REACHED]

        clock.now += timedelta(days=1)
        queue.dispatch()
        await queue.wait_idle()
        await queue.shutdown()

        assert queue.get_job_status(second).state is JobState.COMPLETED
        assert queue.get_metrics().daily_cost == pytest.approx(0.6)
        assert queue.get_metrics().total_cost == pytest.approx(1.2)
        assert EventType.DAILY_COST_RESET in [e.event_type for e in channel.drain()]

    @pytest.mark.asyncio()
    async def test_cost_blocked_job_does_not_block_cheaper_ones(self):
        queue = _queue(daily_cost_limit=1.0)
        await queue.start()
        expensive = await queue.add_job(JobSpec(type=JobType.OCR, estimated_cost=5.0, priority=JobPriority.HIGH))
        cheap = await queue.add_job(JobSpec(type=JobType.STORAGE, priority=JobPriority.LOW))
        await queue.wait_idle()
        await queue.shutdown()

        assert queue.get_job_status(expensive).state is JobState.PENDING
        assert queue.get_job_status(cheap).state is JobState.COMPLETED


# ── Lifecycle ────────────────────────────────────────────────────────


class TestShutdown:
    @pytest.mark.asyncio()
    async def test_running_finish_pending_stay(self):
        gate = asyncio.Event()

        async def blocked(job: ProcessingJob) -> None:
            await gate.wait()

        queue = _queue(blocked, max_concurrent=1)
        await queue.start()
        running = await queue.add_job(JobSpec(type=JobType.TRANSFORM))
        waiting = await queue.add_job(JobSpec(type=JobType.TRANSFORM))

        stopper = asyncio.create_task(queue.shutdown())
        await asyncio.sleep(0)
        gate.set()
        await stopper

        assert queue.get_job_status(running).state is JobState.COMPLETED
        assert queue.get_job_status(waiting).state is JobState.PENDING

        with pytest.raises(ValidationError, match="shutting down"):
            await queue.add_job(JobSpec(type=JobType.TRANSFORM))

    @pytest.mark.asyncio()
    async def test_restart_resumes_pending(self):
        queue = _queue()
        job_id = await queue.add_job(JobSpec(type=JobType.STORAGE))
        await queue.shutdown()
        await queue.start()
        await queue.wait_idle()
        await queue.shutdown()

        assert queue.get_job_status(job_id).state is JobState.COMPLETED


# ── Randomized scheduling ────────────────────────────────────────────


class TestRandomizedScheduling:
    """Random workloads never exceed any cap and every job ends in one terminal state."""

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("seed", range(6))
    async def test_caps_hold(self, seed):
        rng = random.Random(seed)
        max_concurrent = rng.randint(1, 4)
        type_limits = {t: rng.randint(1, 3) for t in ALL_TYPES}
        violations: list[str] = []
        queue: ProcessingQueue

        async def work(job: ProcessingJob) -> None:
            counts = queue.running_counts()
            if sum(counts.values()) > max_concurrent:
                violations.append(f"global {counts}")
            for job_type, running in counts.items():
                if running > type_limits[job_type]:
                    violations.append(f"{job_type.value} {counts}")
            await asyncio.sleep(job.payload["delay"])
            if job.payload["fail"]:
                raise RuntimeError("random failure")

        queue = _queue(work, max_concurrent=max_concurrent, type_limits=type_limits)
        await queue.start()
        ids = []
        for _ in range(rng.randint(10, 30)):
            spec = JobSpec(
                type=rng.choice(ALL_TYPES),
                priority=rng.choice(list(JobPriority)),
                payload={"delay": rng.uniform(0, 0.01), "fail": rng.random() < 0.2},
                max_retries=rng.randint(0, 2),
            )
            ids.append(await queue.add_job(spec))
            if rng.random() < 0.3:
                await asyncio.sleep(0)

        await queue.wait_idle()
        await queue.shutdown()

        assert violations == []
        assert queue.peak_running <= max_concurrent
        for job_type, peak in queue.peak_running_by_type.items():
            assert peak <= type_limits[job_type]

        states = [queue.get_job_status(i).state for i in ids]
        assert all(s in (JobState.COMPLETED, JobState.FAILED) for s in states)
        metrics = queue.get_metrics()
        assert metrics.completed_jobs + metrics.failed_jobs == len(ids)
        assert metrics.pending_jobs == 0
        assert metrics.running_jobs == 0

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("seed", range(4))
    async def test_daily_spend_stays_under_ceiling(self, seed):
        """Without OCR (time-priced) jobs the actual cost equals the estimate."""
        rng = random.Random(1000 + seed)
        limit = rng.uniform(0.3, 1.5)
        queue = _queue(daily_cost_limit=limit, max_concurrent=rng.randint(1, 4))
        await queue.start()
        for _ in range(rng.randint(10, 25)):
            job_type = rng.choice([JobType.TRANSFORM, JobType.COMPRESS, JobType.STORAGE])
            payload = {"file_count": rng.randint(1, 6), "table_count": rng.randint(0, 4)}
            await queue.add_job(JobSpec(type=job_type, payload=payload))
        await queue.wait_idle()
        await queue.shutdown()

        assert queue.cost_window.spent <= limit + 1e-9
