"""Priority job queue with concurrency and daily cost caps.

Every job is in exactly one place at a time:
    pending  → ordered list (priority rank, arrival sequence)
    running  → task map, counted against the global and per-type caps
    finished → bounded history (completed or failed)

All bookkeeping happens in synchronous sections (dispatch, _finish) that
never await, so on a single event loop no other coroutine can observe a
half-updated state.

Usage:
    from evidence_engine.queue.service import processing_queue

    job_id = await processing_queue.add_job(JobSpec(type=JobType.OCR, payload={"evidence_id": eid}))
    job = processing_queue.get_job_status(job_id)
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
import time
import uuid
from collections import Counter, OrderedDict, deque
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

from evidence_engine.config import settings
from evidence_engine.events import emit_nowait
from evidence_engine.exceptions import ValidationError
from evidence_engine.models.enums import JobState, JobType
from evidence_engine.queue.costs import DailyCostWindow, actual_job_cost, estimate_job_cost
from evidence_engine.schemas.events import EventType, SystemEvent
from evidence_engine.schemas.queue import JobSpec, ProcessingJob, QueueMetrics

logger = logging.getLogger(__name__)

# Type alias for job handlers. Handlers receive a snapshot of the job.
JobHandler = Callable[[ProcessingJob], Coroutine[Any, Any, Any]]


def _default_type_limits() -> dict[JobType, int]:
    q = settings.queue
    return {
        JobType.OCR: q.queue_max_ocr_concurrent,
        JobType.TRANSFORM: q.queue_max_transform_concurrent,
        JobType.COMPRESS: q.queue_max_compress_concurrent,
        JobType.STORAGE: q.queue_max_storage_concurrent,
    }


class ProcessingQueue:
    """Cooperative scheduler for OCR, transform, compress and storage jobs."""

    def __init__(
        self,
        handlers: dict[JobType, JobHandler] | None = None,
        *,
        max_concurrent: int | None = None,
        type_limits: dict[JobType, int] | None = None,
        daily_cost_limit: float | None = None,
        history_size: int | None = None,
        tick_interval: float | None = None,
        default_timeout_ms: int | None = None,
        default_max_retries: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        q = settings.queue
        self._handlers: dict[JobType, JobHandler] = dict(handlers or {})
        self._max_concurrent = max_concurrent if max_concurrent is not None else q.queue_max_concurrent
        self._type_limits = _default_type_limits()
        self._type_limits.update(type_limits or {})
        limit = daily_cost_limit if daily_cost_limit is not None else q.queue_daily_cost_limit
        self._cost = DailyCostWindow(limit, clock) if clock else DailyCostWindow(limit)
        self._history_size = history_size if history_size is not None else q.queue_history_size
        self._tick_interval = tick_interval if tick_interval is not None else q.queue_tick_interval
        self._default_timeout_ms = default_timeout_ms or q.queue_default_timeout_ms
        self._default_max_retries = (
            default_max_retries if default_max_retries is not None else q.queue_default_max_retries
        )

        self._jobs: dict[str, ProcessingJob] = {}  # pending + running
        self._pending: list[tuple[int, int, str]] = []  # (priority rank, arrival seq, job id)
        self._arrival: dict[str, int] = {}
        self._running: dict[str, asyncio.Task[None]] = {}
        self._running_by_type: Counter[JobType] = Counter()
        self._reserved: dict[str, float] = {}
        self._history: OrderedDict[str, ProcessingJob] = OrderedDict()
        self._seq = itertools.count()

        self._accepting = True
        self._started = False
        self._loop_task: asyncio.Task[None] | None = None
        self._cost_block_notified = False

        # Metrics
        self._total_jobs = 0
        self._completed_jobs = 0
        self._failed_jobs = 0
        self._total_cost = 0.0
        self._processing_times: deque[float] = deque(maxlen=self._history_size or None)
        self._wait_times: deque[float] = deque(maxlen=self._history_size or None)
        self.peak_running = 0
        self.peak_running_by_type: Counter[JobType] = Counter()

    # ── Configuration ────────────────────────────────────────────────

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    @property
    def type_limits(self) -> dict[JobType, int]:
        return dict(self._type_limits)

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def cost_window(self) -> DailyCostWindow:
        return self._cost

    # ── Public API ───────────────────────────────────────────────────

    async def add_job(self, spec: JobSpec) -> str:
        """Validate and enqueue a job. Returns its id without waiting for execution.

        Raises:
            ValidationError: No handler for the job type, or the queue is shut down.
        """
        if not self._accepting:
            msg = "Processing queue is shutting down; job rejected"
            raise ValidationError(msg)
        if spec.type not in self._handlers:
            msg = f"No handler registered for job type '{spec.type.value}'"
            raise ValidationError(msg)

        estimate = spec.estimated_cost
        if estimate is None:
            estimate = estimate_job_cost(spec.type, spec.payload)

        job = ProcessingJob(
            id=f"job_{uuid.uuid4().hex[:16]}",
            type=spec.type,
            priority=spec.priority,
            payload=dict(spec.payload),
            max_retries=spec.max_retries if spec.max_retries is not None else self._default_max_retries,
            timeout_ms=spec.timeout_ms or self._default_timeout_ms,
            estimated_cost=estimate,
            created_at=datetime.now(UTC),
        )
        self._jobs[job.id] = job
        self._arrival[job.id] = next(self._seq)
        self._enqueue(job)
        self._total_jobs += 1

        logger.debug("Job %s added (%s, %s, est=%.3f)", job.id, job.type.value, job.priority.value, estimate)
        emit_nowait(SystemEvent(
            event_type=EventType.JOB_ADDED,
            job_id=job.id,
            data={"type": job.type.value, "priority": job.priority.value, "estimated_cost": estimate},
            source_module="queue.service",
        ))

        if self._started:
            self.dispatch()
        return job.id

    def get_job_status(self, job_id: str) -> ProcessingJob | None:
        """Snapshot of a pending, running or recently finished job; None if unknown or evicted."""
        job = self._jobs.get(job_id) or self._history.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    def get_metrics(self) -> QueueMetrics:
        return QueueMetrics(
            total_jobs=self._total_jobs,
            pending_jobs=len(self._pending),
            running_jobs=len(self._running),
            completed_jobs=self._completed_jobs,
            failed_jobs=self._failed_jobs,
            total_cost=round(self._total_cost, 4),
            daily_cost=round(self._cost.spent, 4),
            avg_processing_time=_mean(self._processing_times),
            queue_wait_time=_mean(self._wait_times),
        )

    def running_counts(self) -> dict[JobType, int]:
        return {t: n for t, n in self._running_by_type.items() if n}

    def has_active(self, job_type: JobType) -> bool:
        """True while a job of this type is pending, running or waiting to retry."""
        return any(job.type == job_type for job in self._jobs.values())

    # ── Admission ────────────────────────────────────────────────────

    def dispatch(self) -> list[str]:
        """Admit pending jobs in priority order while every cap allows it.

        A job blocked by its type cap or the cost ceiling stays pending and
        does not stop later jobs of other types from being admitted.
        Synchronous: never yields mid-mutation.
        """
        if not self._accepting:
            return []

        if self._cost.reset_if_window_elapsed():
            self._cost_block_notified = False
            logger.info("Daily cost window reset")
            emit_nowait(SystemEvent(event_type=EventType.DAILY_COST_RESET, source_module="queue.service"))

        admitted: list[str] = []
        remaining: list[tuple[int, int, str]] = []
        cost_blocked: list[str] = []

        for entry in self._pending:
            job = self._jobs[entry[2]]
            if len(self._running) >= self._max_concurrent:
                remaining.append(entry)
                continue
            if self._running_by_type[job.type] >= self._type_limits.get(job.type, self._max_concurrent):
                remaining.append(entry)
                continue
            if not self._cost.can_admit(job.estimated_cost, self._reserved_cost()):
                remaining.append(entry)
                cost_blocked.append(job.id)
                continue
            self._start(job)
            admitted.append(job.id)

        self._pending = remaining

        if cost_blocked and not self._cost_block_notified:
            self._cost_block_notified = True
            logger.warning(
                "Daily cost ceiling reached (spent=%.3f limit=%.3f) — %d job(s) deferred",
                self._cost.spent,
                self._cost.limit,
                len(cost_blocked),
            )
            emit_nowait(SystemEvent(
                event_type=EventType.COST_LIMIT_REACHED,
                data={"spent": self._cost.spent, "limit": self._cost.limit, "deferred": len(cost_blocked)},
                source_module="queue.service",
            ))
        return admitted

    def _reserved_cost(self) -> float:
        return sum(self._reserved.values())

    def _enqueue(self, job: ProcessingJob) -> None:
        bisect.insort(self._pending, (job.priority.rank, self._arrival[job.id], job.id))

    def _start(self, job: ProcessingJob) -> None:
        now = datetime.now(UTC)
        if job.retries == 0:
            self._wait_times.append((now - job.created_at).total_seconds() * 1000)
        job.state = JobState.RUNNING
        job.started_at = now
        self._running_by_type[job.type] += 1
        self._reserved[job.id] = job.estimated_cost
        self._running[job.id] = asyncio.get_running_loop().create_task(self._run(job), name=f"job-{job.id}")

        self.peak_running = max(self.peak_running, len(self._running))
        self.peak_running_by_type[job.type] = max(self.peak_running_by_type[job.type], self._running_by_type[job.type])

        emit_nowait(SystemEvent(
            event_type=EventType.JOB_STARTED,
            job_id=job.id,
            data={"type": job.type.value, "attempt": job.retries + 1},
            source_module="queue.service",
        ))

    # ── Execution ────────────────────────────────────────────────────

    async def _run(self, job: ProcessingJob) -> None:
        handler = self._handlers[job.type]
        timeout = asyncio.timeout(job.timeout_ms / 1000)
        start = time.monotonic()
        result: Any = None
        error: str | None = None
        try:
            async with timeout:
                result = await handler(job.model_copy(deep=True))
        except TimeoutError as exc:
            if timeout.expired():
                error = f"Job timed out after {job.timeout_ms}ms"
            else:
                error = str(exc) or "TimeoutError"
        except asyncio.CancelledError:
            self._finish(job, None, "Job cancelled", time.monotonic() - start, retry=False)
            raise
        except Exception as exc:
            logger.warning("Job %s (%s) attempt %d failed: %s", job.id, job.type.value, job.retries + 1, exc)
            error = str(exc) or exc.__class__.__name__
        self._finish(job, result, error, time.monotonic() - start)

    def _finish(self, job: ProcessingJob, result: Any, error: str | None, elapsed: float, retry: bool = True) -> None:
        """Move a job out of the running set. Synchronous."""
        self._running.pop(job.id, None)
        self._running_by_type[job.type] -= 1
        self._reserved.pop(job.id, None)
        now = datetime.now(UTC)

        if error is None:
            cost = actual_job_cost(job.type, job.payload, elapsed, result)
            self._cost.record(cost)
            self._total_cost += cost
            job.actual_cost = cost
            job.state = JobState.COMPLETED
            job.completed_at = now
            job.result = result
            job.error = None
            self._completed_jobs += 1
            self._processing_times.append(elapsed * 1000)
            self._archive(job)
            logger.info("Job %s (%s) completed in %.0fms cost=%.3f", job.id, job.type.value, elapsed * 1000, cost)
            emit_nowait(SystemEvent(
                event_type=EventType.JOB_COMPLETED,
                job_id=job.id,
                data={"type": job.type.value, "actual_cost": cost, "processing_time_ms": int(elapsed * 1000)},
                source_module="queue.service",
            ))
        elif retry and job.retries < job.max_retries:
            job.retries += 1
            job.error = error
            job.state = JobState.PENDING
            job.started_at = None
            self._enqueue(job)
            emit_nowait(SystemEvent(
                event_type=EventType.JOB_RETRYING,
                job_id=job.id,
                data={"type": job.type.value, "retries": job.retries, "error": error},
                source_module="queue.service",
            ))
        else:
            job.state = JobState.FAILED
            job.error = error
            job.completed_at = now
            job.actual_cost = 0.0
            self._failed_jobs += 1
            self._archive(job)
            logger.error("Job %s (%s) failed after %d attempt(s): %s", job.id, job.type.value, job.attempts, error)
            emit_nowait(SystemEvent(
                event_type=EventType.JOB_FAILED,
                job_id=job.id,
                data={"type": job.type.value, "attempts": job.attempts, "error": error},
                source_module="queue.service",
            ))

        if self._started and self._accepting:
            self.dispatch()

    def _archive(self, job: ProcessingJob) -> None:
        self._jobs.pop(job.id, None)
        self._arrival.pop(job.id, None)
        self._history[job.id] = job
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Begin the recurring dispatch cycle."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._accepting = True
        self._started = True
        self._loop_task = asyncio.create_task(self._dispatch_loop(), name="queue-dispatch")
        logger.info(
            "Processing queue started (max=%d, caps=%s, daily_limit=%.2f)",
            self._max_concurrent,
            {t.value: n for t, n in self._type_limits.items()},
            self._cost.limit,
        )

    async def _dispatch_loop(self) -> None:
        while True:
            try:
                self.dispatch()
            except Exception:
                logger.exception("Dispatch cycle failed")
            await asyncio.sleep(self._tick_interval)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop admitting, let running jobs finish or time out, then return.

        Pending jobs stay pending and are reported by get_job_status.
        """
        self._accepting = False
        self._started = False
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None

        running = list(self._running.values())
        if running:
            logger.info("Waiting for %d running job(s) to finish", len(running))
            await asyncio.wait(running, timeout=timeout)
        logger.info("Processing queue stopped (%d pending left)", len(self._pending))

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Wait until nothing is running and nothing admissible is pending."""
        while True:
            if self._started:
                self.dispatch()
            if not self._running:
                return
            await asyncio.wait(list(self._running.values()), return_when=asyncio.FIRST_COMPLETED)
            await asyncio.sleep(poll_interval if not self._running else 0)


def _mean(values: deque[float]) -> float:
    return round(sum(values) / len(values), 3) if values else 0.0


# Module-level singleton; handlers are bound at startup (see queue.handlers).
processing_queue = ProcessingQueue()
