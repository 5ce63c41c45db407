"""
Job Queue & Scheduler

Owns the job collection and the admitted set, and keeps the number of
PROCESSING jobs at the concurrency limit:

- enqueue() adds PENDING jobs and runs a reconciliation pass
- reconcile() admits the oldest PENDING jobs into free slots
- a finishing job releases its slot and runs reconcile() again

All state lives on one event loop. reconcile() never awaits, so a pass is
atomic with respect to every other mutation. The job collection is a tuple
of frozen records replaced wholesale on each change; observers get the new
tuple after every commit.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from studiostyle.core.config import settings
from studiostyle.core.exceptions import DuplicateJobError, JobDeadlineExceeded
from studiostyle.core.logging import LogContext, get_logger
from studiostyle.core.metrics import record_job_completion, record_queue_depth
from studiostyle.jobs.models import Job, JobResults, JobStatus
from studiostyle.pipeline.provider import TransformProvider
from studiostyle.pipeline.stages import process_transform_stage

logger = get_logger(__name__)

Snapshot = Tuple[Job, ...]
Observer = Callable[[Snapshot], None]

INTERRUPTED_REASON = "Processing was interrupted before it finished"


# =============================================================================
# Retry Policy Hook
# =============================================================================

class RetryPolicy(ABC):
    """
    Decides whether a failed processing attempt is re-run.

    Retries happen while the job stays PROCESSING and keeps its slot;
    a job only becomes FAILED once the policy gives up.
    """

    @abstractmethod
    def should_retry(self, job: Job, attempt: int, error: BaseException) -> bool:
        pass

    def delay(self, attempt: int) -> float:
        """Seconds to wait before the next attempt."""
        return 0.0


class NeverRetry(RetryPolicy):
    """Every failure is final."""

    def should_retry(self, job: Job, attempt: int, error: BaseException) -> bool:
        return False


class QueueStats(BaseModel):
    """Counts for a progress display."""
    model_config = ConfigDict(frozen=True)

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    concurrency_limit: int

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed

    @property
    def is_idle(self) -> bool:
        return self.pending == 0 and self.processing == 0


def failure_message(error: BaseException) -> str:
    """Human-readable reason for a failed job."""
    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__


# =============================================================================
# Scheduler
# =============================================================================

class JobScheduler:
    """Concurrency-limited job queue driven by explicit reconciliation passes."""

    def __init__(
        self,
        provider: TransformProvider,
        concurrency_limit: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        job_timeout: Optional[float] = None
    ):
        limit = settings.CONCURRENCY_LIMIT if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValueError(f"concurrency_limit must be at least 1, got {limit}")

        self.provider = provider
        self.retry_policy = retry_policy or NeverRetry()
        self.job_timeout = job_timeout if job_timeout is not None else settings.JOB_TIMEOUT_SECONDS
        self._limit = limit

        self._jobs: Snapshot = ()
        self._admitted: FrozenSet[str] = frozenset()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._next_sequence = 1
        self._observers: List[Observer] = []
        self._changed = asyncio.Event()
        self._closed = False

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def admitted(self) -> FrozenSet[str]:
        return self._admitted

    def snapshot(self) -> Snapshot:
        """All jobs, newest batch first."""
        return self._jobs

    def get(self, job_id: str) -> Optional[Job]:
        for job in self._jobs:
            if job.id == job_id:
                return job
        return None

    def stats(self) -> QueueStats:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs:
            counts[job.status] += 1
        return QueueStats(
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            concurrency_limit=self._limit,
        )

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Call observer with the new snapshot after every change. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def wait_for(self, job_id: str) -> Job:
        """Wait until the job is COMPLETED or FAILED and return it."""
        if self.get(job_id) is None:
            raise KeyError(job_id)
        await self._wait_until(lambda: self._closed or self.get(job_id).status.is_terminal)
        return self.get(job_id)

    async def join(self):
        """Wait until no job is PENDING or PROCESSING."""
        await self._wait_until(lambda: self._closed or self.stats().is_idle)

    async def _wait_until(self, predicate: Callable[[], bool]):
        while not predicate():
            await self._changed.wait()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _commit(self, jobs: Snapshot, admitted: Optional[Iterable[str]] = None):
        """Install a new collection (and admitted set) and notify observers."""
        self._jobs = jobs
        if admitted is not None:
            self._admitted = frozenset(admitted)

        stats = self.stats()
        record_queue_depth(stats.pending, stats.processing)

        # Wake every waiter, then arm a fresh event for the next change
        self._changed.set()
        self._changed = asyncio.Event()

        for observer in list(self._observers):
            try:
                observer(self._jobs)
            except Exception:
                logger.exception("observer_failed", observer=repr(observer))

    def _replace(self, job_id: str, change: Callable[[Job], Job]) -> Snapshot:
        return tuple(change(job) if job.id == job_id else job for job in self._jobs)

    def enqueue(self, jobs: Iterable[Job]) -> List[Job]:
        """
        Add PENDING jobs (in submission order) and run a reconciliation pass.

        Must be called from the event loop. New jobs go to the front of the
        display order; admission order follows the stamped sequence numbers.
        """
        if self._closed:
            raise RuntimeError("Scheduler has been shut down")

        jobs = list(jobs)
        known = {job.id for job in self._jobs}
        stamped: List[Job] = []
        for job in jobs:
            if job.id in known:
                raise DuplicateJobError(job.id)
            if job.status != JobStatus.PENDING:
                raise ValueError(f"Only PENDING jobs can be enqueued, '{job.id}' is {job.status.value}")
            known.add(job.id)
            stamped.append(job.with_sequence(self._next_sequence + len(stamped)))

        if not stamped:
            return []

        self._next_sequence += len(stamped)
        self._commit(tuple(stamped) + self._jobs)
        logger.info("jobs_enqueued", count=len(stamped), queue_size=len(self._jobs))

        self.reconcile()
        return [self.get(job.id) for job in stamped]

    def reconcile(self) -> List[Job]:
        """
        Admit the oldest PENDING jobs into free slots.

        Idempotent: with no new pending work and no freed slot it changes
        nothing. Returns the jobs admitted by this pass.
        """
        if self._closed:
            return []

        processing = sum(1 for job in self._jobs if job.status == JobStatus.PROCESSING)
        available_slots = self._limit - processing
        if available_slots <= 0:
            return []

        pending = sorted(
            (job for job in self._jobs if job.status == JobStatus.PENDING),
            key=lambda job: job.sequence
        )
        if not pending:
            return []

        loop = asyncio.get_running_loop()
        selected = {job.id: job.mark_processing() for job in pending[:available_slots]}
        self._commit(
            tuple(selected.get(job.id, job) for job in self._jobs),
            self._admitted | selected.keys()
        )

        for job in selected.values():
            self._tasks[job.id] = loop.create_task(self._run(job), name=f"job:{job.id}")

        logger.info(
            "jobs_admitted",
            job_ids=list(selected),
            processing=processing + len(selected),
            concurrency_limit=self._limit
        )
        return list(selected.values())

    def _finish(self, job_id: str, change: Callable[[Job], Job]):
        """Apply the terminal status, free the slot, and admit the next job."""
        self._commit(self._replace(job_id, change), self._admitted - {job_id})
        self.reconcile()

    # -------------------------------------------------------------------------
    # Per-job processing
    # -------------------------------------------------------------------------

    async def _attempt(self, job: Job) -> JobResults:
        image_bytes = await job.source.read_bytes()
        stage = process_transform_stage(image_bytes, job.source.mime_type, self.provider)
        if self.job_timeout is None:
            return await stage
        try:
            return await asyncio.wait_for(stage, timeout=self.job_timeout)
        except asyncio.TimeoutError:
            raise JobDeadlineExceeded(self.job_timeout, job_id=job.id)

    async def _process_with_retries(self, job: Job) -> JobResults:
        attempt = 0
        while True:
            attempt += 1
            self._commit(self._replace(job.id, lambda j: j.with_attempts(attempt)))
            try:
                return await self._attempt(job)
            except Exception as e:
                if not self.retry_policy.should_retry(self.get(job.id), attempt, e):
                    raise
                delay = self.retry_policy.delay(attempt)
                logger.warning(
                    "job_attempt_failed",
                    attempt=attempt,
                    retry_in_seconds=delay,
                    error=failure_message(e)
                )
                if delay > 0:
                    await asyncio.sleep(delay)

    async def _run(self, job: Job):
        """Processing task for one admitted job. Never raises except on cancellation."""
        finalize: Callable[[Job], Job] = lambda j: j.mark_failed(INTERRUPTED_REASON)

        with LogContext(job_id=job.id, operation="process"):
            logger.info("job_started", filename=job.source.filename, mime_type=job.source.mime_type)
            try:
                results = await self._process_with_retries(job)
                finalize = lambda j: j.mark_completed(results)
                record_job_completion(JobStatus.COMPLETED.value.lower())
                logger.info("job_completed", filename=job.source.filename)
            except asyncio.CancelledError:
                record_job_completion(JobStatus.FAILED.value.lower())
                logger.warning("job_interrupted", filename=job.source.filename)
                raise
            except Exception as e:
                reason = failure_message(e)
                finalize = lambda j: j.mark_failed(reason)
                record_job_completion(JobStatus.FAILED.value.lower())
                logger.warning(
                    "job_failed",
                    filename=job.source.filename,
                    error=reason,
                    error_type=type(e).__name__
                )
            finally:
                self._tasks.pop(job.id, None)
                self._finish(job.id, finalize)

    async def shutdown(self):
        """Stop admitting, cancel running jobs and wait for them to settle."""
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        # Tasks cancelled before their first step never ran their cleanup
        leftover = {job.id for job in self._jobs if job.status == JobStatus.PROCESSING}
        if leftover:
            for _ in leftover:
                record_job_completion(JobStatus.FAILED.value.lower())
            self._commit(
                tuple(
                    job.mark_failed(INTERRUPTED_REASON) if job.id in leftover else job
                    for job in self._jobs
                ),
                self._admitted - leftover
            )
        else:
            self._changed.set()
        logger.info("scheduler_shutdown", cancelled=len(tasks))
