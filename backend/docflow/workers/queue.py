"""
In-process Job Queue with bounded retry and exponential backoff

Replaces a broker round-trip with an asyncio worker pool inside the API
process.  Reliability settings mirror what a broker-backed deployment
would configure:

  priority       0-10, higher first; FIFO within a priority
  max_attempts   default 3 (first run + 2 retries)
  retry_delay    base delay in seconds, doubled per attempt:
                   delay(n) = retry_delay × 2^(n-1)   after the n-th failed attempt
  timeout        per attempt; payloads flagged `ocr` get timeout × ocr multiplier

Failure classification (by exception type only):
  PermanentProcessingError          → failed immediately, no retry
  TransientProcessingError, timeout,
  any other exception               → retried until attempts == max_attempts

A job that fails terminally forwards its error to the repository
(`mark_failed` on payload["document_id"]), so the document never stays
stuck in a non-terminal state because its job gave up.

Each job is claimed by exactly one worker: the claim (pop + status=running)
happens under the queue's Condition lock.  The queue is not durable and
delivery is at-least-once per attempt; handlers must be idempotent.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from docflow.core.errors import NotFoundError, PermanentProcessingError, QueueClosedError

if TYPE_CHECKING:
    from docflow.repository.base import DocumentRepository

logger = logging.getLogger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 10


class JobStatus(str, Enum):
    PENDING   = "pending"     # waiting in the ready heap or for its backoff to elapse
    RUNNING   = "running"     # claimed by a worker
    COMPLETED = "completed"
    FAILED    = "failed"


@dataclass
class Job:
    """A unit of asynchronous work with bounded retry semantics."""
    id:              str
    type:            str
    payload:         dict[str, Any]
    status:          JobStatus = JobStatus.PENDING
    attempts:        int       = 0
    max_attempts:    int       = 3
    retry_delay:     float     = 5.0
    priority:        int       = 5
    timeout:         float     = 120.0
    created_at:      datetime  = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at:     datetime | None = None
    last_error:      str | None      = None
    backoff_history: list[float]     = field(default_factory=list)

    @property
    def document_id(self) -> str | None:
        return self.payload.get("document_id")

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


Handler = Callable[[Job], Awaitable[Any]]


class JobQueue:
    """
    Priority job queue consumed by an asyncio worker pool.

    Usage:
        queue = JobQueue(repository)
        queue.register("document_ingest", handler)
        await queue.start(pool_size=2)
        job_id = await queue.enqueue("document_ingest", {"document_id": ...})
        ...
        await queue.stop()
    """

    def __init__(
        self,
        repository: DocumentRepository | None = None,
        *,
        max_attempts:           int   = 3,
        retry_delay:            float = 5.0,
        timeout:                float = 120.0,
        default_priority:       int   = 5,
        ocr_timeout_multiplier: float = 3.0,
        retain_finished:        int   = 1000,
    ) -> None:
        self._repository = repository
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._timeout = timeout
        self._default_priority = default_priority
        self._ocr_multiplier = ocr_timeout_multiplier

        self._handlers: dict[str, Handler] = {}
        self._jobs: dict[str, Job] = {}
        self._finished: deque[str] = deque()
        self._retain_finished = retain_finished

        self._ready:   list[tuple[int, int, str]]   = []   # (-priority, seq, job_id)
        self._delayed: list[tuple[float, int, str]] = []   # (eligible_at, seq, job_id)
        self._seq = itertools.count()
        self._cond = asyncio.Condition()

        self._workers: list[asyncio.Task] = []
        self._running = 0
        self._closed = False
        self._stopping = False
        self._totals: Counter[str] = Counter()

    # ── Registration ──────────────────────────────────────────────────────

    def register(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler

    # ── Producer side ─────────────────────────────────────────────────────

    async def enqueue(
        self,
        job_type: str,
        payload:  dict[str, Any],
        *,
        priority:     int | None   = None,
        max_attempts: int | None   = None,
        retry_delay:  float | None = None,
        timeout:      float | None = None,
    ) -> str:
        """Queue a job and return its id immediately."""
        if self._closed:
            raise QueueClosedError("Job queue is closed and not accepting new work")
        if job_type not in self._handlers:
            raise ValueError(f"No handler registered for job type '{job_type}'")

        priority = self._default_priority if priority is None else priority
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be within {MIN_PRIORITY}-{MAX_PRIORITY}, got {priority}")

        max_attempts = self._max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        timeout = self._timeout if timeout is None else timeout
        if payload.get("ocr"):
            timeout *= self._ocr_multiplier

        job = Job(
            id=str(uuid.uuid4()),
            type=job_type,
            payload=payload,
            max_attempts=max_attempts,
            retry_delay=self._retry_delay if retry_delay is None else retry_delay,
            priority=priority,
            timeout=timeout,
        )
        self._jobs[job.id] = job

        async with self._cond:
            heapq.heappush(self._ready, (-job.priority, next(self._seq), job.id))
            self._cond.notify_all()

        self._totals["enqueued"] += 1
        logger.info(
            "Job enqueued | job=%s type=%s priority=%d doc=%s",
            job.id, job.type, job.priority, job.document_id or "?",
        )
        return job.id

    # ── Lookups ───────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    @property
    def depth(self) -> int:
        """Jobs waiting to run (ready plus backing off)."""
        return len(self._ready) + len(self._delayed)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def stats(self) -> dict[str, int]:
        return {
            "ready":     len(self._ready),
            "delayed":   len(self._delayed),
            "running":   self._running,
            "workers":   len(self._workers),
            "enqueued":  self._totals["enqueued"],
            "completed": self._totals["completed"],
            "failed":    self._totals["failed"],
            "retried":   self._totals["retried"],
        }

    # ── Pool lifecycle ────────────────────────────────────────────────────

    async def start(self, pool_size: int = 2) -> None:
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        if self._workers:
            return
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker_loop(n), name=f"docflow-worker-{n}")
            for n in range(pool_size)
        ]
        logger.info("Job queue started | workers=%d", pool_size)

    def close(self) -> None:
        """Stop accepting new jobs; queued jobs still run while workers are up."""
        self._closed = True

    async def stop(self, grace_seconds: float | None = 10.0) -> None:
        """
        Close the queue and shut the pool down.  In-flight attempts get
        `grace_seconds` to finish before their workers are cancelled.
        """
        self.close()
        if not self._workers:
            return

        async with self._cond:
            self._stopping = True
            self._cond.notify_all()

        done, pending = await asyncio.wait(self._workers, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Job queue stop | cancelled %d busy worker(s)", len(pending))

        self._workers = []
        logger.info("Job queue stopped | stats=%s", self.stats())

    async def join(self) -> None:
        """Wait until no job is ready, backing off or running."""
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._ready and not self._delayed and self._running == 0
            )

    # ── Worker side ───────────────────────────────────────────────────────

    async def _worker_loop(self, n: int) -> None:
        while True:
            job = await self._claim()
            if job is None:
                logger.debug("Worker exiting | worker=%d", n)
                return
            try:
                await self._execute(job)
            except Exception:
                # a worker outlives any single job
                logger.exception("Worker error | worker=%d job=%s", n, job.id)

    def _promote_due(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._delayed)
            job = self._jobs[job_id]
            heapq.heappush(self._ready, (-job.priority, seq, job_id))

    async def _claim(self) -> Job | None:
        loop = asyncio.get_running_loop()
        async with self._cond:
            while True:
                if self._stopping:
                    return None

                self._promote_due(loop.time())
                if self._ready:
                    _, _, job_id = heapq.heappop(self._ready)
                    job = self._jobs[job_id]
                    job.status = JobStatus.RUNNING
                    job.attempts += 1
                    self._running += 1
                    return job

                wait = None
                if self._delayed:
                    wait = max(0.0, self._delayed[0][0] - loop.time())
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    async def _execute(self, job: Job) -> None:
        handler = self._handlers[job.type]
        logger.info(
            "Job start | job=%s type=%s attempt=%d/%d doc=%s",
            job.id, job.type, job.attempts, job.max_attempts, job.document_id or "?",
        )
        try:
            await asyncio.wait_for(handler(job), timeout=job.timeout)
        except PermanentProcessingError as exc:
            await self._fail(job, str(exc))
        except asyncio.TimeoutError:
            await self._retry_or_fail(job, f"Job timed out after {job.timeout:g}s")
        except Exception as exc:
            logger.warning(
                "Job attempt failed | job=%s attempt=%d error=%s: %s",
                job.id, job.attempts, type(exc).__name__, exc,
            )
            await self._retry_or_fail(job, str(exc) or type(exc).__name__)
        else:
            job.status = JobStatus.COMPLETED
            job.finished_at = datetime.now(timezone.utc)
            self._totals["completed"] += 1
            self._retire(job)
            logger.info(
                "Job end | job=%s type=%s state=completed attempts=%d doc=%s",
                job.id, job.type, job.attempts, job.document_id or "?",
            )
        finally:
            async with self._cond:
                self._running -= 1
                self._cond.notify_all()

    async def _retry_or_fail(self, job: Job, error: str) -> None:
        job.last_error = error
        if job.attempts >= job.max_attempts:
            await self._fail(job, error)
            return

        delay = job.retry_delay * 2 ** (job.attempts - 1)
        job.backoff_history.append(delay)
        job.status = JobStatus.PENDING
        self._totals["retried"] += 1

        loop = asyncio.get_running_loop()
        async with self._cond:
            heapq.heappush(self._delayed, (loop.time() + delay, next(self._seq), job.id))
            self._cond.notify_all()

        logger.warning(
            "Job retry scheduled | job=%s attempt=%d/%d delay=%.2fs error=%s",
            job.id, job.attempts, job.max_attempts, delay, error,
        )

    async def _fail(self, job: Job, error: str) -> None:
        job.status = JobStatus.FAILED
        job.last_error = error
        job.finished_at = datetime.now(timezone.utc)
        self._totals["failed"] += 1
        self._retire(job)
        logger.error(
            "Job failed | job=%s type=%s attempts=%d doc=%s error=%s",
            job.id, job.type, job.attempts, job.document_id or "?", error,
        )

        document_id = job.document_id
        if document_id and self._repository is not None:
            try:
                await self._repository.mark_failed(document_id, error)
            except NotFoundError:
                logger.warning("Failed job references unknown document | job=%s doc=%s", job.id, document_id)
            except Exception:
                logger.exception(
                    "Could not mark document failed | job=%s doc=%s", job.id, document_id,
                )

    def _retire(self, job: Job) -> None:
        # finished jobs keep metadata only; the upload bytes are released
        job.payload.pop("data", None)
        self._finished.append(job.id)
        while len(self._finished) > self._retain_finished:
            self._jobs.pop(self._finished.popleft(), None)
