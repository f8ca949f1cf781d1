"""
Job queue contract shared by every queue backend.

A ``JobQueue`` holds at most one job per post, keyed ``post-<post_id>``.
Backends implement a handful of storage primitives (upsert, reserve,
acknowledge, ...); this module owns everything that must behave the same
regardless of storage:

- the enqueue/cancel contract and its delay computation,
- the bounded consumer pool (``consume``) and the single-step driver
  (``process_next``),
- the retry policy: a raising handler is retried with exponential backoff
  until ``max_attempts`` is reached, then the job lands in ``failed``,
- operation timeouts, so an unreachable backend surfaces as
  ``QueueTimeoutError`` instead of hanging the caller.

The queue is never authoritative.  The post's own status in the state
store is the outcome of record; the queue can be wiped and rebuilt by the
reconciliation sweep at any time.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from social_publisher.config import QueueConfig
from social_publisher.exceptions import QueueTimeoutError, ValidationError
from social_publisher.utils import Clock, backoff_delay, to_millis

logger = logging.getLogger(__name__)


# =============================================================================
# JOB MODEL
# =============================================================================


class JobState(Enum):
    """Bucket a job currently sits in."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"

    @property
    def is_pending(self) -> bool:
        """Waiting or delayed: the job can still be cancelled or re-timed."""
        return self in {JobState.WAITING, JobState.DELAYED}

    @property
    def is_finished(self) -> bool:
        return self in {JobState.COMPLETED, JobState.FAILED}


def job_id_for(post_id: str) -> str:
    """Stable job id for a post; the key of the one-job-per-post invariant."""
    return f"post-{post_id}"


@dataclass
class Job:
    """One pending or in-flight publish attempt.

    All ``*_on`` / ``timestamp`` / ``run_at`` fields are epoch milliseconds.
    ``delay`` is the delay requested at the last (re)schedule, in ms.
    """

    id: str
    post_id: str
    user_id: str
    state: JobState
    timestamp: int
    run_at: int
    delay: int = 0
    scheduled_at: Optional[datetime] = None
    attempts_made: int = 0
    max_attempts: int = 3
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt currently being processed."""
        return self.attempts_made + 1

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt_number >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        """Admin-facing representation."""
        return {
            "id": self.id,
            "data": {"postId": self.post_id, "userId": self.user_id},
            "state": self.state.value,
            "attemptsMade": self.attempts_made,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
            "timestamp": self.timestamp,
            "delay": self.delay,
            "failedReason": self.failed_reason,
        }


@dataclass
class QueueStats:
    """Job counts per bucket."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


@dataclass
class JobOutcome:
    """What happened to one processed job."""

    job_id: str
    succeeded: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    will_retry: bool = False
    retry_delay_seconds: Optional[float] = None


JobHandler = Callable[[Job], Awaitable[Optional[Dict[str, Any]]]]


# =============================================================================
# JOB QUEUE
# =============================================================================


class JobQueue(ABC):
    """Delay-capable, one-job-per-post work queue.

    Args:
        config: Queue settings (retry policy, timeouts, concurrency).
        clock: Time source; defaults to the wall clock.
    """

    def __init__(self, config: QueueConfig, clock: Optional[Clock] = None) -> None:
        self.config = config
        self.clock = clock or Clock()
        self._consumers: List[asyncio.Task] = []
        self._consuming: bool = False
        self._opened: bool = False
        self._last_stalled_check: Optional[datetime] = None

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def open(self) -> None:
        """Acquire backend resources.  Subclasses extend this."""
        self._opened = True
        logger.info("[QUEUE] Queue '%s' opened", self.config.name)

    async def close(self) -> None:
        """Stop consumers and release backend resources."""
        await self.stop_consuming()
        self._opened = False
        logger.info("[QUEUE] Queue '%s' closed", self.config.name)

    async def __aenter__(self) -> "JobQueue":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _bounded(self, awaitable: Awaitable[Any], operation: str) -> Any:
        """Run a backend operation under the configured operation timeout."""
        try:
            return await asyncio.wait_for(
                awaitable, timeout=self.config.operation_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise QueueTimeoutError(
                f"Queue operation '{operation}' timed out after "
                f"{self.config.operation_timeout_seconds}s. "
                "Check that the queue backend is running and reachable."
            ) from exc

    def _now_ms(self) -> int:
        return to_millis(self.clock.now())

    # ================================================================
    # PRODUCER CONTRACT
    # ================================================================

    async def enqueue(
        self,
        post_id: str,
        user_id: str,
        run_at: Optional[datetime] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> str:
        """Place (or re-time) the job for ``post_id``.

        Idempotent per post: a waiting/delayed job gets its due time
        replaced, an active job is left alone, a finished job is replaced
        by a fresh one.  There is never more than one job per post.

        Args:
            post_id: Post to publish.
            user_id: Owning user (carried for observability only).
            run_at: When the job becomes due.  ``None`` or a past time
                means "now" (zero delay).
            scheduled_at: The post's own schedule, recorded on the job.

        Returns:
            The job id (``post-<post_id>``).
        """
        if not post_id:
            raise ValidationError("post_id cannot be empty")

        now_ms = self._now_ms()
        delay_ms = 0
        if run_at is not None:
            delay_ms = max(0, to_millis(run_at) - now_ms)

        job_id = await self._bounded(
            self._upsert(
                job_id_for(post_id), post_id, user_id, now_ms, delay_ms, scheduled_at
            ),
            "enqueue",
        )
        logger.info(
            "[QUEUE] Enqueued post %s (job=%s, delay=%dms)", post_id, job_id, delay_ms
        )
        return job_id

    async def cancel(self, post_id: str) -> bool:
        """Remove the post's job if it is still waiting or delayed.

        Active jobs are never cancelled: the worker owns in-flight
        semantics.

        Returns:
            ``True`` if a job was removed.
        """
        removed = await self._bounded(
            self._remove_pending(job_id_for(post_id)), "cancel"
        )
        if removed:
            logger.info("[QUEUE] Cancelled job for post %s", post_id)
        else:
            logger.debug("[QUEUE] No pending job to cancel for post %s", post_id)
        return removed

    # ================================================================
    # OBSERVABILITY
    # ================================================================

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self._bounded(self._get(job_id), "get_job")

    async def get_job_for_post(self, post_id: str) -> Optional[Job]:
        return await self.get_job(job_id_for(post_id))

    async def get_stats(self) -> QueueStats:
        return await self._bounded(self._counts(), "get_stats")

    async def list_jobs(
        self,
        bucket: Union[JobState, str],
        offset: int = 0,
        limit: int = 20,
    ) -> List[Job]:
        """List jobs in one bucket.

        Waiting and delayed jobs come in due order; active jobs oldest
        first; completed and failed jobs newest first.
        """
        state = JobState(bucket) if isinstance(bucket, str) else bucket
        if offset < 0 or limit < 1:
            raise ValidationError("offset must be >= 0 and limit >= 1")
        return await self._bounded(self._list(state, offset, limit), "list_jobs")

    # ================================================================
    # MAINTENANCE
    # ================================================================

    async def clean(
        self,
        grace: Optional[timedelta] = None,
        bucket: Union[JobState, str] = JobState.COMPLETED,
    ) -> int:
        """Drop finished jobs older than ``grace`` from ``bucket``.

        Returns:
            Number of removed jobs.
        """
        state = JobState(bucket) if isinstance(bucket, str) else bucket
        if not state.is_finished:
            raise ValidationError(f"Only finished buckets can be cleaned, got '{state.value}'")
        grace = grace or timedelta(hours=self.config.clean_grace_hours)
        before_ms = self._now_ms() - int(grace.total_seconds() * 1000)
        removed = await self._bounded(self._clean(state, before_ms), "clean")
        logger.info("[QUEUE] Cleaned %d %s jobs older than %s", removed, state.value, grace)
        return removed

    async def requeue_stalled(self, older_than: Optional[timedelta] = None) -> int:
        """Move active jobs whose worker died back to waiting.

        A job is stalled when it has been active longer than
        ``stalled_after_seconds``, which must exceed the job timeout.

        Returns:
            Number of requeued jobs.
        """
        older_than = older_than or timedelta(seconds=self.config.stalled_after_seconds)
        before_ms = self._now_ms() - int(older_than.total_seconds() * 1000)
        moved = await self._bounded(self._requeue_stalled(before_ms), "requeue_stalled")
        if moved:
            logger.warning("[QUEUE] Requeued %d stalled job(s)", moved)
        return moved

    # ================================================================
    # CONSUMER
    # ================================================================

    async def process_next(self, handler: JobHandler) -> Optional[JobOutcome]:
        """Promote due jobs, reserve one and run ``handler`` on it.

        Returns:
            The outcome, or ``None`` if no job was due.
        """
        now_ms = self._now_ms()
        await self._bounded(self._promote_due(now_ms), "promote_due")
        job = await self._bounded(self._reserve(now_ms), "reserve")
        if job is None:
            return None
        return await self._run(job, handler)

    async def _run(self, job: Job, handler: JobHandler) -> JobOutcome:
        logger.info(
            "[QUEUE] Processing job %s (attempt %d/%d)",
            job.id,
            job.attempt_number,
            job.max_attempts,
        )
        try:
            result = await asyncio.wait_for(
                handler(job), timeout=self.config.job_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                reason = f"Job timed out after {self.config.job_timeout_seconds}s"
            else:
                reason = str(exc) or exc.__class__.__name__
            return await self._handle_failure(job, reason)

        await self._bounded(self._complete(job, self._now_ms()), "complete")
        if job.attempt_number > 1:
            logger.info("[QUEUE] Job %s completed after %d attempts", job.id, job.attempt_number)
        else:
            logger.info("[QUEUE] Job %s completed", job.id)
        return JobOutcome(job_id=job.id, succeeded=True, result=result)

    async def _handle_failure(self, job: Job, reason: str) -> JobOutcome:
        now_ms = self._now_ms()
        if job.is_last_attempt:
            await self._bounded(self._fail(job, reason, now_ms), "fail")
            logger.error(
                "[QUEUE] Job %s failed after %d attempts (final): %s",
                job.id,
                job.attempt_number,
                reason,
            )
            return JobOutcome(job_id=job.id, succeeded=False, error=reason)

        delay = backoff_delay(self.config.backoff_base_seconds, job.attempt_number)
        run_at_ms = now_ms + int(delay * 1000)
        await self._bounded(self._retry_later(job, reason, run_at_ms, now_ms), "retry")
        logger.warning(
            "[QUEUE] Job %s failed (attempt %d/%d), retrying in %.1fs: %s",
            job.id,
            job.attempt_number,
            job.max_attempts,
            delay,
            reason,
        )
        return JobOutcome(
            job_id=job.id,
            succeeded=False,
            error=reason,
            will_retry=True,
            retry_delay_seconds=delay,
        )

    async def consume(self, handler: JobHandler, concurrency: Optional[int] = None) -> None:
        """Start a bounded pool of consumer tasks running ``handler``.

        Returns immediately; call :meth:`stop_consuming` (or :meth:`close`)
        to stop the pool.
        """
        if self._consuming:
            raise RuntimeError(f"Queue '{self.config.name}' is already being consumed")
        concurrency = concurrency or self.config.concurrency
        self._consuming = True
        self._consumers = [
            asyncio.create_task(
                self._consume_loop(handler, index),
                name=f"{self.config.name}-consumer-{index}",
            )
            for index in range(concurrency)
        ]
        logger.info(
            "[QUEUE] Consuming '%s' with concurrency=%d", self.config.name, concurrency
        )

    async def stop_consuming(self) -> None:
        """Cancel consumer tasks and wait for them to exit."""
        if not self._consumers:
            self._consuming = False
            return
        self._consuming = False
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []
        logger.info("[QUEUE] Consumers for '%s' stopped", self.config.name)

    async def _consume_loop(self, handler: JobHandler, index: int) -> None:
        while self._consuming:
            outcome: Optional[JobOutcome] = None
            try:
                if index == 0:
                    await self._maybe_requeue_stalled()
                outcome = await self.process_next(handler)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("[QUEUE] Consumer %d error", index)

            if outcome is None:
                try:
                    await self.clock.sleep(self.config.poll_interval_seconds)
                except asyncio.CancelledError:
                    break

    async def _maybe_requeue_stalled(self) -> None:
        now = self.clock.now()
        interval = timedelta(seconds=self.config.stalled_after_seconds)
        if self._last_stalled_check is None or now - self._last_stalled_check >= interval:
            self._last_stalled_check = now
            await self.requeue_stalled()

    # ================================================================
    # BACKEND PRIMITIVES
    # ================================================================

    @abstractmethod
    async def _upsert(
        self,
        job_id: str,
        post_id: str,
        user_id: str,
        now_ms: int,
        delay_ms: int,
        scheduled_at: Optional[datetime],
    ) -> str:
        """Create, re-time, or leave (if active) the job; return its id."""

    @abstractmethod
    async def _remove_pending(self, job_id: str) -> bool:
        """Delete the job if it is waiting or delayed."""

    @abstractmethod
    async def _promote_due(self, now_ms: int) -> int:
        """Move delayed jobs with ``run_at <= now_ms`` to waiting."""

    @abstractmethod
    async def _reserve(self, now_ms: int) -> Optional[Job]:
        """Pop the next waiting job and mark it active (``processed_on``)."""

    @abstractmethod
    async def _complete(self, job: Job, now_ms: int) -> bool:
        """Acknowledge success of a reserved job."""

    @abstractmethod
    async def _retry_later(
        self, job: Job, reason: str, run_at_ms: int, now_ms: int
    ) -> bool:
        """Acknowledge a failed attempt and schedule the next one."""

    @abstractmethod
    async def _fail(self, job: Job, reason: str, now_ms: int) -> bool:
        """Acknowledge the final failed attempt."""

    @abstractmethod
    async def _get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def _counts(self) -> QueueStats:
        ...

    @abstractmethod
    async def _list(self, state: JobState, offset: int, limit: int) -> List[Job]:
        ...

    @abstractmethod
    async def _clean(self, state: JobState, before_ms: int) -> int:
        ...

    @abstractmethod
    async def _requeue_stalled(self, before_ms: int) -> int:
        ...

    # ================================================================
    # SHARED HELPERS FOR BACKENDS
    # ================================================================

    def _new_job(
        self,
        job_id: str,
        post_id: str,
        user_id: str,
        now_ms: int,
        delay_ms: int,
        scheduled_at: Optional[datetime],
    ) -> Job:
        return Job(
            id=job_id,
            post_id=post_id,
            user_id=user_id,
            state=JobState.DELAYED if delay_ms > 0 else JobState.WAITING,
            timestamp=now_ms,
            run_at=now_ms + delay_ms,
            delay=delay_ms,
            scheduled_at=scheduled_at,
            max_attempts=self.config.max_attempts,
        )


__all__ = [
    "JobState",
    "Job",
    "JobOutcome",
    "JobHandler",
    "QueueStats",
    "JobQueue",
    "job_id_for",
]
