"""
In-process job queue backend.

Keeps jobs in dictionaries guarded by an ``asyncio.Lock``.  Nothing
survives a restart, which is acceptable because the reconciliation sweep
rebuilds the queue from the state store on startup.  Used for local
development (``QUEUE_BACKEND=memory``) and throughout the test suite.
"""

import asyncio
import logging
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Deque, Dict, List, Optional

from social_publisher.config import QueueConfig
from social_publisher.queue.base import Job, JobQueue, JobState, QueueStats
from social_publisher.utils import Clock

logger = logging.getLogger(__name__)


class InMemoryJobQueue(JobQueue):
    """Single-process ``JobQueue``."""

    def __init__(self, config: QueueConfig, clock: Optional[Clock] = None) -> None:
        super().__init__(config, clock)
        self._jobs: Dict[str, Job] = {}
        self._waiting: Deque[str] = deque()
        self._lock = asyncio.Lock()

    def _detach(self, job: Job) -> None:
        """Remove a pending job from the waiting line (delayed is implicit)."""
        if job.state is JobState.WAITING and job.id in self._waiting:
            self._waiting.remove(job.id)

    def _attach(self, job: Job, now_ms: int) -> None:
        if job.run_at <= now_ms:
            job.state = JobState.WAITING
            self._waiting.append(job.id)
        else:
            job.state = JobState.DELAYED

    def _is_current(self, job: Job) -> Optional[Job]:
        """The stored job if ``job`` still holds its reservation."""
        stored = self._jobs.get(job.id)
        if (
            stored is None
            or stored.state is not JobState.ACTIVE
            or stored.processed_on != job.processed_on
        ):
            logger.warning("[QUEUE] Lost reservation for job %s, ack ignored", job.id)
            return None
        return stored

    # ----------------------------------------------------------------
    # PRODUCER
    # ----------------------------------------------------------------

    async def _upsert(
        self,
        job_id: str,
        post_id: str,
        user_id: str,
        now_ms: int,
        delay_ms: int,
        scheduled_at: Optional[datetime],
    ) -> str:
        async with self._lock:
            existing = self._jobs.get(job_id)
            if existing is not None and existing.state is JobState.ACTIVE:
                logger.debug("[QUEUE] Job %s is active, enqueue left it untouched", job_id)
                return job_id

            if existing is not None and existing.state.is_pending:
                self._detach(existing)
                existing.user_id = user_id
                existing.scheduled_at = scheduled_at
                existing.delay = delay_ms
                existing.run_at = now_ms + delay_ms
                self._attach(existing, now_ms)
                return job_id

            job = self._new_job(job_id, post_id, user_id, now_ms, delay_ms, scheduled_at)
            self._jobs[job_id] = job
            self._attach(job, now_ms)
            return job_id

    async def _remove_pending(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.state.is_pending:
                return False
            self._detach(job)
            del self._jobs[job_id]
            return True

    # ----------------------------------------------------------------
    # CONSUMER
    # ----------------------------------------------------------------

    async def _promote_due(self, now_ms: int) -> int:
        async with self._lock:
            due = sorted(
                (job for job in self._jobs.values()
                 if job.state is JobState.DELAYED and job.run_at <= now_ms),
                key=lambda job: job.run_at,
            )
            for job in due:
                job.state = JobState.WAITING
                self._waiting.append(job.id)
            return len(due)

    async def _reserve(self, now_ms: int) -> Optional[Job]:
        async with self._lock:
            while self._waiting:
                job = self._jobs.get(self._waiting.popleft())
                if job is None or job.state is not JobState.WAITING:
                    continue
                job.state = JobState.ACTIVE
                job.processed_on = now_ms
                job.finished_on = None
                return replace(job)
            return None

    async def _complete(self, job: Job, now_ms: int) -> bool:
        async with self._lock:
            stored = self._is_current(job)
            if stored is None:
                return False
            stored.state = JobState.COMPLETED
            stored.attempts_made += 1
            stored.finished_on = now_ms
            stored.failed_reason = None
            return True

    async def _retry_later(
        self, job: Job, reason: str, run_at_ms: int, now_ms: int
    ) -> bool:
        async with self._lock:
            stored = self._is_current(job)
            if stored is None:
                return False
            stored.attempts_made += 1
            stored.failed_reason = reason
            stored.run_at = run_at_ms
            stored.delay = max(0, run_at_ms - now_ms)
            self._attach(stored, now_ms)
            return True

    async def _fail(self, job: Job, reason: str, now_ms: int) -> bool:
        async with self._lock:
            stored = self._is_current(job)
            if stored is None:
                return False
            stored.state = JobState.FAILED
            stored.attempts_made += 1
            stored.failed_reason = reason
            stored.finished_on = now_ms
            return True

    # ----------------------------------------------------------------
    # OBSERVABILITY & MAINTENANCE
    # ----------------------------------------------------------------

    async def _get(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    async def _counts(self) -> QueueStats:
        async with self._lock:
            stats = QueueStats()
            for job in self._jobs.values():
                setattr(stats, job.state.value, getattr(stats, job.state.value) + 1)
            return stats

    async def _list(self, state: JobState, offset: int, limit: int) -> List[Job]:
        async with self._lock:
            if state is JobState.WAITING:
                jobs = [self._jobs[job_id] for job_id in self._waiting if job_id in self._jobs]
            else:
                jobs = [job for job in self._jobs.values() if job.state is state]
                if state is JobState.DELAYED:
                    jobs.sort(key=lambda job: job.run_at)
                elif state is JobState.ACTIVE:
                    jobs.sort(key=lambda job: job.processed_on or 0)
                else:
                    jobs.sort(key=lambda job: job.finished_on or 0, reverse=True)
            return [replace(job) for job in jobs[offset:offset + limit]]

    async def _clean(self, state: JobState, before_ms: int) -> int:
        async with self._lock:
            stale = [
                job.id for job in self._jobs.values()
                if job.state is state and (job.finished_on or 0) <= before_ms
            ]
            for job_id in stale:
                del self._jobs[job_id]
            return len(stale)

    async def _requeue_stalled(self, before_ms: int) -> int:
        async with self._lock:
            stalled = [
                job for job in self._jobs.values()
                if job.state is JobState.ACTIVE and (job.processed_on or 0) <= before_ms
            ]
            for job in stalled:
                job.processed_on = None
                job.state = JobState.WAITING
                self._waiting.append(job.id)
            return len(stalled)


__all__ = ["InMemoryJobQueue"]
