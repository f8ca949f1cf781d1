"""
Redis-backed job queue.

Layout under the ``queue:<name>`` prefix:

    job:<id>    hash   - the job record (``None`` stored as ``""``)
    waiting     list   - ids ready to run, FIFO
    delayed     zset   - ids scored by ``run_at``
    active      zset   - ids scored by ``processed_on``
    completed   zset   - ids scored by ``finished_on``
    failed      zset   - ids scored by ``finished_on``

Every state change is an optimistic WATCH/MULTI transaction on the job's
hash, so two processes racing on the same job never both win.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from social_publisher.config import QueueConfig
from social_publisher.exceptions import QueueError
from social_publisher.queue.base import Job, JobQueue, JobState, QueueStats
from social_publisher.utils import Clock, parse_timestamp

logger = logging.getLogger(__name__)

# (result, writes) - ``writes`` buffers commands on the MULTI pipeline, or
# is None when the transaction has nothing to write.
TxBody = Callable[[Any], Awaitable[Tuple[Any, Optional[Callable[[Any], None]]]]]


def _opt_int(value: str) -> Optional[int]:
    return int(value) if value else None


def _job_to_hash(job: Job) -> Dict[str, str]:
    return {
        "id": job.id,
        "post_id": job.post_id,
        "user_id": job.user_id or "",
        "state": job.state.value,
        "timestamp": str(job.timestamp),
        "run_at": str(job.run_at),
        "delay": str(job.delay),
        "scheduled_at": job.scheduled_at.isoformat() if job.scheduled_at else "",
        "attempts_made": str(job.attempts_made),
        "max_attempts": str(job.max_attempts),
        "processed_on": "" if job.processed_on is None else str(job.processed_on),
        "finished_on": "" if job.finished_on is None else str(job.finished_on),
        "failed_reason": job.failed_reason or "",
    }


def _job_from_hash(data: Dict[str, str]) -> Optional[Job]:
    if not data:
        return None
    return Job(
        id=data["id"],
        post_id=data["post_id"],
        user_id=data.get("user_id", ""),
        state=JobState(data["state"]),
        timestamp=int(data["timestamp"]),
        run_at=int(data["run_at"]),
        delay=int(data.get("delay") or 0),
        scheduled_at=parse_timestamp(data.get("scheduled_at") or None),
        attempts_made=int(data.get("attempts_made") or 0),
        max_attempts=int(data.get("max_attempts") or 1),
        processed_on=_opt_int(data.get("processed_on", "")),
        finished_on=_opt_int(data.get("finished_on", "")),
        failed_reason=data.get("failed_reason") or None,
    )


class RedisJobQueue(JobQueue):
    """``JobQueue`` on Redis, safe across processes.

    Args:
        config: Queue settings; ``redis_url`` is used unless a client is given.
        clock: Time source.
        client: Pre-built ``redis.asyncio`` client (tests pass a fakeredis one).
    """

    def __init__(
        self,
        config: QueueConfig,
        clock: Optional[Clock] = None,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        super().__init__(config, clock)
        self._client = client
        self._owns_client = client is None
        self._prefix = f"queue:{config.name}"

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def open(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self.config.redis_url,
                decode_responses=True,
                socket_timeout=self.config.operation_timeout_seconds,
                socket_connect_timeout=self.config.operation_timeout_seconds,
            )
        await self._bounded(self._client.ping(), "ping")
        await super().open()

    async def close(self) -> None:
        await super().close()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _bounded(self, awaitable: Awaitable[Any], operation: str) -> Any:
        try:
            return await super()._bounded(awaitable, operation)
        except RedisError as exc:
            raise QueueError(f"Queue operation '{operation}' failed: {exc}") from exc

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise QueueError(f"Queue '{self.config.name}' is not open")
        return self._client

    # ================================================================
    # KEYS & BUCKETS
    # ================================================================

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _bucket_key(self, state: JobState) -> str:
        return self._key(state.value)

    def _unlink(self, pipe: Any, job_id: str, state: Optional[JobState]) -> None:
        if state is None:
            return
        if state is JobState.WAITING:
            pipe.lrem(self._bucket_key(state), 0, job_id)
        else:
            pipe.zrem(self._bucket_key(state), job_id)

    def _link(self, pipe: Any, job: Job) -> None:
        key = self._bucket_key(job.state)
        if job.state is JobState.WAITING:
            pipe.rpush(key, job.id)
        elif job.state is JobState.DELAYED:
            pipe.zadd(key, {job.id: job.run_at})
        elif job.state is JobState.ACTIVE:
            pipe.zadd(key, {job.id: job.processed_on or 0})
        else:
            pipe.zadd(key, {job.id: job.finished_on or 0})

    def _store(self, pipe: Any, job: Job, previous: Optional[JobState]) -> None:
        self._unlink(pipe, job.id, previous)
        self._link(pipe, job)
        pipe.hset(self._job_key(job.id), mapping=_job_to_hash(job))

    async def _transact(self, job_id: str, body: TxBody) -> Any:
        """Run ``body`` as an optimistic transaction on the job's hash."""
        key = self._job_key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    result, writes = await body(pipe)
                    if writes is None:
                        return result
                    pipe.multi()
                    writes(pipe)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.debug("[QUEUE] Job %s changed during transaction, retrying", job_id)
                    continue

    async def _load(self, pipe: Any, job_id: str) -> Optional[Job]:
        return _job_from_hash(await pipe.hgetall(self._job_key(job_id)))

    # ================================================================
    # PRODUCER
    # ================================================================

    async def _upsert(self, job_id, post_id, user_id, now_ms, delay_ms, scheduled_at) -> str:
        async def body(pipe):
            job = await self._load(pipe, job_id)
            if job is not None and job.state is JobState.ACTIVE:
                logger.debug("[QUEUE] Job %s is active, enqueue left it untouched", job_id)
                return job_id, None

            previous = job.state if job else None
            if job is not None and job.state.is_pending:
                job.user_id = user_id
                job.scheduled_at = scheduled_at
                job.delay = delay_ms
                job.run_at = now_ms + delay_ms
                job.state = JobState.DELAYED if delay_ms > 0 else JobState.WAITING
            else:
                # New, or a finished job replaced by a fresh record
                job = self._new_job(job_id, post_id, user_id, now_ms, delay_ms, scheduled_at)

            return job_id, lambda p: self._store(p, job, previous)

        return await self._transact(job_id, body)

    async def _remove_pending(self, job_id: str) -> bool:
        async def body(pipe):
            job = await self._load(pipe, job_id)
            if job is None or not job.state.is_pending:
                return False, None

            def writes(p):
                self._unlink(p, job_id, job.state)
                p.delete(self._job_key(job_id))

            return True, writes

        return await self._transact(job_id, body)

    # ================================================================
    # CONSUMER
    # ================================================================

    async def _promote_due(self, now_ms: int) -> int:
        due = await self.client.zrangebyscore(
            self._bucket_key(JobState.DELAYED), "-inf", now_ms
        )
        promoted = 0
        for job_id in due:
            async def body(pipe, job_id=job_id):
                job = await self._load(pipe, job_id)
                if job is None:
                    return False, lambda p: p.zrem(self._bucket_key(JobState.DELAYED), job_id)
                if job.state is not JobState.DELAYED or job.run_at > now_ms:
                    return False, None
                job.state = JobState.WAITING
                return True, lambda p: self._store(p, job, JobState.DELAYED)

            if await self._transact(job_id, body):
                promoted += 1
        return promoted

    async def _reserve(self, now_ms: int) -> Optional[Job]:
        while True:
            job_id = await self.client.lpop(self._bucket_key(JobState.WAITING))
            if job_id is None:
                return None

            async def body(pipe, job_id=job_id):
                job = await self._load(pipe, job_id)
                if job is None or job.state is not JobState.WAITING:
                    # Stale list entry
                    return None, None
                job.state = JobState.ACTIVE
                job.processed_on = now_ms
                job.finished_on = None

                def writes(p):
                    self._link(p, job)
                    p.hset(self._job_key(job_id), mapping=_job_to_hash(job))

                return job, writes

            job = await self._transact(job_id, body)
            if job is not None:
                return job

    async def _acknowledge(self, job: Job, update: Callable[[Job], None]) -> bool:
        """Apply ``update`` to the stored job if ``job`` still holds its reservation."""

        async def body(pipe):
            stored = await self._load(pipe, job.id)
            if (
                stored is None
                or stored.state is not JobState.ACTIVE
                or stored.processed_on != job.processed_on
            ):
                logger.warning("[QUEUE] Lost reservation for job %s, ack ignored", job.id)
                return False, None
            update(stored)
            stored.attempts_made += 1
            return True, lambda p: self._store(p, stored, JobState.ACTIVE)

        return await self._transact(job.id, body)

    async def _complete(self, job: Job, now_ms: int) -> bool:
        def update(stored: Job) -> None:
            stored.state = JobState.COMPLETED
            stored.finished_on = now_ms
            stored.failed_reason = None

        return await self._acknowledge(job, update)

    async def _retry_later(self, job: Job, reason: str, run_at_ms: int, now_ms: int) -> bool:
        def update(stored: Job) -> None:
            stored.state = JobState.DELAYED if run_at_ms > now_ms else JobState.WAITING
            stored.failed_reason = reason
            stored.run_at = run_at_ms
            stored.delay = max(0, run_at_ms - now_ms)

        return await self._acknowledge(job, update)

    async def _fail(self, job: Job, reason: str, now_ms: int) -> bool:
        def update(stored: Job) -> None:
            stored.state = JobState.FAILED
            stored.failed_reason = reason
            stored.finished_on = now_ms

        return await self._acknowledge(job, update)

    # ================================================================
    # OBSERVABILITY & MAINTENANCE
    # ================================================================

    async def _get(self, job_id: str) -> Optional[Job]:
        return _job_from_hash(await self.client.hgetall(self._job_key(job_id)))

    async def _counts(self) -> QueueStats:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self._bucket_key(JobState.WAITING))
            pipe.zcard(self._bucket_key(JobState.ACTIVE))
            pipe.zcard(self._bucket_key(JobState.COMPLETED))
            pipe.zcard(self._bucket_key(JobState.FAILED))
            pipe.zcard(self._bucket_key(JobState.DELAYED))
            waiting, active, completed, failed, delayed = await pipe.execute()
        return QueueStats(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
        )

    async def _list(self, state: JobState, offset: int, limit: int) -> List[Job]:
        key = self._bucket_key(state)
        end = offset + limit - 1
        if state is JobState.WAITING:
            ids = await self.client.lrange(key, offset, end)
        elif state.is_finished:
            ids = await self.client.zrevrange(key, offset, end)
        else:
            ids = await self.client.zrange(key, offset, end)

        jobs = []
        for job_id in ids:
            job = await self._get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def _clean(self, state: JobState, before_ms: int) -> int:
        ids = await self.client.zrangebyscore(self._bucket_key(state), "-inf", before_ms)
        removed = 0
        for job_id in ids:
            async def body(pipe, job_id=job_id):
                job = await self._load(pipe, job_id)
                if job is not None and (
                    job.state is not state or (job.finished_on or 0) > before_ms
                ):
                    return False, None

                def writes(p):
                    p.zrem(self._bucket_key(state), job_id)
                    p.delete(self._job_key(job_id))

                return job is not None, writes

            if await self._transact(job_id, body):
                removed += 1
        return removed

    async def _requeue_stalled(self, before_ms: int) -> int:
        ids = await self.client.zrangebyscore(
            self._bucket_key(JobState.ACTIVE), "-inf", before_ms
        )
        moved = 0
        for job_id in ids:
            async def body(pipe, job_id=job_id):
                job = await self._load(pipe, job_id)
                if (
                    job is None
                    or job.state is not JobState.ACTIVE
                    or (job.processed_on or 0) > before_ms
                ):
                    return False, None
                job.state = JobState.WAITING
                job.processed_on = None
                return True, lambda p: self._store(p, job, JobState.ACTIVE)

            if await self._transact(job_id, body):
                moved += 1
        return moved


__all__ = ["RedisJobQueue"]
