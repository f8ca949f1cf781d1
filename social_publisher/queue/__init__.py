"""
Job queue: one delay-capable job per post.

Usage:
    from social_publisher.queue import create_queue

    queue = create_queue(settings.queue)
    async with queue:
        await queue.enqueue(post.id, post.user_id, run_at=post.scheduled_at)
"""

from typing import Optional

from social_publisher.config import QueueConfig
from social_publisher.exceptions import ConfigurationError
from social_publisher.queue.base import (
    Job,
    JobHandler,
    JobOutcome,
    JobQueue,
    JobState,
    QueueStats,
    job_id_for,
)
from social_publisher.queue.memory_queue import InMemoryJobQueue
from social_publisher.queue.redis_queue import RedisJobQueue
from social_publisher.utils import Clock


def create_queue(config: QueueConfig, clock: Optional[Clock] = None) -> JobQueue:
    """Build the backend selected by ``config.backend``."""
    if config.backend == "redis":
        return RedisJobQueue(config, clock)
    if config.backend == "memory":
        return InMemoryJobQueue(config, clock)
    raise ConfigurationError(f"Unknown queue backend '{config.backend}'")


__all__ = [
    "Job",
    "JobHandler",
    "JobOutcome",
    "JobQueue",
    "JobState",
    "QueueStats",
    "job_id_for",
    "InMemoryJobQueue",
    "RedisJobQueue",
    "create_queue",
]
