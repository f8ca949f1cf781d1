"""
Reconciliation sweeper: heals drift between the state store and the queue.

The queue is disposable; the state store is the record.  Each sweep:

1. Demotes ``PUBLISHED`` posts that have no ``published_at`` back to
   ``SCHEDULED`` (a legacy inconsistent state).
2. Fails ``PUBLISHING`` posts claimed longer ago than the stale-lock
   threshold with a ``[stale_lock]`` reason.  They are never republished
   automatically because the remote outcome is unknown.
3. Enqueues every ``SCHEDULED`` post with a ``scheduled_at`` and no
   ``published_at``: overdue posts with zero delay, others at their time.

``enqueue`` is idempotent per post, so sweeping any number of times never
duplicates a job.  A job already waiting out retry backoff keeps its due
time.  The sweep never raises; per-post failures are collected
into the report.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from social_publisher.config import SweeperConfig
from social_publisher.database import SupabaseDB
from social_publisher.models import Post
from social_publisher.queue import JobQueue
from social_publisher.scheduling.lifecycle import PostLifecycle
from social_publisher.utils import Clock

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Outcome of one sweep."""

    synced: int = 0
    failed: int = 0
    errors: List[Dict[str, Optional[str]]] = field(default_factory=list)
    demoted: int = 0
    stale_reset: int = 0

    def record_error(self, post_id: Optional[str], error: Exception) -> None:
        self.failed += 1
        self.errors.append({"postId": post_id, "error": str(error) or error.__class__.__name__})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "errors": list(self.errors),
            "demoted": self.demoted,
            "staleReset": self.stale_reset,
        }


class ReconciliationSweeper:
    """Re-derives queue contents from post state.

    Args:
        db: State store.
        queue: Job queue to repopulate.
        lifecycle: Post transitions used for repairs.
        config: Stale-lock threshold.
        clock: Time source.
    """

    def __init__(
        self,
        db: SupabaseDB,
        queue: JobQueue,
        lifecycle: PostLifecycle,
        config: Optional[SweeperConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db = db
        self.queue = queue
        self.lifecycle = lifecycle
        self.config = config or SweeperConfig()
        self.clock = clock or Clock()

    @property
    def stale_lock_threshold(self) -> timedelta:
        return timedelta(minutes=self.config.stale_lock_minutes)

    async def sync_scheduled_posts(self) -> SyncReport:
        """Run one full sweep and report what it did."""
        logger.info("[SWEEPER] Starting scheduled posts sync")
        report = SyncReport()

        await self._each(
            "demote unstamped published posts",
            self.db.get_published_without_timestamp,
            self._demote,
            report,
        )
        await self._each(
            "reset stale publishing posts",
            lambda: self.db.get_stale_publishing(self.clock.now() - self.stale_lock_threshold),
            self._reset_stale,
            report,
        )
        await self._each(
            "enqueue scheduled posts",
            self.db.get_posts_to_sync,
            self._enqueue,
            report,
        )

        logger.info(
            "[SWEEPER] Sync complete: %d synced, %d failed, %d demoted, %d stale reset",
            report.synced,
            report.failed,
            report.demoted,
            report.stale_reset,
        )
        return report

    async def _each(
        self,
        stage: str,
        select: Callable[[], Awaitable[List[Post]]],
        apply: Callable[[Post, SyncReport], Awaitable[None]],
        report: SyncReport,
    ) -> None:
        try:
            posts = await select()
        except Exception as exc:
            logger.exception("[SWEEPER] Could not %s", stage)
            report.record_error(None, exc)
            return

        for post in posts:
            try:
                await apply(post, report)
            except Exception as exc:
                logger.error("[SWEEPER] Failed to %s for post %s: %s", stage, post.id, exc)
                report.record_error(post.id, exc)

    # ================================================================
    # STAGES
    # ================================================================

    async def _demote(self, post: Post, report: SyncReport) -> None:
        if await self.lifecycle.demote_unstamped_published(post) is not None:
            report.demoted += 1

    async def _reset_stale(self, post: Post, report: SyncReport) -> None:
        if await self.lifecycle.reset_stale(post, self.stale_lock_threshold) is not None:
            report.stale_reset += 1
            logger.warning(
                "[SWEEPER] Post %s was PUBLISHING for more than %d minutes; marked FAILED",
                post.id,
                self.config.stale_lock_minutes,
            )

    async def _enqueue(self, post: Post, report: SyncReport) -> None:
        now = self.clock.now()
        existing = await self.queue.get_job_for_post(post.id)
        if existing is not None and existing.state.is_pending and existing.attempts_made > 0:
            # Waiting out retry backoff; re-timing it would drop the backoff
            report.synced += 1
            logger.debug(
                "[SWEEPER] Post %s already queued for attempt %d (job=%s)",
                post.id,
                existing.attempt_number,
                existing.id,
            )
            return

        run_at = now if post.is_due(now) else post.scheduled_at
        job_id = await self.queue.enqueue(
            post.id, post.user_id, run_at=run_at, scheduled_at=post.scheduled_at
        )
        report.synced += 1
        logger.debug(
            "[SWEEPER] Synced post %s (job=%s, due=%s)", post.id, job_id, post.is_due(now)
        )


__all__ = ["ReconciliationSweeper", "SyncReport"]
