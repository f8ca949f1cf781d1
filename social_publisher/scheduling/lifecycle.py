"""
Post lifecycle: every status change a post goes through.

``PostLifecycle`` is the only place that writes ``status`` on a post.  Each
transition is a compare-and-set update against the status the caller
expects, so a transition that lost a race returns ``None`` (or raises
``InvalidTransitionError`` on operator-facing paths) instead of clobbering
the winner's write.

Queue side effects follow the state store, never the reverse: a post is
scheduled first and enqueued second.  If the enqueue fails the post is
still ``SCHEDULED`` and the next reconciliation sweep re-enqueues it.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from social_publisher.database import SupabaseDB
from social_publisher.exceptions import InvalidTransitionError, QueueError, ValidationError
from social_publisher.models import Platform, PlatformResult, Post, PostStatus, can_transition
from social_publisher.queue import JobQueue, job_id_for
from social_publisher.utils import Clock

logger = logging.getLogger(__name__)

# Error-class prefixes written into ``error_message``
CREDENTIAL_PREFIX = "[credential]"
STALE_LOCK_PREFIX = "[stale_lock]"

# Statuses an authoring or operator schedule() call may start from
SCHEDULABLE = frozenset({PostStatus.DRAFT, PostStatus.FAILED, PostStatus.SCHEDULED})


class PostLifecycle:
    """Status transitions for posts, with their queue side effects.

    Args:
        db: State store (:class:`~social_publisher.database.SupabaseDB`).
        queue: Job queue used when a post (re-)enters ``SCHEDULED``.
        clock: Time source.
    """

    def __init__(self, db: SupabaseDB, queue: JobQueue, clock: Optional[Clock] = None) -> None:
        self.db = db
        self.queue = queue
        self.clock = clock or Clock()

    # ================================================================
    # GUARDS
    # ================================================================

    async def _load(self, post_id: str) -> Post:
        post = await self.db.get_post(post_id)
        if post is None:
            raise ValidationError(f"Post {post_id} not found")
        return post

    @staticmethod
    def _check(post: Post, target: PostStatus) -> None:
        if not can_transition(post.status, target):
            raise InvalidTransitionError(post.id, post.status.value, target.value)

    async def _require_active_profile(self, post: Post, target: PostStatus) -> None:
        profile = await self.db.get_profile(post.profile_id)
        if profile is None or not profile.is_active:
            raise InvalidTransitionError(
                post.id,
                post.status.value,
                target.value,
                reason=f"profile {post.profile_id} is not active",
            )

    async def _enqueue(self, post: Post) -> Optional[str]:
        """Enqueue a ``SCHEDULED`` post; a queue outage is left to the sweeper."""
        try:
            return await self.queue.enqueue(
                post.id,
                post.user_id,
                run_at=post.scheduled_at,
                scheduled_at=post.scheduled_at,
            )
        except QueueError as exc:
            logger.warning(
                "[LIFECYCLE] Post %s scheduled but not enqueued (%s); "
                "the next sync will enqueue it",
                post.id,
                exc,
            )
            return None

    # ================================================================
    # SCHEDULING
    # ================================================================

    async def schedule(
        self, post_id: str, scheduled_at: Optional[datetime] = None
    ) -> Post:
        """Move a ``DRAFT`` or ``FAILED`` post to ``SCHEDULED`` and enqueue it.

        A ``SCHEDULED`` post is re-timed in place.  Without ``scheduled_at``
        the post is due now; the time is still written so the reconciliation
        sweep can recover the job.

        Raises:
            ValidationError: If the post does not exist.
            InvalidTransitionError: If the post cannot be scheduled from its
                current status, or its profile is missing or inactive.
        """
        post = await self._load(post_id)
        if post.status not in SCHEDULABLE:
            # PUBLISHING leaves only via the worker; PUBLISHED only via repair
            raise InvalidTransitionError(
                post.id, post.status.value, PostStatus.SCHEDULED.value,
                reason=f"post is {post.status.value}",
            )
        await self._require_active_profile(post, PostStatus.SCHEDULED)

        when = scheduled_at or self.clock.now()
        updated = await self.db.update_post(
            post.id,
            {
                "status": PostStatus.SCHEDULED,
                "scheduled_at": when,
                "failed_at": None,
                "error_message": None,
                "claimed_at": None,
            },
            expected_status=post.status,
        )
        if updated is None:
            raise InvalidTransitionError(
                post.id, post.status.value, PostStatus.SCHEDULED.value,
                reason="post changed concurrently",
            )

        await self._enqueue(updated)
        logger.info("[LIFECYCLE] Post %s scheduled for %s", post.id, when.isoformat())
        return updated

    async def unschedule(self, post_id: str) -> Post:
        """Move a ``SCHEDULED`` post back to ``DRAFT`` and cancel its job."""
        post = await self._load(post_id)
        self._check(post, PostStatus.DRAFT)

        updated = await self.db.update_post(
            post.id,
            {"status": PostStatus.DRAFT},
            expected_status=PostStatus.SCHEDULED,
        )
        if updated is None:
            raise InvalidTransitionError(
                post.id, post.status.value, PostStatus.DRAFT.value,
                reason="post changed concurrently",
            )

        await self.queue.cancel(post.id)
        logger.info("[LIFECYCLE] Post %s unscheduled", post.id)
        return updated

    # ================================================================
    # WORKER TRANSITIONS
    # ================================================================

    async def claim(self, post: Post) -> Optional[Post]:
        """``SCHEDULED -> PUBLISHING``; ``None`` when another delivery won."""
        claimed = await self.db.claim_post(post.id, self.clock.now())
        if claimed is None:
            logger.info("[LIFECYCLE] Post %s was not claimable", post.id)
        return claimed

    async def mark_published(self, post: Post, result: PlatformResult) -> Optional[Post]:
        """``PUBLISHING -> PUBLISHED`` with the platform's id and metadata."""
        now = self.clock.now()
        missing = result.missing_metadata_keys(post.platform)
        if missing:
            logger.warning(
                "[LIFECYCLE] %s result for post %s is missing metadata keys: %s",
                post.platform.value,
                post.id,
                ", ".join(missing),
            )

        metadata: Dict[str, Any] = {
            **post.metadata,
            **result.metadata,
            "platform": post.platform.value,
            "published_at": now.isoformat(),
        }
        updated = await self.db.update_post(
            post.id,
            {
                "status": PostStatus.PUBLISHED,
                "published_at": now,
                "platform_post_id": result.platform_post_id,
                "metadata": metadata,
                "failed_at": None,
                "error_message": None,
            },
            expected_status=PostStatus.PUBLISHING,
        )
        if updated is None:
            logger.error(
                "[LIFECYCLE] Post %s was published as %s but is no longer PUBLISHING; "
                "status left for operator review",
                post.id,
                result.platform_post_id,
            )
            return None

        logger.info(
            "[LIFECYCLE] Post %s published (platform_post_id=%s)",
            post.id,
            result.platform_post_id,
        )
        return updated

    async def mark_failed(
        self,
        post_id: str,
        error: str,
        expected_status: PostStatus = PostStatus.PUBLISHING,
    ) -> Optional[Post]:
        """Move a post to ``FAILED`` with ``error`` recorded verbatim."""
        updated = await self.db.update_post(
            post_id,
            {
                "status": PostStatus.FAILED,
                "failed_at": self.clock.now(),
                "error_message": error,
            },
            expected_status=expected_status,
        )
        if updated is None:
            logger.warning(
                "[LIFECYCLE] Post %s not marked failed: no longer %s",
                post_id,
                expected_status.value,
            )
            return None

        logger.error("[LIFECYCLE] Post %s failed: %s", post_id, error)
        return updated

    async def release(self, post_id: str, reason: str) -> Optional[Post]:
        """``PUBLISHING -> SCHEDULED`` so a queue retry can claim the post again."""
        updated = await self.db.update_post(
            post_id,
            {"status": PostStatus.SCHEDULED, "claimed_at": None},
            expected_status=PostStatus.PUBLISHING,
        )
        if updated is None:
            logger.warning("[LIFECYCLE] Post %s not released: no longer publishing", post_id)
            return None

        logger.info("[LIFECYCLE] Post %s released for retry: %s", post_id, reason)
        return updated

    # ================================================================
    # OPERATOR RETRY
    # ================================================================

    async def retry_failed_post(self, post_id: str) -> Optional[str]:
        """Re-enter a ``FAILED`` post into ``SCHEDULED`` and re-enqueue it.

        The post keeps its original ``scheduled_at`` (or is due now when it
        never had one).

        Returns:
            The job id, or ``None`` if the post is missing, not ``FAILED``,
            or its profile is inactive.
        """
        post = await self.db.get_post(post_id)
        if post is None:
            logger.info("[LIFECYCLE] Post %s not found", post_id)
            return None
        if post.status is not PostStatus.FAILED:
            logger.info(
                "[LIFECYCLE] Post %s is not failed (status: %s)", post_id, post.status.value
            )
            return None

        try:
            await self._require_active_profile(post, PostStatus.SCHEDULED)
        except InvalidTransitionError as exc:
            logger.warning("[LIFECYCLE] Not retrying post %s: %s", post_id, exc)
            return None

        updated = await self.db.update_post(
            post.id,
            {
                "status": PostStatus.SCHEDULED,
                "scheduled_at": post.scheduled_at or self.clock.now(),
                "failed_at": None,
                "error_message": None,
                "claimed_at": None,
            },
            expected_status=PostStatus.FAILED,
        )
        if updated is None:
            logger.info("[LIFECYCLE] Post %s changed before retry", post_id)
            return None

        job_id = await self._enqueue(updated)
        if job_id is None:
            # Re-entered SCHEDULED; the next sync creates the job under this id
            job_id = job_id_for(updated.id)
        logger.info("[LIFECYCLE] Retrying post %s (job ID: %s)", post_id, job_id)
        return job_id

    async def retry_all_failed(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Retry every ``FAILED`` post (optionally for one user).

        Returns:
            ``{"total", "successful", "failed", "jobIds"}``.
        """
        posts = await self.db.get_failed_posts(user_id)
        job_ids: List[str] = []
        failures = 0
        for post in posts:
            try:
                job_id = await self.retry_failed_post(post.id)
            except Exception:
                logger.exception("[LIFECYCLE] Retry of post %s raised", post.id)
                job_id = None
            if job_id:
                job_ids.append(job_id)
            else:
                failures += 1

        logger.info(
            "[LIFECYCLE] Retried %d/%d failed posts", len(job_ids), len(posts)
        )
        return {
            "total": len(posts),
            "successful": len(job_ids),
            "failed": failures,
            "jobIds": job_ids,
        }

    # ================================================================
    # RECONCILIATION TRANSITIONS
    # ================================================================

    async def reset_stale(self, post: Post, threshold: timedelta) -> Optional[Post]:
        """``PUBLISHING -> FAILED`` for a post whose worker vanished.

        Never republished automatically: the remote outcome is unknown.
        """
        minutes = int(threshold.total_seconds() // 60)
        return await self.mark_failed(
            post.id,
            f"{STALE_LOCK_PREFIX} Publishing did not finish within {minutes} minutes; "
            "the remote outcome is unknown. Verify on the platform before retrying.",
        )

    async def demote_unstamped_published(self, post: Post) -> Optional[Post]:
        """``PUBLISHED`` without ``published_at`` back to ``SCHEDULED``."""
        if post.status is not PostStatus.PUBLISHED or post.published_at is not None:
            raise InvalidTransitionError(
                post.id, post.status.value, PostStatus.SCHEDULED.value,
                reason="only published posts without published_at can be demoted",
            )

        updated = await self.db.update_post(
            post.id,
            {
                "status": PostStatus.SCHEDULED,
                "scheduled_at": post.scheduled_at or self.clock.now(),
                "claimed_at": None,
            },
            expected_status=PostStatus.PUBLISHED,
        )
        if updated is not None:
            logger.warning(
                "[LIFECYCLE] Post %s was PUBLISHED without published_at; demoted to SCHEDULED",
                post.id,
            )
        return updated


def credential_error_message(platform: Platform, detail: str) -> str:
    return f"{CREDENTIAL_PREFIX} {platform.value}: {detail}"


__all__ = [
    "PostLifecycle",
    "CREDENTIAL_PREFIX",
    "STALE_LOCK_PREFIX",
    "credential_error_message",
]
