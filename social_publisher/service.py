"""
Composition root and admin-facing facade of the publishing engine.

``PublisherService`` wires the state store, the job queue, the publish
worker, the reconciliation sweeper, and the token refresh scheduler
together, owns their lifecycle, and exposes the operations the excluded
authoring API and admin surface call.

Usage::

    service = await PublisherService.create(registry=registry)
    await service.start()
    ...
    await service.add_to_queue(post.id, post.user_id, run_at=post.scheduled_at)
    ...
    await service.stop()
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from social_publisher.config import Settings, get_settings
from social_publisher.database import SupabaseDB
from social_publisher.models import Post
from social_publisher.oauth import HandshakeStore
from social_publisher.platforms.base import TokenRefresher
from social_publisher.platforms.oauth_tokens import OAuthTokenClient
from social_publisher.platforms.registry import PlatformRegistry
from social_publisher.queue import JobQueue, create_queue
from social_publisher.scheduling.lifecycle import PostLifecycle
from social_publisher.scheduling.periodic import PeriodicTask
from social_publisher.scheduling.publish_worker import PublishWorker
from social_publisher.scheduling.reconciliation import ReconciliationSweeper
from social_publisher.scheduling.token_refresh import TokenRefreshScheduler
from social_publisher.utils import Clock

logger = logging.getLogger(__name__)


class PublisherService:
    """Owns every engine component and their background tasks.

    Args:
        settings: Application settings.
        db: State store.
        queue: Job queue (not yet opened).
        registry: Platform publishers.  Posts for platforms without a
            publisher fail as rejected.
        token_client: Token endpoint client; defaults to
            :class:`~social_publisher.platforms.OAuthTokenClient`.
        clock: Time source shared by every component.
    """

    def __init__(
        self,
        settings: Settings,
        db: SupabaseDB,
        queue: JobQueue,
        registry: Optional[PlatformRegistry] = None,
        token_client: Optional[TokenRefresher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.queue = queue
        self.clock = clock or queue.clock
        self.registry = registry or PlatformRegistry()
        self.token_client = token_client or OAuthTokenClient(
            settings.oauth_clients, timeout=settings.tokens.request_timeout_seconds
        )

        self.lifecycle = PostLifecycle(db, queue, self.clock)
        self.tokens = TokenRefreshScheduler(db, self.token_client, settings.tokens, self.clock)
        self.worker = PublishWorker(
            db,
            self.lifecycle,
            self.registry,
            self.tokens,
            publish_timeout_seconds=settings.publish_timeout_seconds,
        )
        self.sweeper = ReconciliationSweeper(db, queue, self.lifecycle, settings.sweeper, self.clock)
        self.handshakes = HandshakeStore(
            db, ttl=timedelta(seconds=settings.handshake_ttl_seconds), clock=self.clock
        )
        self._periodic: List[PeriodicTask] = []
        self._started = False

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        registry: Optional[PlatformRegistry] = None,
        clock: Optional[Clock] = None,
    ) -> "PublisherService":
        """Build the service from settings and environment credentials."""
        settings = settings or get_settings()
        db = await SupabaseDB.create()
        queue = create_queue(settings.queue, clock)
        return cls(settings, db, queue, registry=registry, clock=clock)

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self, consume: bool = True, periodic: bool = True) -> None:
        """Open the queue, start consumers and the periodic jobs.

        The sync job runs once immediately (unless disabled) so a queue
        that restarted empty is rebuilt before the first interval passes.
        """
        if self._started:
            raise RuntimeError("PublisherService is already started")
        await self.queue.open()
        self._started = True

        if consume:
            await self.queue.consume(self.worker.handle, self.settings.queue.concurrency)

        if periodic:
            self._periodic = [
                PeriodicTask(
                    "posts-sync",
                    self.settings.sync_interval_seconds,
                    self.sync_scheduled_posts,
                    self.clock,
                    run_on_start=self.settings.sweeper.run_on_start,
                ),
                PeriodicTask(
                    "token-refresh",
                    self.settings.token_refresh_interval_seconds,
                    self.refresh_expiring_tokens,
                    self.clock,
                    run_on_start=False,
                ),
                PeriodicTask(
                    "queue-clean",
                    self.settings.queue.clean_grace_hours * 3600,
                    self.clean_old_jobs,
                    self.clock,
                    run_on_start=False,
                ),
            ]
            for task in self._periodic:
                task.start()

        logger.info(
            "[SERVICE] Started (env=%s, backend=%s, sync every %ss, token refresh every %ss)",
            self.settings.environment,
            self.settings.queue.backend,
            self.settings.sync_interval_seconds,
            self.settings.token_refresh_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop periodic jobs and consumers, then close the queue."""
        for task in self._periodic:
            await task.stop()
        self._periodic = []
        if self._started:
            await self.queue.close()
            self._started = False
        logger.info("[SERVICE] Stopped")

    async def __aenter__(self) -> "PublisherService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ================================================================
    # QUEUE
    # ================================================================

    async def add_to_queue(
        self, post_id: str, user_id: str, run_at: Optional[datetime] = None
    ) -> str:
        """Enqueue (or re-time) the job for a post."""
        return await self.queue.enqueue(post_id, user_id, run_at=run_at, scheduled_at=run_at)

    async def remove_from_queue(self, post_id: str) -> bool:
        return await self.queue.cancel(post_id)

    async def get_stats(self) -> Dict[str, int]:
        return (await self.queue.get_stats()).to_dict()

    async def list_jobs(self, bucket: str, offset: int = 0, limit: int = 20) -> List[Dict[str, Any]]:
        jobs = await self.queue.list_jobs(bucket, offset, limit)
        return [job.to_dict() for job in jobs]

    async def clean_old_jobs(self, grace: Optional[timedelta] = None) -> Dict[str, int]:
        """Drop completed and failed jobs older than the grace period."""
        return {
            "completed": await self.queue.clean(grace, "completed"),
            "failed": await self.queue.clean(grace, "failed"),
        }

    # ================================================================
    # POSTS
    # ================================================================

    async def schedule_post(self, post_id: str, scheduled_at: Optional[datetime] = None) -> Post:
        return await self.lifecycle.schedule(post_id, scheduled_at)

    async def unschedule_post(self, post_id: str) -> Post:
        return await self.lifecycle.unschedule(post_id)

    async def retry_failed_post(self, post_id: str) -> Optional[str]:
        return await self.lifecycle.retry_failed_post(post_id)

    async def retry_all_failed(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.lifecycle.retry_all_failed(user_id)

    async def sync_scheduled_posts(self) -> Dict[str, Any]:
        return (await self.sweeper.sync_scheduled_posts()).to_dict()

    # ================================================================
    # TOKENS
    # ================================================================

    async def refresh_expiring_tokens(self) -> Dict[str, Any]:
        report = await self.tokens.refresh_expiring_tokens()
        for result in report.results:
            if not result.success:
                logger.warning(
                    "[SERVICE] Token refresh failed for %s @%s: %s",
                    result.platform,
                    result.username,
                    result.message,
                )
        return report.to_dict()

    async def refresh_token(self, profile_id: str) -> Dict[str, Any]:
        return await self.tokens.refresh_token(profile_id)

    async def get_profiles_needing_refresh(self) -> List[Dict[str, Any]]:
        now = self.clock.now()
        return [
            {
                "profileId": profile.id,
                "platform": profile.platform.value,
                "username": profile.platform_username,
                "hoursUntilExpiry": profile.hours_until_expiry(now),
            }
            for profile in await self.tokens.get_profiles_needing_refresh()
        ]


__all__ = ["PublisherService"]
