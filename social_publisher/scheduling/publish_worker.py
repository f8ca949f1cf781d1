"""
Publish worker: the queue handler that turns a due job into a published post.

For every job the worker:

1. Reloads the post and its profile from the state store.  The job payload
   is trusted for nothing but the post id.
2. Skips (acknowledges without any state change) when the post or profile
   is gone, or the post is no longer ``SCHEDULED``.  This makes late and
   duplicate deliveries harmless.
3. Runs the credential guard.  An unusable credential fails the post with
   a ``[credential]`` message and no queue retry.
4. Claims the post (``SCHEDULED -> PUBLISHING``, compare-and-set).
5. Calls the platform publisher under a timeout and records the outcome.

Transient failures release the post back to ``SCHEDULED`` and re-raise so
the queue retries with backoff; on the last attempt the post is failed
with ``"<message> (after N attempts)"`` instead.

A crash at any point leaves the post ``SCHEDULED`` (re-enqueued by the
sweeper) or ``PUBLISHING`` (reset to ``FAILED`` by the sweeper once the
stale-lock threshold passes).
"""

import asyncio
import logging
from typing import Any, Dict

from social_publisher.database import SupabaseDB
from social_publisher.exceptions import (
    ContentRejectedError,
    CredentialError,
    TransientPublishError,
)
from social_publisher.models import Post, PostStatus, Profile
from social_publisher.platforms.registry import PlatformRegistry
from social_publisher.queue import Job
from social_publisher.scheduling.lifecycle import PostLifecycle, credential_error_message
from social_publisher.scheduling.token_refresh import TokenRefreshScheduler

logger = logging.getLogger(__name__)


class PublishWorker:
    """Queue handler publishing one post per job.

    Args:
        db: State store.
        lifecycle: Post status transitions.
        registry: Platform publishers.
        tokens: Credential guard and refresher.
        publish_timeout_seconds: Bound on a single platform call.

    Usage::

        worker = PublishWorker(db, lifecycle, registry, tokens)
        await queue.consume(worker.handle)
    """

    def __init__(
        self,
        db: SupabaseDB,
        lifecycle: PostLifecycle,
        registry: PlatformRegistry,
        tokens: TokenRefreshScheduler,
        publish_timeout_seconds: float = 60.0,
    ) -> None:
        self.db = db
        self.lifecycle = lifecycle
        self.registry = registry
        self.tokens = tokens
        self.publish_timeout_seconds = publish_timeout_seconds

    # ================================================================
    # HANDLER
    # ================================================================

    async def handle(self, job: Job) -> Dict[str, Any]:
        """Process one job.

        Returns:
            A result dict with ``status`` of ``published``, ``failed`` or
            ``skipped``.

        Raises:
            TransientPublishError: The attempt failed transiently; the
                queue decides whether to retry.
        """
        post = await self.db.get_post(job.post_id)
        if post is None:
            return self._skip(job.post_id, "post not found")
        if post.status is PostStatus.PUBLISHED:
            return self._skip(post.id, "already published")
        if post.status is not PostStatus.SCHEDULED:
            return self._skip(post.id, f"status is {post.status.value}")

        profile = await self.db.get_profile(post.profile_id)
        if profile is None:
            return self._skip(post.id, f"profile {post.profile_id} not found")

        logger.info(
            "[WORKER] Processing post %s for %s (attempt %d/%d)",
            post.id,
            post.platform.value,
            job.attempt_number,
            job.max_attempts,
        )

        try:
            profile = await self.tokens.ensure_valid_token(profile)
        except CredentialError as exc:
            return await self._fail_credential(post, exc, PostStatus.SCHEDULED)
        except TransientPublishError as exc:
            await self._settle_transient(job, post, str(exc), PostStatus.SCHEDULED)
            raise

        claimed = await self.lifecycle.claim(post)
        if claimed is None:
            return self._skip(post.id, "claimed by another delivery")

        return await self._publish(job, claimed, profile)

    # ================================================================
    # PUBLISHING
    # ================================================================

    async def _publish(self, job: Job, post: Post, profile: Profile) -> Dict[str, Any]:
        logger.info(
            "[WORKER] Publishing post %s (platform=%s, media=%d, text_len=%d)",
            post.id,
            post.platform.value,
            len(post.media_urls),
            len(post.content),
        )
        timeout = self.publish_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.registry.publish(post, profile.credentials(), timeout),
                timeout=timeout,
            )
        except ContentRejectedError as exc:
            # Platform message kept verbatim for the operator
            await self.lifecycle.mark_failed(post.id, str(exc))
            return self._failed(post, str(exc), exc.error_class)
        except CredentialError as exc:
            if exc.revoked:
                await self.tokens.deactivate_profile(profile, f"Publish rejected credentials: {exc}")
            return await self._fail_credential(post, exc, PostStatus.PUBLISHING)
        except TransientPublishError as exc:
            await self._settle_transient(job, post, str(exc), PostStatus.PUBLISHING)
            raise
        except asyncio.TimeoutError as exc:
            message = f"Publish timed out after {timeout:g}s"
            await self._settle_transient(job, post, message, PostStatus.PUBLISHING)
            raise TransientPublishError(message) from exc
        except Exception as exc:
            # Unclassified errors are treated as transient
            message = str(exc) or exc.__class__.__name__
            await self._settle_transient(job, post, message, PostStatus.PUBLISHING)
            raise TransientPublishError(message) from exc

        await self.lifecycle.mark_published(post, result)
        logger.info(
            "[WORKER] Successfully published post %s (platform_post_id=%s)",
            post.id,
            result.platform_post_id,
        )
        return {
            "postId": post.id,
            "status": "published",
            "platformPostId": result.platform_post_id,
        }

    # ================================================================
    # FAILURE POLICY
    # ================================================================

    async def _fail_credential(
        self, post: Post, exc: CredentialError, expected: PostStatus
    ) -> Dict[str, Any]:
        message = credential_error_message(post.platform, str(exc))
        await self.lifecycle.mark_failed(post.id, message, expected_status=expected)
        return self._failed(post, message, exc.error_class)

    async def _settle_transient(
        self, job: Job, post: Post, message: str, expected: PostStatus
    ) -> None:
        """Fail the post on the last attempt, otherwise leave it retryable."""
        if job.is_last_attempt:
            await self.lifecycle.mark_failed(
                post.id,
                f"{message} (after {job.attempt_number} attempts)",
                expected_status=expected,
            )
        elif expected is PostStatus.PUBLISHING:
            await self.lifecycle.release(post.id, message)
        else:
            logger.warning("[WORKER] Post %s will be retried: %s", post.id, message)

    # ================================================================
    # RESULTS
    # ================================================================

    @staticmethod
    def _skip(post_id: str, reason: str) -> Dict[str, Any]:
        logger.info("[WORKER] Skipping post %s: %s", post_id, reason)
        return {"postId": post_id, "status": "skipped", "reason": reason}

    @staticmethod
    def _failed(post: Post, error: str, error_class: str) -> Dict[str, Any]:
        return {
            "postId": post.id,
            "status": "failed",
            "errorClass": error_class,
            "error": error,
        }


__all__ = ["PublishWorker"]
