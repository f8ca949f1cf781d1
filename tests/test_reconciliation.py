"""Tests for social_publisher.scheduling.reconciliation.

Validates that a sweep:
- enqueues every SCHEDULED post (overdue ones with zero delay)
- is idempotent: repeated sweeps never duplicate jobs
- fails PUBLISHING posts older than the stale-lock threshold
- demotes PUBLISHED posts without published_at
- collects per-post errors instead of raising
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from social_publisher.exceptions import DatabaseError, QueueError
from social_publisher.models import PostStatus
from social_publisher.queue import JobState


@pytest.fixture(autouse=True)
def _profile(make_profile):
    make_profile()


class TestEnqueueStage:
    """SCHEDULED posts are (re)enqueued."""

    @pytest.mark.asyncio
    async def test_future_and_overdue_posts(self, sweeper, make_post, queue, clock):
        make_post(id="future", scheduled_at=clock.now() + timedelta(hours=1))
        make_post(id="overdue", scheduled_at=clock.now() - timedelta(days=2))

        report = await sweeper.sync_scheduled_posts()

        assert report.synced == 2
        future = await queue.get_job_for_post("future")
        overdue = await queue.get_job_for_post("overdue")
        assert future.state is JobState.DELAYED
        assert future.delay == 3600 * 1000
        assert overdue.state is JobState.WAITING
        assert overdue.delay == 0

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, sweeper, make_post, queue, clock):
        make_post(id="a", scheduled_at=clock.now() + timedelta(minutes=10))
        make_post(id="b", scheduled_at=clock.now() - timedelta(minutes=10))

        for _ in range(3):
            await sweeper.sync_scheduled_posts()

        assert (await queue.get_stats()).total == 2

    @pytest.mark.asyncio
    async def test_ignores_other_statuses(self, sweeper, make_post, queue, clock):
        make_post(id="draft", status=PostStatus.DRAFT)
        make_post(id="failed", status=PostStatus.FAILED)
        make_post(id="done", status=PostStatus.PUBLISHED, published_at=clock.now())

        report = await sweeper.sync_scheduled_posts()

        assert report.synced == 0
        assert (await queue.get_stats()).total == 0

    @pytest.mark.asyncio
    async def test_rebuilds_lost_queue(self, sweeper, make_post, queue, clock):
        """A wiped queue is restored from post state alone."""
        make_post(scheduled_at=clock.now() + timedelta(minutes=5))
        await sweeper.sync_scheduled_posts()
        await queue.cancel("post-1")

        await sweeper.sync_scheduled_posts()

        assert (await queue.get_job_for_post("post-1")).state is JobState.DELAYED

    @pytest.mark.asyncio
    async def test_retry_backoff_is_kept(self, sweeper, make_post, queue, clock):
        """An overdue post whose job is backing off is not pulled forward."""
        make_post(scheduled_at=clock.now() - timedelta(minutes=1))
        await sweeper.sync_scheduled_posts()

        async def flaky(job):
            raise RuntimeError("HTTP 503")

        await queue.process_next(flaky)
        backing_off = await queue.get_job_for_post("post-1")
        assert backing_off.state is JobState.DELAYED

        report = await sweeper.sync_scheduled_posts()

        job = await queue.get_job_for_post("post-1")
        assert report.synced == 1
        assert job.state is JobState.DELAYED
        assert job.delay == backing_off.delay == 2000
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_enqueue_errors_are_collected(self, sweeper, make_post, queue, clock):
        make_post(id="a")
        make_post(id="b")
        queue.enqueue = AsyncMock(side_effect=[QueueError("redis down"), "post-b"])

        report = await sweeper.sync_scheduled_posts()

        assert report.synced == 1
        assert report.failed == 1
        assert report.errors == [{"postId": "a", "error": "redis down"}]

    @pytest.mark.asyncio
    async def test_select_failure_is_reported(self, sweeper, db):
        db.get_posts_to_sync = AsyncMock(side_effect=DatabaseError("connection refused"))

        report = await sweeper.sync_scheduled_posts()

        assert report.failed == 1
        assert report.errors[0]["postId"] is None


class TestStaleLocks:
    """PUBLISHING posts past the threshold become FAILED."""

    @pytest.mark.asyncio
    async def test_stale_publishing_post_fails(self, sweeper, make_post, queue, db, clock):
        make_post(status=PostStatus.PUBLISHING, claimed_at=clock.now() - timedelta(minutes=11))

        report = await sweeper.sync_scheduled_posts()

        assert report.stale_reset == 1
        stored = db.posts["post-1"]
        assert stored.status is PostStatus.FAILED
        assert stored.error_message.startswith("[stale_lock]")
        # Never republished automatically
        assert await queue.get_job_for_post("post-1") is None

    @pytest.mark.asyncio
    async def test_recent_claim_left_alone(self, sweeper, make_post, db, clock):
        make_post(status=PostStatus.PUBLISHING, claimed_at=clock.now() - timedelta(minutes=3))

        report = await sweeper.sync_scheduled_posts()

        assert report.stale_reset == 0
        assert db.status_of("post-1") is PostStatus.PUBLISHING

    @pytest.mark.asyncio
    async def test_unclaimed_row_falls_back_to_updated_at(self, sweeper, make_post, db, clock):
        make_post(
            status=PostStatus.PUBLISHING,
            claimed_at=None,
            updated_at=clock.now() - timedelta(hours=1),
        )

        await sweeper.sync_scheduled_posts()

        assert db.status_of("post-1") is PostStatus.FAILED

    @pytest.mark.asyncio
    async def test_crash_mid_publish_recovers_after_threshold(
        self, sweeper, lifecycle, make_post, db, clock
    ):
        """A worker that claimed and died leaves a post the sweeper fails later."""
        post = make_post()
        await lifecycle.claim(post)

        clock.advance(minutes=5)
        await sweeper.sync_scheduled_posts()
        assert db.status_of("post-1") is PostStatus.PUBLISHING

        clock.advance(minutes=6)
        await sweeper.sync_scheduled_posts()
        assert db.status_of("post-1") is PostStatus.FAILED


class TestDemotion:
    @pytest.mark.asyncio
    async def test_unstamped_published_is_demoted_and_enqueued(self, sweeper, make_post, queue, db):
        make_post(status=PostStatus.PUBLISHED, published_at=None)

        report = await sweeper.sync_scheduled_posts()

        assert report.demoted == 1
        assert report.synced == 1
        assert db.status_of("post-1") is PostStatus.SCHEDULED
        assert await queue.get_job_for_post("post-1") is not None

    @pytest.mark.asyncio
    async def test_report_to_dict(self, sweeper, make_post):
        make_post()
        data = (await sweeper.sync_scheduled_posts()).to_dict()
        assert data == {"synced": 1, "failed": 0, "errors": [], "demoted": 0, "staleReset": 0}
