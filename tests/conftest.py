"""Shared fixtures for the publishing engine test suite."""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from social_publisher.config import QueueConfig, SweeperConfig, TokenRefreshConfig
from social_publisher.models import (
    OAuthHandshakeState,
    Platform,
    PlatformResult,
    Post,
    PostStatus,
    Profile,
)
from social_publisher.platforms.registry import PlatformRegistry
from social_publisher.queue.memory_queue import InMemoryJobQueue
from social_publisher.scheduling.lifecycle import PostLifecycle
from social_publisher.scheduling.publish_worker import PublishWorker
from social_publisher.scheduling.reconciliation import ReconciliationSweeper
from social_publisher.scheduling.token_refresh import TokenRefreshScheduler
from social_publisher.utils import Clock, ensure_utc


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all credentials so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "REDIS_URL",
        "QUEUE_BACKEND",
        "APP_ENV",
        "LOG_LEVEL",
        "FACEBOOK_APP_ID",
        "FACEBOOK_APP_SECRET",
        "TIKTOK_CLIENT_KEY",
        "TIKTOK_CLIENT_SECRET",
        "TWITTER_CLIENT_ID",
        "TWITTER_CLIENT_SECRET",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------
class FakeClock(Clock):
    """Clock whose time only moves when told to; ``sleep`` advances it."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, **delta: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds, **delta)
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(sample_utc_now):
    return FakeClock(sample_utc_now)


# ---------------------------------------------------------------------------
# In-memory state store
# ---------------------------------------------------------------------------
class FakeDB:
    """Dict-backed stand-in for ``SupabaseDB`` with the same method surface.

    Compare-and-set semantics match the real client: a status guard that
    does not match leaves the row untouched and returns ``None``.
    """

    def __init__(self, clock: Clock) -> None:
        self.clock = clock
        self.posts: Dict[str, Post] = {}
        self.profiles: Dict[str, Profile] = {}
        self.oauth_states: Dict[str, OAuthHandshakeState] = {}

    # -- seeding ---------------------------------------------------------

    def add_post(self, post: Post) -> Post:
        self.posts[post.id] = copy.deepcopy(post)
        return post

    def add_profile(self, profile: Profile) -> Profile:
        self.profiles[profile.id] = copy.deepcopy(profile)
        return profile

    def status_of(self, post_id: str) -> PostStatus:
        return self.posts[post_id].status

    # -- posts -----------------------------------------------------------

    async def get_post(self, post_id: str) -> Optional[Post]:
        post = self.posts.get(post_id)
        return copy.deepcopy(post) if post else None

    async def insert_post(self, post: Post) -> Post:
        return self.add_post(post)

    async def update_post(
        self,
        post_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[PostStatus] = None,
    ) -> Optional[Post]:
        post = self.posts.get(post_id)
        if post is None:
            return None
        if expected_status is not None and post.status is not expected_status:
            return None
        for key, value in fields.items():
            setattr(post, key, copy.deepcopy(value))
        post.updated_at = self.clock.now()
        return copy.deepcopy(post)

    async def claim_post(self, post_id: str, claimed_at: datetime) -> Optional[Post]:
        return await self.update_post(
            post_id,
            {"status": PostStatus.PUBLISHING, "claimed_at": claimed_at},
            expected_status=PostStatus.SCHEDULED,
        )

    async def get_posts_to_sync(self) -> List[Post]:
        rows = [
            post for post in self.posts.values()
            if post.status is PostStatus.SCHEDULED
            and post.scheduled_at is not None
            and post.published_at is None
        ]
        rows.sort(key=lambda post: post.scheduled_at)
        return copy.deepcopy(rows)

    async def get_published_without_timestamp(self) -> List[Post]:
        return copy.deepcopy([
            post for post in self.posts.values()
            if post.status is PostStatus.PUBLISHED and post.published_at is None
        ])

    async def get_stale_publishing(self, cutoff: datetime) -> List[Post]:
        return copy.deepcopy([
            post for post in self.posts.values()
            if post.status is PostStatus.PUBLISHING
            and ensure_utc(post.claimed_at or post.updated_at) <= cutoff
        ])

    async def get_failed_posts(self, user_id: Optional[str] = None) -> List[Post]:
        return copy.deepcopy([
            post for post in self.posts.values()
            if post.status is PostStatus.FAILED
            and (user_id is None or post.user_id == user_id)
        ])

    # -- profiles --------------------------------------------------------

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        profile = self.profiles.get(profile_id)
        return copy.deepcopy(profile) if profile else None

    async def get_expiring_profiles(self, before: datetime) -> List[Profile]:
        rows = [
            profile for profile in self.profiles.values()
            if profile.is_active
            and profile.token_expires_at is not None
            and profile.token_expires_at <= before
        ]
        rows.sort(key=lambda profile: profile.token_expires_at)
        return copy.deepcopy(rows)

    async def update_profile(self, profile_id: str, fields: Dict[str, Any]) -> Optional[Profile]:
        profile = self.profiles.get(profile_id)
        if profile is None:
            return None
        for key, value in fields.items():
            setattr(profile, key, copy.deepcopy(value))
        return copy.deepcopy(profile)

    # -- oauth handshake state --------------------------------------------

    async def insert_oauth_state(self, record: OAuthHandshakeState) -> None:
        if any(existing.state == record.state for existing in self.oauth_states.values()):
            raise ValueError(f"duplicate state {record.state}")
        self.oauth_states[record.id] = copy.deepcopy(record)

    async def delete_oauth_states(
        self,
        user_id: str,
        platform: Platform,
        expired_before: Optional[datetime] = None,
    ) -> int:
        doomed = [
            record_id for record_id, record in self.oauth_states.items()
            if record.user_id == user_id
            and record.platform is platform
            and (expired_before is None or record.expires_at <= expired_before)
        ]
        for record_id in doomed:
            del self.oauth_states[record_id]
        return len(doomed)

    async def take_oauth_state(
        self, user_id: str, platform: Platform, state: str
    ) -> Optional[OAuthHandshakeState]:
        for record_id, record in list(self.oauth_states.items()):
            if (
                record.state == state
                and record.user_id == user_id
                and record.platform is platform
            ):
                return self.oauth_states.pop(record_id)
        return None


@pytest.fixture
def db(clock):
    return FakeDB(clock)


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------
@pytest.fixture
def make_profile(db, sample_utc_now):
    """Insert and return a profile; keyword overrides replace defaults."""

    def _make(**overrides: Any) -> Profile:
        fields: Dict[str, Any] = {
            "id": "profile-1",
            "user_id": "user-1",
            "platform": Platform.TWITTER,
            "platform_user_id": "tw-42",
            "platform_username": "acme",
            "access_token": "access-old",
            "refresh_token": "refresh-old",
            "token_expires_at": sample_utc_now + timedelta(days=30),
            "is_active": True,
        }
        fields.update(overrides)
        return db.add_profile(Profile(**fields))

    return _make


@pytest.fixture
def make_post(db, sample_utc_now):
    """Insert and return a post; keyword overrides replace defaults."""

    def _make(**overrides: Any) -> Post:
        fields: Dict[str, Any] = {
            "id": "post-1",
            "user_id": "user-1",
            "profile_id": "profile-1",
            "content": "Shipping the new release today.",
            "platform": Platform.TWITTER,
            "media_urls": ["https://cdn.example.com/a.png"],
            "status": PostStatus.SCHEDULED,
            "scheduled_at": sample_utc_now,
            "created_at": sample_utc_now - timedelta(days=1),
            "updated_at": sample_utc_now - timedelta(days=1),
        }
        fields.update(overrides)
        return db.add_post(Post(**fields))

    return _make


# ---------------------------------------------------------------------------
# Platform doubles
# ---------------------------------------------------------------------------
class FakePublisher:
    """Publisher returning a fixed result, or raising the queued errors first."""

    def __init__(self, result: Optional[PlatformResult] = None) -> None:
        self.result = result or PlatformResult(platform_post_id="remote-1")
        self.errors: List[BaseException] = []
        self.calls: List[str] = []
        self.delay: float = 0.0

    async def publish(self, post, credentials, timeout):
        self.calls.append(post.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def registry(publisher):
    return PlatformRegistry({platform: publisher for platform in Platform})


@pytest.fixture
def token_client():
    """Token endpoint double; ``refresh`` is an AsyncMock."""
    client = MagicMock()
    client.refresh = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# Engine components wired over the fakes
# ---------------------------------------------------------------------------
@pytest.fixture
def queue_config():
    return QueueConfig(
        backend="memory",
        name="test-posts",
        max_attempts=3,
        backoff_base_seconds=2.0,
        concurrency=2,
        poll_interval_seconds=0.01,
        job_timeout_seconds=5.0,
        operation_timeout_seconds=1.0,
        stalled_after_seconds=300.0,
    )


@pytest.fixture
def queue(queue_config, clock):
    return InMemoryJobQueue(queue_config, clock)


@pytest.fixture
def lifecycle(db, queue, clock):
    return PostLifecycle(db, queue, clock)


@pytest.fixture
def token_config():
    return TokenRefreshConfig(delay_between_refreshes_seconds=1.0)


@pytest.fixture
def tokens(db, token_client, token_config, clock):
    return TokenRefreshScheduler(db, token_client, token_config, clock)


@pytest.fixture
def worker(db, lifecycle, registry, tokens):
    return PublishWorker(db, lifecycle, registry, tokens, publish_timeout_seconds=1.0)


@pytest.fixture
def sweeper(db, queue, lifecycle, clock):
    return ReconciliationSweeper(db, queue, lifecycle, SweeperConfig(stale_lock_minutes=10), clock)


@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query chain returns ``rows``."""
    client = MagicMock()
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "delete", "eq", "lte", "gte",
        "is_", "or_", "order", "limit", "range",
    ):
        getattr(table_mock, method).return_value = table_mock
    table_mock.not_ = table_mock
    table_mock.rows = []

    async def mock_execute():
        return MagicMock(data=table_mock.rows, count=len(table_mock.rows))

    table_mock.execute = mock_execute
    client.table.return_value = table_mock
    return client
