"""
Domain data models for the publishing engine.

Defines the records persisted in the state store and the value objects
exchanged with platform clients:

- ``Platform``: Supported social platforms.
- ``PostStatus``: Post lifecycle status, with the allowed transitions.
- ``Post``: A unit of content scheduled for one platform and profile.
- ``Profile``: A connected social account with OAuth credentials.
- ``OAuthHandshakeState``: Short-lived PKCE proof for one authorization.
- ``Credentials`` / ``PlatformResult`` / ``TokenGrant``: platform I/O.

Rows are plain dicts as returned by the Supabase client; each record has a
``from_row`` constructor and, where the engine writes it, a ``to_row``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from social_publisher.utils import ensure_utc, parse_timestamp, utc_now


# =============================================================================
# PLATFORM
# =============================================================================


class Platform(Enum):
    """Target social platform."""

    FACEBOOK = "FACEBOOK"
    INSTAGRAM = "INSTAGRAM"
    TIKTOK = "TIKTOK"
    TWITTER = "TWITTER"
    YOUTUBE = "YOUTUBE"


# Keys every platform result must carry in ``metadata`` on top of the
# ``platform`` and ``published_at`` keys the worker stamps itself.
PLATFORM_METADATA_KEYS: Dict[Platform, FrozenSet[str]] = {
    Platform.FACEBOOK: frozenset({"post_id"}),
    Platform.INSTAGRAM: frozenset(),
    Platform.TIKTOK: frozenset({"publish_id"}),
    Platform.TWITTER: frozenset(),
    Platform.YOUTUBE: frozenset(),
}


# =============================================================================
# POST STATUS
# =============================================================================


class PostStatus(Enum):
    """Lifecycle status of a post.

    Transitions:
        DRAFT      -> SCHEDULED
        SCHEDULED  -> PUBLISHING (worker claim only)
        SCHEDULED  -> DRAFT (unschedule)
        SCHEDULED  -> FAILED (credential guard, before any claim)
        PUBLISHING -> PUBLISHED | FAILED
        PUBLISHING -> SCHEDULED (worker release before a queue retry)
        FAILED     -> SCHEDULED (retry re-entry)
        PUBLISHED  -> SCHEDULED (only to repair a record missing published_at)
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[PostStatus, FrozenSet[PostStatus]] = {
    PostStatus.DRAFT: frozenset({PostStatus.SCHEDULED}),
    PostStatus.SCHEDULED: frozenset(
        {PostStatus.PUBLISHING, PostStatus.DRAFT, PostStatus.FAILED}
    ),
    PostStatus.PUBLISHING: frozenset(
        {PostStatus.PUBLISHED, PostStatus.FAILED, PostStatus.SCHEDULED}
    ),
    PostStatus.FAILED: frozenset({PostStatus.SCHEDULED}),
    PostStatus.PUBLISHED: frozenset({PostStatus.SCHEDULED}),
}


def can_transition(current: PostStatus, target: PostStatus) -> bool:
    """Return ``True`` if ``current -> target`` is a legal edge."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


# =============================================================================
# POST
# =============================================================================


@dataclass
class Post:
    """A unit of content scheduled for one platform.

    Attributes:
        id: Unique identifier (UUID).
        user_id: Owning user.
        profile_id: Target profile the post is published through.
        content: Post body.
        platform: Target platform.
        media_urls: Public URLs of attached media, in display order.
        status: Current lifecycle status.
        scheduled_at: When to publish; ``None`` means "as soon as queued".
        published_at: Set exactly when status becomes ``PUBLISHED``.
        failed_at: Set only while status is ``FAILED``.
        error_message: Set only while status is ``FAILED``.
        platform_post_id: External id once published.
        metadata: Platform response data (see ``PLATFORM_METADATA_KEYS``).
        claimed_at: When the worker moved the post to ``PUBLISHING``.
    """

    id: str
    user_id: str
    profile_id: str
    content: str
    platform: Platform
    media_urls: List[str] = field(default_factory=list)
    status: PostStatus = PostStatus.DRAFT
    scheduled_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    platform_post_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def queue_delay(self, now: datetime) -> timedelta:
        """Delay before the post is due: zero when unscheduled or overdue."""
        if self.scheduled_at is None:
            return timedelta(0)
        return max(timedelta(0), ensure_utc(self.scheduled_at) - now)

    def is_due(self, now: datetime) -> bool:
        return self.queue_delay(now) == timedelta(0)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Post":
        """Build a ``Post`` from a ``posts`` table row."""
        media = row.get("media_urls") or []
        if isinstance(media, str):
            # Legacy rows stored a comma-separated string
            media = [url for url in media.split(",") if url]

        return cls(
            id=row["id"],
            user_id=row["user_id"],
            profile_id=row["profile_id"],
            content=row.get("content") or "",
            platform=Platform(row["platform"]),
            media_urls=list(media),
            status=PostStatus(row.get("status", PostStatus.DRAFT.value)),
            scheduled_at=parse_timestamp(row.get("scheduled_at")),
            published_at=parse_timestamp(row.get("published_at")),
            failed_at=parse_timestamp(row.get("failed_at")),
            error_message=row.get("error_message"),
            platform_post_id=row.get("platform_post_id"),
            metadata=dict(row.get("metadata") or {}),
            claimed_at=parse_timestamp(row.get("claimed_at")),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a ``posts`` table row."""

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "profile_id": self.profile_id,
            "content": self.content,
            "platform": self.platform.value,
            "media_urls": list(self.media_urls),
            "status": self.status.value,
            "scheduled_at": iso(self.scheduled_at),
            "published_at": iso(self.published_at),
            "failed_at": iso(self.failed_at),
            "error_message": self.error_message,
            "platform_post_id": self.platform_post_id,
            "metadata": dict(self.metadata),
            "claimed_at": iso(self.claimed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


# =============================================================================
# PROFILE
# =============================================================================


@dataclass
class Profile:
    """A connected social account with OAuth credentials."""

    id: str
    user_id: str
    platform: Platform
    platform_user_id: str
    access_token: str
    platform_username: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_token_expired(self, now: datetime) -> bool:
        # No expiry means a long-lived token
        if self.token_expires_at is None:
            return False
        return ensure_utc(self.token_expires_at) <= now

    def expires_within(self, now: datetime, window: timedelta) -> bool:
        if self.token_expires_at is None:
            return False
        return ensure_utc(self.token_expires_at) <= now + window

    @property
    def can_refresh(self) -> bool:
        """Facebook and Instagram exchange the access token; others need a refresh token."""
        if self.platform in (Platform.FACEBOOK, Platform.INSTAGRAM):
            return True
        return bool(self.refresh_token)

    def hours_until_expiry(self, now: datetime) -> Optional[int]:
        if self.token_expires_at is None:
            return None
        seconds = (ensure_utc(self.token_expires_at) - now).total_seconds()
        return int(seconds // 3600)

    def credentials(self) -> "Credentials":
        return Credentials(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            platform_user_id=self.platform_user_id,
            expires_at=self.token_expires_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        """Build a ``Profile`` from a ``profiles`` table row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            platform=Platform(row["platform"]),
            platform_user_id=row.get("platform_user_id") or "",
            access_token=row.get("access_token") or "",
            platform_username=row.get("platform_username"),
            refresh_token=row.get("refresh_token"),
            token_expires_at=parse_timestamp(row.get("token_expires_at")),
            is_active=bool(row.get("is_active", True)),
            metadata=dict(row.get("metadata") or {}),
        )


# =============================================================================
# OAUTH HANDSHAKE STATE
# =============================================================================


@dataclass
class OAuthHandshakeState:
    """Ephemeral PKCE record for one in-flight OAuth authorization."""

    id: str
    user_id: str
    platform: Platform
    state: str
    code_verifier: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) <= now

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OAuthHandshakeState":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            platform=Platform(row["platform"]),
            state=row["state"],
            code_verifier=row["code_verifier"],
            expires_at=parse_timestamp(row["expires_at"]),  # type: ignore[arg-type]
        )


# =============================================================================
# PLATFORM I/O
# =============================================================================


@dataclass
class Credentials:
    """What a platform client needs to act on behalf of a profile."""

    access_token: str
    refresh_token: Optional[str]
    platform_user_id: str
    expires_at: Optional[datetime] = None


@dataclass
class PlatformResult:
    """Successful publish response from a platform client."""

    platform_post_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def missing_metadata_keys(self, platform: Platform) -> List[str]:
        """Required metadata keys for ``platform`` that the client omitted."""
        required = PLATFORM_METADATA_KEYS.get(platform, frozenset())
        return sorted(key for key in required if key not in self.metadata)


@dataclass
class TokenGrant:
    """Result of a successful token refresh.

    ``refresh_token`` is ``None`` when the platform did not rotate it, in
    which case the stored one is kept.
    """

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "Platform",
    "PLATFORM_METADATA_KEYS",
    "PostStatus",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "Post",
    "Profile",
    "OAuthHandshakeState",
    "Credentials",
    "PlatformResult",
    "TokenGrant",
]
