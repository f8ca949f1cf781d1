"""
Unified async state store client for the publishing engine.

ALL database operations go through the SupabaseDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

The state store is the single writer-of-record for post and profile
status.  Status changes that race with other writers (the worker claim,
releases, stale-lock resets) are expressed as compare-and-set updates:
the ``UPDATE`` carries the expected current status in its filter and an
empty result means another writer got there first.

Usage::

    from social_publisher.database import SupabaseDB

    db = await SupabaseDB.create()
    post = await db.get_post(post_id)
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from social_publisher.exceptions import DatabaseError, ValidationError
from social_publisher.models import (
    OAuthHandshakeState,
    Platform,
    Post,
    PostStatus,
    Profile,
)
from social_publisher.utils import utc_now

logger = logging.getLogger(__name__)

POSTS_TABLE = "posts"
PROFILES_TABLE = "profiles"
OAUTH_STATES_TABLE = "oauth_states"


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert enums and datetimes in an update payload to column values."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, (PostStatus, Platform)):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Unified **async** state store client.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance."""
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    async def _execute(self, query: Any, operation: str) -> List[Dict[str, Any]]:
        """Run a PostgREST query, converting API failures to DatabaseError."""
        try:
            result = await query.execute()
        except APIError as exc:
            raise DatabaseError(f"{operation} failed: {exc}") from exc
        return result.data or []

    # -----------------------------------------------------------------
    # POSTS
    # -----------------------------------------------------------------

    async def get_post(self, post_id: str) -> Optional[Post]:
        """Load a post by id, or ``None`` if it no longer exists."""
        validate_not_empty(post_id, "post_id")

        rows = await self._execute(
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("id", post_id)
            .limit(1),
            "get_post",
        )
        return Post.from_row(rows[0]) if rows else None

    async def insert_post(self, post: Post) -> Post:
        """Insert a new post row (authoring path and fixtures).

        Raises:
            ValidationError: On missing fields.
            DatabaseError: When the insert returns no data.
        """
        validate_not_empty(post.user_id, "post.user_id")
        validate_not_empty(post.profile_id, "post.profile_id")

        rows = await self._execute(
            self.client.table(POSTS_TABLE).insert(post.to_row()),
            "insert_post",
        )
        if not rows:
            raise DatabaseError("Insert succeeded but returned no data")
        return Post.from_row(rows[0])

    async def update_post(
        self,
        post_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[PostStatus] = None,
    ) -> Optional[Post]:
        """Update a post, optionally only if it is still in ``expected_status``.

        Args:
            post_id: Post to update.
            fields: Columns to set.  Enums and datetimes are serialized.
            expected_status: Compare-and-set guard.  When given, the update
                only applies if the row currently has this status.

        Returns:
            The updated ``Post``, or ``None`` if no row matched (missing
            post, or the status guard failed).
        """
        validate_not_empty(post_id, "post_id")
        if not fields:
            raise ValidationError("update fields cannot be empty")

        payload = _serialize({**fields, "updated_at": utc_now()})
        query = (
            self.client.table(POSTS_TABLE)
            .update(payload)
            .eq("id", post_id)
        )
        if expected_status is not None:
            query = query.eq("status", expected_status.value)

        rows = await self._execute(query, "update_post")
        return Post.from_row(rows[0]) if rows else None

    async def claim_post(self, post_id: str, claimed_at: datetime) -> Optional[Post]:
        """Atomically move a post from ``SCHEDULED`` to ``PUBLISHING``.

        Only succeeds if the post currently has status ``SCHEDULED``,
        preventing double-publishing when two deliveries of the same job
        race.

        Returns:
            The claimed ``Post``, or ``None`` if it was not claimable.
        """
        return await self.update_post(
            post_id,
            {"status": PostStatus.PUBLISHING, "claimed_at": claimed_at},
            expected_status=PostStatus.SCHEDULED,
        )

    async def get_posts_to_sync(self) -> List[Post]:
        """Posts that should have a queue job.

        Status ``SCHEDULED``, a non-null ``scheduled_at`` and no
        ``published_at``, ordered by due time.
        """
        rows = await self._execute(
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("status", PostStatus.SCHEDULED.value)
            .not_.is_("scheduled_at", "null")
            .is_("published_at", "null")
            .order("scheduled_at", desc=False),
            "get_posts_to_sync",
        )
        return [Post.from_row(row) for row in rows]

    async def get_published_without_timestamp(self) -> List[Post]:
        """``PUBLISHED`` posts with a null ``published_at`` (legacy stuck rows)."""
        rows = await self._execute(
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("status", PostStatus.PUBLISHED.value)
            .is_("published_at", "null"),
            "get_published_without_timestamp",
        )
        return [Post.from_row(row) for row in rows]

    async def get_stale_publishing(self, cutoff: datetime) -> List[Post]:
        """``PUBLISHING`` posts claimed at or before ``cutoff``.

        Rows without ``claimed_at`` fall back to ``updated_at``.
        """
        stamp = cutoff.isoformat()
        rows = await self._execute(
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("status", PostStatus.PUBLISHING.value)
            .or_(
                f"claimed_at.lte.{stamp},"
                f"and(claimed_at.is.null,updated_at.lte.{stamp})"
            ),
            "get_stale_publishing",
        )
        return [Post.from_row(row) for row in rows]

    async def get_failed_posts(self, user_id: Optional[str] = None) -> List[Post]:
        """``FAILED`` posts, optionally restricted to one user."""
        query = (
            self.client.table(POSTS_TABLE)
            .select("*")
            .eq("status", PostStatus.FAILED.value)
            .order("failed_at", desc=False)
        )
        if user_id is not None:
            query = query.eq("user_id", user_id)
        rows = await self._execute(query, "get_failed_posts")
        return [Post.from_row(row) for row in rows]

    # -----------------------------------------------------------------
    # PROFILES
    # -----------------------------------------------------------------

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        """Load a profile by id, or ``None`` if it no longer exists."""
        validate_not_empty(profile_id, "profile_id")

        rows = await self._execute(
            self.client.table(PROFILES_TABLE)
            .select("*")
            .eq("id", profile_id)
            .limit(1),
            "get_profile",
        )
        return Profile.from_row(rows[0]) if rows else None

    async def get_expiring_profiles(self, before: datetime) -> List[Profile]:
        """Active profiles whose token expires at or before ``before``."""
        rows = await self._execute(
            self.client.table(PROFILES_TABLE)
            .select("*")
            .eq("is_active", True)
            .not_.is_("token_expires_at", "null")
            .lte("token_expires_at", before.isoformat())
            .order("token_expires_at", desc=False),
            "get_expiring_profiles",
        )
        return [Profile.from_row(row) for row in rows]

    async def update_profile(
        self, profile_id: str, fields: Dict[str, Any]
    ) -> Optional[Profile]:
        """Update profile columns; returns the updated profile or ``None``."""
        validate_not_empty(profile_id, "profile_id")
        if not fields:
            raise ValidationError("update fields cannot be empty")

        rows = await self._execute(
            self.client.table(PROFILES_TABLE)
            .update(_serialize({**fields, "updated_at": utc_now()}))
            .eq("id", profile_id),
            "update_profile",
        )
        return Profile.from_row(rows[0]) if rows else None

    # -----------------------------------------------------------------
    # OAUTH HANDSHAKE STATE
    # -----------------------------------------------------------------

    async def insert_oauth_state(self, record: OAuthHandshakeState) -> None:
        """Persist a new handshake record (``state`` is unique)."""
        validate_not_empty(record.state, "state")
        validate_not_empty(record.code_verifier, "code_verifier")

        rows = await self._execute(
            self.client.table(OAUTH_STATES_TABLE).insert({
                "id": record.id,
                "user_id": record.user_id,
                "platform": record.platform.value,
                "state": record.state,
                "code_verifier": record.code_verifier,
                "expires_at": record.expires_at.isoformat(),
            }),
            "insert_oauth_state",
        )
        if not rows:
            raise DatabaseError("Insert succeeded but returned no data")

    async def delete_oauth_states(
        self,
        user_id: str,
        platform: Platform,
        expired_before: Optional[datetime] = None,
    ) -> int:
        """Delete handshake records for (user, platform).

        Args:
            expired_before: When given, only records whose ``expires_at`` is
                at or before this instant are removed.

        Returns:
            Number of deleted records.
        """
        validate_not_empty(user_id, "user_id")

        query = (
            self.client.table(OAUTH_STATES_TABLE)
            .delete()
            .eq("user_id", user_id)
            .eq("platform", platform.value)
        )
        if expired_before is not None:
            query = query.lte("expires_at", expired_before.isoformat())

        rows = await self._execute(query, "delete_oauth_states")
        return len(rows)

    async def take_oauth_state(
        self, user_id: str, platform: Platform, state: str
    ) -> Optional[OAuthHandshakeState]:
        """Delete and return the matching handshake record in one statement.

        Because the lookup *is* the delete, two concurrent callbacks with
        the same ``state`` cannot both receive the record.
        """
        validate_not_empty(state, "state")

        rows = await self._execute(
            self.client.table(OAUTH_STATES_TABLE)
            .delete()
            .eq("state", state)
            .eq("user_id", user_id)
            .eq("platform", platform.value),
            "take_oauth_state",
        )
        return OAuthHandshakeState.from_row(rows[0]) if rows else None


__all__ = [
    "SupabaseConfig",
    "SupabaseDB",
    "validate_not_empty",
    "POSTS_TABLE",
    "PROFILES_TABLE",
    "OAUTH_STATES_TABLE",
]
