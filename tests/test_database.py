"""Tests for the social_publisher.database module.

Covers:
- SupabaseConfig construction and environment-based creation.
- validate_not_empty helper.
- SupabaseDB query construction over a mocked Supabase client chain,
  including the compare-and-set guard on status updates.
"""

from datetime import datetime, timezone

import pytest
from postgrest.exceptions import APIError

from social_publisher.database import (
    OAUTH_STATES_TABLE,
    POSTS_TABLE,
    PROFILES_TABLE,
    SupabaseConfig,
    SupabaseDB,
    validate_not_empty,
)
from social_publisher.exceptions import DatabaseError, ValidationError
from social_publisher.models import OAuthHandshakeState, Platform, PostStatus

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)

POST_ROW = {
    "id": "post-1",
    "user_id": "user-1",
    "profile_id": "profile-1",
    "content": "hello",
    "platform": "TWITTER",
    "status": "publishing",
    "scheduled_at": "2025-06-15T12:00:00+00:00",
}

PROFILE_ROW = {
    "id": "profile-1",
    "user_id": "user-1",
    "platform": "TWITTER",
    "platform_user_id": "tw-1",
    "access_token": "tok",
    "token_expires_at": "2025-06-16T12:00:00+00:00",
    "is_active": True,
}


@pytest.fixture
def table(mock_supabase_client):
    return mock_supabase_client.table.return_value


@pytest.fixture
def supabase_db(mock_supabase_client):
    return SupabaseDB(mock_supabase_client)


# =============================================================================
# SupabaseConfig tests
# =============================================================================


class TestSupabaseConfig:
    """Tests for the SupabaseConfig dataclass."""

    def test_from_env_raises_when_vars_missing(self):
        """The conftest autouse fixture already clears both variables."""
        with pytest.raises(ValueError, match="SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"):
            SupabaseConfig.from_env()

    def test_from_env_raises_when_key_missing(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        with pytest.raises(ValueError):
            SupabaseConfig.from_env()

    def test_from_env_succeeds_when_vars_set(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://test-project.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")

        config = SupabaseConfig.from_env()

        assert config.url == "https://test-project.supabase.co"
        assert config.key == "service-key"


# =============================================================================
# Validation helpers
# =============================================================================


class TestValidateNotEmpty:
    def test_none_raises(self):
        with pytest.raises(ValidationError, match="post_id cannot be None"):
            validate_not_empty(None, "post_id")

    def test_blank_string_raises(self):
        with pytest.raises(ValidationError, match="cannot be empty string"):
            validate_not_empty("   ", "post_id")

    def test_value_passes(self):
        validate_not_empty("abc", "post_id")


# =============================================================================
# Posts
# =============================================================================


class TestPostQueries:
    """Query construction for the posts table."""

    @pytest.mark.asyncio
    async def test_get_post_returns_none_when_missing(self, supabase_db, mock_supabase_client):
        assert await supabase_db.get_post("post-1") is None
        mock_supabase_client.table.assert_called_with(POSTS_TABLE)

    @pytest.mark.asyncio
    async def test_get_post_maps_row(self, supabase_db, table):
        table.rows = [POST_ROW]
        post = await supabase_db.get_post("post-1")
        assert post.id == "post-1"
        assert post.status is PostStatus.PUBLISHING
        table.eq.assert_any_call("id", "post-1")

    @pytest.mark.asyncio
    async def test_get_post_rejects_empty_id(self, supabase_db):
        with pytest.raises(ValidationError):
            await supabase_db.get_post("")

    @pytest.mark.asyncio
    async def test_update_post_adds_status_guard(self, supabase_db, table):
        table.rows = [POST_ROW]

        await supabase_db.update_post(
            "post-1",
            {"status": PostStatus.FAILED, "failed_at": NOW},
            expected_status=PostStatus.PUBLISHING,
        )

        payload = table.update.call_args[0][0]
        assert payload["status"] == "failed"
        assert payload["failed_at"] == NOW.isoformat()
        assert "updated_at" in payload
        table.eq.assert_any_call("status", "publishing")

    @pytest.mark.asyncio
    async def test_update_post_returns_none_when_guard_fails(self, supabase_db, table):
        table.rows = []
        result = await supabase_db.update_post(
            "post-1", {"status": PostStatus.FAILED}, expected_status=PostStatus.PUBLISHING
        )
        assert result is None

    @pytest.mark.asyncio
    async def test_update_post_rejects_empty_fields(self, supabase_db):
        with pytest.raises(ValidationError, match="update fields cannot be empty"):
            await supabase_db.update_post("post-1", {})

    @pytest.mark.asyncio
    async def test_claim_post_requires_scheduled(self, supabase_db, table):
        table.rows = [POST_ROW]

        claimed = await supabase_db.claim_post("post-1", NOW)

        assert claimed is not None
        payload = table.update.call_args[0][0]
        assert payload["status"] == "publishing"
        assert payload["claimed_at"] == NOW.isoformat()
        table.eq.assert_any_call("status", "scheduled")

    @pytest.mark.asyncio
    async def test_get_posts_to_sync_filters(self, supabase_db, table):
        await supabase_db.get_posts_to_sync()
        table.eq.assert_any_call("status", "scheduled")
        table.is_.assert_any_call("scheduled_at", "null")
        table.is_.assert_any_call("published_at", "null")
        table.order.assert_called_with("scheduled_at", desc=False)

    @pytest.mark.asyncio
    async def test_get_stale_publishing_uses_cutoff(self, supabase_db, table):
        await supabase_db.get_stale_publishing(NOW)
        table.eq.assert_any_call("status", "publishing")
        expression = table.or_.call_args[0][0]
        assert f"claimed_at.lte.{NOW.isoformat()}" in expression

    @pytest.mark.asyncio
    async def test_get_failed_posts_for_user(self, supabase_db, table):
        await supabase_db.get_failed_posts("user-9")
        table.eq.assert_any_call("status", "failed")
        table.eq.assert_any_call("user_id", "user-9")

    @pytest.mark.asyncio
    async def test_api_error_becomes_database_error(self, supabase_db, table):
        async def failing_execute():
            raise APIError({"message": "relation does not exist", "code": "42P01"})

        table.execute = failing_execute
        with pytest.raises(DatabaseError, match="get_post failed"):
            await supabase_db.get_post("post-1")


# =============================================================================
# Profiles
# =============================================================================


class TestProfileQueries:
    @pytest.mark.asyncio
    async def test_get_expiring_profiles(self, supabase_db, table, mock_supabase_client):
        table.rows = [PROFILE_ROW]

        profiles = await supabase_db.get_expiring_profiles(NOW)

        assert [p.id for p in profiles] == ["profile-1"]
        mock_supabase_client.table.assert_called_with(PROFILES_TABLE)
        table.eq.assert_any_call("is_active", True)
        table.lte.assert_called_with("token_expires_at", NOW.isoformat())

    @pytest.mark.asyncio
    async def test_update_profile_serializes(self, supabase_db, table):
        table.rows = [PROFILE_ROW]
        await supabase_db.update_profile("profile-1", {"token_expires_at": NOW})
        payload = table.update.call_args[0][0]
        assert payload["token_expires_at"] == NOW.isoformat()


# =============================================================================
# OAuth handshake state
# =============================================================================


class TestOAuthStateQueries:
    @pytest.mark.asyncio
    async def test_insert_oauth_state(self, supabase_db, table, mock_supabase_client):
        table.rows = [{"id": "s1"}]
        record = OAuthHandshakeState(
            id="s1", user_id="u1", platform=Platform.TWITTER,
            state="st", code_verifier="v" * 43, expires_at=NOW,
        )

        await supabase_db.insert_oauth_state(record)

        mock_supabase_client.table.assert_called_with(OAUTH_STATES_TABLE)
        row = table.insert.call_args[0][0]
        assert row["platform"] == "TWITTER"
        assert row["expires_at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_take_oauth_state_deletes_matching_row(self, supabase_db, table):
        table.rows = [{
            "id": "s1", "user_id": "u1", "platform": "TWITTER", "state": "st",
            "code_verifier": "v" * 43, "expires_at": NOW.isoformat(),
        }]

        record = await supabase_db.take_oauth_state("u1", Platform.TWITTER, "st")

        assert record.code_verifier == "v" * 43
        table.delete.assert_called()
        table.eq.assert_any_call("state", "st")

    @pytest.mark.asyncio
    async def test_delete_expired_only(self, supabase_db, table):
        table.rows = [{"id": "a"}, {"id": "b"}]
        removed = await supabase_db.delete_oauth_states("u1", Platform.TWITTER, expired_before=NOW)
        assert removed == 2
        table.lte.assert_called_with("expires_at", NOW.isoformat())
