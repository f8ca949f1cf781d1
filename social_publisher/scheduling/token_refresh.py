"""
Token refresh scheduler: keeps profile credentials ahead of expiry.

Two entry points:

- ``refresh_expiring_tokens`` is the periodic batch.  It refreshes every
  active profile whose token expires inside the lookahead window and
  reports ``{total, refreshed, failed, results}``.  A failure ratio above
  the configured threshold is logged as an alert and flagged in the report.
- ``ensure_valid_token`` is the pre-publish guard used by the worker.  It
  refreshes just-expired or soon-expiring tokens and raises
  ``CredentialError`` when the profile cannot publish at all.

A refresh that the platform rejects permanently (``TokenRevokedError``)
deactivates the profile, so later publish attempts stop at the worker's
credential guard instead of hitting the platform.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from social_publisher.config import TokenRefreshConfig
from social_publisher.database import SupabaseDB
from social_publisher.exceptions import (
    CredentialError,
    RetryExhaustedError,
    TokenRefreshError,
    TokenRevokedError,
    TransientPublishError,
)
from social_publisher.models import Profile, TokenGrant
from social_publisher.platforms.base import TokenRefresher
from social_publisher.utils import Clock

logger = logging.getLogger(__name__)


# =============================================================================
# REPORTS
# =============================================================================


@dataclass
class RefreshResult:
    """Outcome of one profile's refresh."""

    profile_id: str
    platform: str
    username: Optional[str]
    success: bool
    message: str
    expires_at: Optional[datetime] = None
    deactivated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "profileId": self.profile_id,
            "platform": self.platform,
            "username": self.username,
            "success": self.success,
            "message": self.message,
        }
        if self.expires_at is not None:
            data["expiresAt"] = self.expires_at.isoformat()
        if self.deactivated:
            data["deactivated"] = True
        return data


@dataclass
class RefreshReport:
    """Aggregate of one ``refresh_expiring_tokens`` run.

    ``error`` is set when the expiring profiles could not be selected.
    """

    total: int = 0
    refreshed: int = 0
    failed: int = 0
    results: List[RefreshResult] = field(default_factory=list)
    high_failure_rate: bool = False
    error: Optional[str] = None

    @property
    def failure_ratio(self) -> float:
        return self.failed / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "total": self.total,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "results": [result.to_dict() for result in self.results],
            "highFailureRate": self.high_failure_rate,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


# =============================================================================
# SCHEDULER
# =============================================================================


class TokenRefreshScheduler:
    """Refreshes OAuth tokens before they expire.

    Args:
        db: State store.
        token_client: Platform token endpoint client
            (:class:`~social_publisher.platforms.OAuthTokenClient`).
        config: Lookahead, thresholds, and pacing.
        clock: Time source; also used to pace refreshes.
    """

    def __init__(
        self,
        db: SupabaseDB,
        token_client: TokenRefresher,
        config: Optional[TokenRefreshConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db = db
        self.token_client = token_client
        self.config = config or TokenRefreshConfig()
        self.clock = clock or Clock()

    # ================================================================
    # BATCH
    # ================================================================

    async def get_profiles_needing_refresh(self) -> List[Profile]:
        """Active profiles whose token expires within the lookahead window."""
        horizon = self.clock.now() + timedelta(days=self.config.lookahead_days)
        return await self.db.get_expiring_profiles(horizon)

    async def refresh_expiring_tokens(self) -> RefreshReport:
        """Refresh every profile returned by :meth:`get_profiles_needing_refresh`.

        One profile's failure never stops the batch.
        """
        logger.info("[TOKENS] Starting proactive token refresh")
        try:
            profiles = await self.get_profiles_needing_refresh()
        except Exception as exc:
            logger.exception("[TOKENS] Could not select profiles with expiring tokens")
            return RefreshReport(error=str(exc) or exc.__class__.__name__)
        logger.info("[TOKENS] Found %d profiles with expiring tokens", len(profiles))

        report = RefreshReport(total=len(profiles))
        for index, profile in enumerate(profiles):
            if index and self.config.delay_between_refreshes_seconds > 0:
                await self.clock.sleep(self.config.delay_between_refreshes_seconds)

            logger.info(
                "[TOKENS] Refreshing %s profile %s (expires in %sh)",
                profile.platform.value,
                profile.platform_username or profile.id,
                profile.hours_until_expiry(self.clock.now()),
            )
            try:
                result = await self._refresh_profile(profile)
            except Exception as exc:
                logger.exception("[TOKENS] Unexpected error refreshing profile %s", profile.id)
                result = RefreshResult(
                    profile_id=profile.id,
                    platform=profile.platform.value,
                    username=profile.platform_username,
                    success=False,
                    message=str(exc) or exc.__class__.__name__,
                )

            report.results.append(result)
            if result.success:
                report.refreshed += 1
            else:
                report.failed += 1

        logger.info(
            "[TOKENS] Token refresh complete: %d refreshed, %d failed (of %d)",
            report.refreshed,
            report.failed,
            report.total,
        )
        if report.total and report.failure_ratio > self.config.failure_ratio_alert:
            report.high_failure_rate = True
            logger.error(
                "[TOKENS] ALERT: high token refresh failure rate %.0f%% (%d/%d)",
                report.failure_ratio * 100,
                report.failed,
                report.total,
            )
        return report

    async def refresh_token(self, profile_id: str) -> Dict[str, Any]:
        """Refresh a single profile on demand.

        Returns:
            ``{"success", "message"}`` plus ``"expiresAt"`` on success.
        """
        profile = await self.db.get_profile(profile_id)
        if profile is None:
            return {"success": False, "message": f"Profile {profile_id} not found"}

        try:
            result = await self._refresh_profile(profile)
        except Exception as exc:
            logger.exception("[TOKENS] Unexpected error refreshing profile %s", profile_id)
            return {"success": False, "message": str(exc) or exc.__class__.__name__}

        response: Dict[str, Any] = {"success": result.success, "message": result.message}
        if result.expires_at is not None:
            response["expiresAt"] = result.expires_at.isoformat()
        return response

    # ================================================================
    # PRE-PUBLISH GUARD
    # ================================================================

    async def ensure_valid_token(self, profile: Profile) -> Profile:
        """Make sure ``profile`` can publish right now.

        - inactive profile: ``CredentialError``
        - expired with no way to refresh, for longer than
          ``credential_hard_fail_hours``: ``CredentialError``
        - any other expired token: refresh, or ``TransientPublishError`` if
          the token endpoint is failing
        - expiring within ``pre_publish_refresh_hours``: refresh, keeping the
          current token if that fails transiently

        A revoked grant deactivates the profile and raises
        ``CredentialError(revoked=True)``.

        Returns:
            The profile with the credentials to publish with.
        """
        if not profile.is_active:
            raise CredentialError(f"Profile {profile.id} is not active")

        now = self.clock.now()
        if profile.is_token_expired(now):
            expired_for = now - profile.token_expires_at  # type: ignore[operator]
            hard_fail = timedelta(hours=self.config.credential_hard_fail_hours)
            if not profile.can_refresh and expired_for > hard_fail:
                raise CredentialError(
                    f"Token for profile {profile.id} expired "
                    f"{int(expired_for.total_seconds() // 3600)}h ago; reconnect the profile"
                )

            logger.warning("[TOKENS] Token for profile %s is EXPIRED, attempting refresh", profile.id)
            try:
                return await self._refresh_or_deactivate(profile)
            except (TokenRefreshError, RetryExhaustedError) as exc:
                raise TransientPublishError(
                    f"Token for profile {profile.id} expired and refresh failed: {exc}"
                ) from exc

        window = timedelta(hours=self.config.pre_publish_refresh_hours)
        if profile.expires_within(now, window):
            logger.info(
                "[TOKENS] Token for profile %s expires in %sh, proactively refreshing",
                profile.id,
                profile.hours_until_expiry(now),
            )
            try:
                return await self._refresh_or_deactivate(profile)
            except (TokenRefreshError, RetryExhaustedError) as exc:
                logger.warning(
                    "[TOKENS] Refresh failed for profile %s, current token still valid: %s",
                    profile.id,
                    exc,
                )
        return profile

    # ================================================================
    # DEACTIVATION
    # ================================================================

    async def deactivate_profile(self, profile: Profile, reason: str) -> Optional[Profile]:
        """Mark a profile inactive, recording when and why in its metadata."""
        logger.warning("[TOKENS] Marking profile %s as inactive: %s", profile.id, reason)
        metadata = {
            **profile.metadata,
            "deactivated_at": self.clock.now().isoformat(),
            "deactivation_reason": reason,
        }
        return await self.db.update_profile(
            profile.id, {"is_active": False, "metadata": metadata}
        )

    # ================================================================
    # INTERNALS
    # ================================================================

    async def _refresh_profile(self, profile: Profile) -> RefreshResult:
        """Refresh one profile, folding token errors into the result."""
        result = RefreshResult(
            profile_id=profile.id,
            platform=profile.platform.value,
            username=profile.platform_username,
            success=False,
            message="",
        )
        try:
            refreshed = await self._refresh_or_deactivate(profile)
        except CredentialError as exc:
            result.message = str(exc)
            result.deactivated = True
            return result
        except (TokenRefreshError, RetryExhaustedError) as exc:
            logger.warning("[TOKENS] Failed to refresh token for profile %s: %s", profile.id, exc)
            result.message = str(exc)
            return result

        result.success = True
        result.expires_at = refreshed.token_expires_at
        hours = refreshed.hours_until_expiry(self.clock.now()) or 0
        result.message = f"Token refreshed successfully. Expires in {hours // 24} days."
        return result

    async def _refresh_or_deactivate(self, profile: Profile) -> Profile:
        """Refresh and persist; a revoked grant deactivates and raises."""
        try:
            grant = await self.token_client.refresh(profile)
        except TokenRevokedError as exc:
            await self.deactivate_profile(profile, f"Token refresh rejected: {exc}")
            raise CredentialError(str(exc), revoked=True) from exc
        return await self._store_grant(profile, grant)

    async def _store_grant(self, profile: Profile, grant: TokenGrant) -> Profile:
        expires_at = grant.expires_at(self.clock.now())
        fields: Dict[str, Any] = {
            "access_token": grant.access_token,
            "token_expires_at": expires_at,
        }
        if grant.refresh_token:
            fields["refresh_token"] = grant.refresh_token

        updated = await self.db.update_profile(profile.id, fields)
        logger.info(
            "[TOKENS] Refreshed %s token for profile %s (expires: %s)",
            profile.platform.value,
            profile.id,
            expires_at.isoformat(),
        )
        if updated is not None:
            return updated

        profile.access_token = grant.access_token
        profile.token_expires_at = expires_at
        if grant.refresh_token:
            profile.refresh_token = grant.refresh_token
        return profile


__all__ = ["TokenRefreshScheduler", "RefreshReport", "RefreshResult"]
