"""
Async OAuth token endpoint client.

Refreshes a profile's access token against its platform's token endpoint
using ``httpx``:

- Facebook / Instagram: long-lived token exchange (``fb_exchange_token``)
  on the Graph API.  Instagram business accounts share Facebook's app.
- TikTok, Twitter (X), YouTube: standard ``refresh_token`` grant.

Failures are classified for the refresh scheduler: a grant the platform
will never accept again raises ``TokenRevokedError`` and is not retried;
everything else raises ``TokenRefreshError`` and is retried with
exponential backoff.
"""

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from social_publisher.config import OAuthClientConfig
from social_publisher.exceptions import TokenRefreshError, TokenRevokedError
from social_publisher.models import Platform, Profile, TokenGrant
from social_publisher.utils import with_retry

logger = logging.getLogger(__name__)

# OAuth error codes meaning "this grant is dead"
REVOKED_GRANT_ERRORS = frozenset({"invalid_grant", "invalid_token"})

# Graph API error codes for expired / invalidated sessions
FACEBOOK_REVOKED_CODES = frozenset({102, 190})


def _describe_error(data: Dict[str, Any], response: httpx.Response) -> Tuple[str, Any]:
    """Human-readable message and machine code from an error body."""
    error = data.get("error")
    if isinstance(error, dict):
        # Graph API: {"error": {"message": ..., "code": 190}}
        return str(error.get("message") or error), error.get("code")
    if error:
        description = data.get("error_description") or data.get("message") or error
        return str(description), error
    return response.text or response.reason_phrase, None


def _is_revocation(platform: Platform, code: Any) -> bool:
    if platform in (Platform.FACEBOOK, Platform.INSTAGRAM):
        return code in FACEBOOK_REVOKED_CODES
    return code in REVOKED_GRANT_ERRORS


class OAuthTokenClient:
    """Refreshes access tokens for every supported platform.

    Args:
        clients: OAuth app credentials per platform
            (see :func:`~social_publisher.config.load_oauth_clients`).
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests pass a
            ``httpx.MockTransport``).

    Usage::

        tokens = OAuthTokenClient(settings.oauth_clients)
        grant = await tokens.refresh(profile)
    """

    FACEBOOK_GRAPH_URL: str = "https://graph.facebook.com/v19.0"
    TIKTOK_TOKEN_URL: str = "https://open.tiktokapis.com/v2/oauth/token/"
    TWITTER_TOKEN_URL: str = "https://api.twitter.com/2/oauth2/token"
    YOUTUBE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    # Graph API omits expires_in on some exchanges; long-lived tokens last 60 days
    FACEBOOK_DEFAULT_EXPIRES_IN: int = 60 * 24 * 60 * 60
    DEFAULT_EXPIRES_IN: int = 60 * 60

    def __init__(
        self,
        clients: Dict[Platform, OAuthClientConfig],
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.clients = clients
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def refresh(self, profile: Profile) -> TokenGrant:
        """Obtain a fresh access token for ``profile``.

        Raises:
            TokenRevokedError: The stored grant is permanently invalid.
            TokenRefreshError: The endpoint failed in a way that may
                succeed later, or the platform app is not configured.
            RetryExhaustedError: Transient failures persisted across retries.
        """
        platform = profile.platform
        client = self._client_for(platform)

        if platform in (Platform.FACEBOOK, Platform.INSTAGRAM):
            if not profile.access_token:
                raise TokenRevokedError(
                    f"Profile {profile.id} has no access token", platform.value
                )
            data = await self._request(
                platform,
                "GET",
                f"{self.FACEBOOK_GRAPH_URL}/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": client.client_id,
                    "client_secret": client.client_secret,
                    "fb_exchange_token": profile.access_token,
                },
            )
            return self._grant(platform, data, self.FACEBOOK_DEFAULT_EXPIRES_IN)

        if not profile.refresh_token:
            raise TokenRevokedError(
                f"Profile {profile.id} has no refresh token; reconnect required",
                platform.value,
            )

        if platform is Platform.TIKTOK:
            data = await self._request(
                platform,
                "POST",
                self.TIKTOK_TOKEN_URL,
                headers={"Cache-Control": "no-cache"},
                data={
                    "client_key": client.client_id,
                    "client_secret": client.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": profile.refresh_token,
                },
            )
        elif platform is Platform.TWITTER:
            data = await self._request(
                platform,
                "POST",
                self.TWITTER_TOKEN_URL,
                auth=(client.client_id, client.client_secret),
                data={
                    "refresh_token": profile.refresh_token,
                    "grant_type": "refresh_token",
                    "client_id": client.client_id,
                },
            )
        else:
            data = await self._request(
                platform,
                "POST",
                self.YOUTUBE_TOKEN_URL,
                data={
                    "client_id": client.client_id,
                    "client_secret": client.client_secret,
                    "refresh_token": profile.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        return self._grant(platform, data, self.DEFAULT_EXPIRES_IN)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _client_for(self, platform: Platform) -> OAuthClientConfig:
        client = self.clients.get(platform)
        if client is None or not client.is_configured:
            raise TokenRefreshError(
                f"OAuth client for {platform.value} is not configured", platform.value
            )
        return client

    @with_retry(
        max_attempts=3,
        retryable_exceptions=(httpx.TransportError, TokenRefreshError),
        give_up_on=(TokenRevokedError,),
        operation_name="token_refresh",
    )
    async def _request(
        self, platform: Platform, method: str, url: str, **kwargs: Any
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.request(method, url, **kwargs)
        return self._parse(platform, response)

    @staticmethod
    def _parse(platform: Platform, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success and not data.get("error"):
            return data

        message, code = _describe_error(data, response)
        if _is_revocation(platform, code):
            raise TokenRevokedError(
                f"{platform.value} rejected the stored grant: {message}",
                platform.value,
                response.status_code,
            )
        raise TokenRefreshError(
            f"{platform.value} token refresh failed ({response.status_code}): {message}",
            platform.value,
            response.status_code,
        )

    @staticmethod
    def _grant(platform: Platform, data: Dict[str, Any], default_expires_in: int) -> TokenGrant:
        access_token = data.get("access_token")
        if not access_token:
            raise TokenRefreshError(
                f"{platform.value} token response has no access_token", platform.value
            )
        grant = TokenGrant(
            access_token=access_token,
            expires_in=int(data.get("expires_in") or default_expires_in),
            refresh_token=data.get("refresh_token"),
        )
        logger.debug(
            "[TOKENS] %s token refreshed (expires_in=%ds, rotated=%s)",
            platform.value,
            grant.expires_in,
            grant.refresh_token is not None,
        )
        return grant


__all__ = ["OAuthTokenClient", "REVOKED_GRANT_ERRORS", "FACEBOOK_REVOKED_CODES"]
