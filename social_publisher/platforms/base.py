"""
Contracts implemented by platform integrations.

The engine never talks to a social network directly.  Publishing goes
through a ``PlatformPublisher`` registered per platform; token refresh goes
through a ``TokenRefresher`` (``OAuthTokenClient`` in production).

Publishers signal failure with the publish exception classes so the worker
can apply the right policy:

- ``TransientPublishError``: network / 5xx / rate limit, retried by the queue.
- ``CredentialError``: expired or revoked token, post fails without retry.
- ``ContentRejectedError``: platform refused the content, message kept verbatim.
"""

from typing import Protocol, runtime_checkable

from social_publisher.models import Credentials, PlatformResult, Post, Profile, TokenGrant


@runtime_checkable
class PlatformPublisher(Protocol):
    """Publishes one post to one platform."""

    async def publish(
        self, post: Post, credentials: Credentials, timeout: float
    ) -> PlatformResult:
        ...


@runtime_checkable
class TokenRefresher(Protocol):
    """Exchanges a profile's stored grant for a fresh access token.

    Raises ``TokenRevokedError`` when the grant is permanently invalid and
    ``TokenRefreshError`` for anything that may succeed later.
    """

    async def refresh(self, profile: Profile) -> TokenGrant:
        ...


__all__ = ["PlatformPublisher", "TokenRefresher"]
