"""Platform integrations: publish contract, registry, OAuth token endpoints."""

from social_publisher.platforms.base import PlatformPublisher, TokenRefresher
from social_publisher.platforms.oauth_tokens import OAuthTokenClient
from social_publisher.platforms.registry import PlatformRegistry

__all__ = [
    "PlatformPublisher",
    "TokenRefresher",
    "OAuthTokenClient",
    "PlatformRegistry",
]
