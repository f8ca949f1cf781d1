"""Lookup of the publisher responsible for each platform."""

import logging
from typing import Dict, Optional

from social_publisher.exceptions import ContentRejectedError
from social_publisher.models import Credentials, Platform, PlatformResult, Post
from social_publisher.platforms.base import PlatformPublisher

logger = logging.getLogger(__name__)


class PlatformRegistry:
    """Maps each ``Platform`` to its ``PlatformPublisher``.

    Usage::

        registry = PlatformRegistry()
        registry.register(Platform.FACEBOOK, FacebookPublisher(...))
        result = await registry.publish(post, profile.credentials(), timeout=60)
    """

    def __init__(self, publishers: Optional[Dict[Platform, PlatformPublisher]] = None) -> None:
        self._publishers: Dict[Platform, PlatformPublisher] = dict(publishers or {})

    def register(self, platform: Platform, publisher: PlatformPublisher) -> None:
        if platform in self._publishers:
            logger.warning("[PLATFORMS] Replacing publisher for %s", platform.value)
        self._publishers[platform] = publisher

    def get(self, platform: Platform) -> Optional[PlatformPublisher]:
        return self._publishers.get(platform)

    def supports(self, platform: Platform) -> bool:
        return platform in self._publishers

    async def publish(
        self, post: Post, credentials: Credentials, timeout: float
    ) -> PlatformResult:
        """Dispatch to the platform's publisher.

        Raises:
            ContentRejectedError: If no publisher is registered for the
                post's platform; retrying cannot fix that.
        """
        publisher = self._publishers.get(post.platform)
        if publisher is None:
            raise ContentRejectedError(f"Unsupported platform: {post.platform.value}")
        return await publisher.publish(post, credentials, timeout)


__all__ = ["PlatformRegistry"]
