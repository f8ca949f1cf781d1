"""
OAuth handshake persistence and PKCE helpers.

The connect step of an OAuth flow stores a ``state`` and a PKCE
``code_verifier``; the callback step must present the same ``state``
exactly once, before it expires, to get the verifier back.

    store = HandshakeStore(db)
    verifier = generate_code_verifier()
    state = generate_state()
    await store.create_handshake(user_id, Platform.TWITTER, state, verifier)
    # redirect with code_challenge(verifier) ...
    verifier = await store.consume_handshake(user_id, Platform.TWITTER, state)
"""

import base64
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional

from social_publisher.database import SupabaseDB
from social_publisher.exceptions import HandshakeNotFoundError, ValidationError
from social_publisher.models import OAuthHandshakeState, Platform
from social_publisher.utils import Clock, generate_id

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TTL = timedelta(minutes=10)


# =============================================================================
# PKCE (RFC 7636)
# =============================================================================


def generate_state() -> str:
    """Unguessable value binding the callback to this authorization."""
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """43-128 characters from the unreserved set; 64 bytes encode to 86."""
    return secrets.token_urlsafe(64)


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    if not 43 <= len(verifier) <= 128:
        raise ValidationError("code_verifier must be 43-128 characters long")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


# =============================================================================
# HANDSHAKE STORE
# =============================================================================


class HandshakeStore:
    """Create and consume OAuth handshake records.

    Args:
        db: State store.
        ttl: Default handshake lifetime.
        clock: Time source.
    """

    def __init__(
        self,
        db: SupabaseDB,
        ttl: timedelta = DEFAULT_HANDSHAKE_TTL,
        clock: Optional[Clock] = None,
    ) -> None:
        self.db = db
        self.ttl = ttl
        self.clock = clock or Clock()

    async def create_handshake(
        self,
        user_id: str,
        platform: Platform,
        state: str,
        code_verifier: str,
        ttl: Optional[timedelta] = None,
    ) -> OAuthHandshakeState:
        """Store a new handshake, replacing any earlier one for (user, platform)."""
        removed = await self.db.delete_oauth_states(user_id, platform)
        if removed:
            logger.debug(
                "[OAUTH] Replaced %d earlier handshake(s) for user %s on %s",
                removed,
                user_id,
                platform.value,
            )

        record = OAuthHandshakeState(
            id=generate_id(),
            user_id=user_id,
            platform=platform,
            state=state,
            code_verifier=code_verifier,
            expires_at=self.clock.now() + (ttl or self.ttl),
        )
        await self.db.insert_oauth_state(record)
        logger.info("[OAUTH] Handshake created for user %s on %s", user_id, platform.value)
        return record

    async def consume_handshake(self, user_id: str, platform: Platform, state: str) -> str:
        """Return the code verifier for ``state``, deleting the record.

        Raises:
            HandshakeNotFoundError: Unknown, already consumed, or expired.
        """
        record = await self.db.take_oauth_state(user_id, platform, state)
        if record is None:
            logger.warning(
                "[OAUTH] Unknown or already used state for user %s on %s",
                user_id,
                platform.value,
            )
            raise HandshakeNotFoundError("OAuth state not found or already used")

        if record.is_expired(self.clock.now()):
            logger.warning(
                "[OAUTH] Expired state for user %s on %s", user_id, platform.value
            )
            raise HandshakeNotFoundError("OAuth state expired")

        return record.code_verifier

    async def purge_expired(self, user_id: str, platform: Platform) -> int:
        """Delete expired handshakes for (user, platform); returns the count."""
        removed = await self.db.delete_oauth_states(
            user_id, platform, expired_before=self.clock.now()
        )
        if removed:
            logger.info(
                "[OAUTH] Purged %d expired handshake(s) for user %s on %s",
                removed,
                user_id,
                platform.value,
            )
        return removed


__all__ = [
    "HandshakeStore",
    "DEFAULT_HANDSHAKE_TTL",
    "generate_state",
    "generate_code_verifier",
    "code_challenge",
]
