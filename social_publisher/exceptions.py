"""
Custom exception classes for the social publishing engine.

This module defines all exception classes used throughout the codebase.
Exceptions follow the fail-fast philosophy: no fallbacks, surface errors
immediately with clear context for debugging.  The publish-related classes
double as the error taxonomy the worker uses to decide between queue
retry, immediate failure and silent acknowledgement.

Hierarchy:
    Exception
    +-- PublisherBaseError (base for all engine-specific errors)
    |   +-- PublishError
    |   |   +-- TransientPublishError
    |   |   +-- ContentRejectedError
    |   |   +-- CredentialError
    |   +-- TokenRefreshError
    |   |   +-- TokenRevokedError
    |   +-- QueueError
    |   |   +-- QueueTimeoutError
    |   +-- InvalidTransitionError
    |   +-- HandshakeNotFoundError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class PublisherBaseError(Exception):
    """Base exception for all engine-specific errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# PUBLISH EXCEPTIONS
# =============================================================================


class PublishError(PublisherBaseError):
    """Base class for failures reported by a platform publish call."""

    # Short tag written in front of ``error_message`` on the post.
    error_class: str = "publish"


class TransientPublishError(PublishError):
    """Network failure, timeout or 5xx from the platform.

    Retried by the job queue's backoff policy.
    """

    error_class = "transient"


class ContentRejectedError(PublishError):
    """The platform rejected the content (policy violation, bad media).

    Never retried.  The platform's message is kept verbatim.
    """

    error_class = "rejected"


class CredentialError(PublishError):
    """Expired or revoked token, or inactive profile.

    Never retried through the queue: only a reconnection can fix it.

    Attributes:
        revoked: ``True`` when the platform reported the grant as revoked,
            in which case the profile should be deactivated.
    """

    error_class = "credential"

    def __init__(self, message: str, revoked: bool = False):
        self.revoked = revoked
        super().__init__(message)


# =============================================================================
# TOKEN REFRESH EXCEPTIONS
# =============================================================================


class TokenRefreshError(PublisherBaseError):
    """Raised when an OAuth token refresh fails.

    Attributes:
        platform: Platform whose token endpoint was called.
        status_code: HTTP status returned by the endpoint, if any.
    """

    permanent: bool = False

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.platform = platform
        self.status_code = status_code
        super().__init__(message)


class TokenRevokedError(TokenRefreshError):
    """The refresh grant is permanently invalid (revoked, missing, expired).

    The owning profile must be deactivated; the user has to reconnect.
    """

    permanent = True


# =============================================================================
# QUEUE EXCEPTIONS
# =============================================================================


class QueueError(PublisherBaseError):
    """Raised when the job queue backend fails."""

    pass


class QueueTimeoutError(QueueError):
    """Raised when a queue backend operation exceeds its timeout."""

    pass


# =============================================================================
# LIFECYCLE EXCEPTIONS
# =============================================================================


class InvalidTransitionError(PublisherBaseError):
    """Raised when a post status transition is not allowed.

    Attributes:
        post_id: Post whose transition was rejected.
        current: Current status value.
        target: Requested status value.
    """

    def __init__(self, post_id: str, current: str, target: str, reason: str = ""):
        self.post_id = post_id
        self.current = current
        self.target = target
        message = f"Post {post_id} cannot move from '{current}' to '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class HandshakeNotFoundError(PublisherBaseError):
    """Raised when an OAuth state is unknown, already consumed, or expired."""

    pass


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "PublisherBaseError",
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Publish
    "PublishError",
    "TransientPublishError",
    "ContentRejectedError",
    "CredentialError",
    # Token refresh
    "TokenRefreshError",
    "TokenRevokedError",
    # Queue
    "QueueError",
    "QueueTimeoutError",
    # Lifecycle
    "InvalidTransitionError",
    "HandshakeNotFoundError",
]
