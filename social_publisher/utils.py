"""
Shared utility functions used throughout the publishing engine.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for TIMESTAMPTZ columns)
    - generate_id(): UUID4 string generator (for database primary keys)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_timestamp(value): Row value (ISO string / datetime / None) to UTC
    - to_millis(): epoch-millisecond conversion for queue jobs
    - Clock: injectable time source so schedulers can run on simulated time
    - @with_retry: Decorator with exponential backoff for transient failures
"""

from datetime import datetime, timezone
import uuid
import asyncio
import logging
import time as time_module
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar, Union

from social_publisher.exceptions import RetryExhaustedError

# ---------------------------------------------------------------------------
# Type variable for generic return types in the retry decorator
# ---------------------------------------------------------------------------
T = TypeVar("T")


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps stored in the database must be timezone-aware (TIMESTAMPTZ)
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Prefer ``Clock.now()`` inside schedulers and the worker so tests can
    control time; this function is the wall-clock default.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """
    Generate a unique ID for database records.

    Returns:
        A unique UUID4 string.
    """
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a timestamp coming back from the database.

    PostgREST returns ISO-8601 strings, sometimes with a trailing ``Z``.

    Args:
        value: ISO string, datetime, or ``None``.

    Returns:
        Timezone-aware UTC datetime, or ``None`` for empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def to_millis(dt: datetime) -> int:
    """Convert a datetime to integer epoch milliseconds."""
    return int(ensure_utc(dt).timestamp() * 1000)


# ===========================================================================
# CLOCK
# ===========================================================================


class Clock:
    """Wall-clock time source.

    Every component that reads the current time or waits between ticks
    takes a ``Clock``.  Tests pass a subclass whose ``now`` is fixed and
    whose ``sleep`` advances the fake time instead of blocking.
    """

    def now(self) -> datetime:
        return utc_now()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


# ===========================================================================
# RETRY DECORATOR WITH EXPONENTIAL BACKOFF
# Compliant with fail-fast philosophy: retries are for transient failures
# (rate limits, timeouts). Eventually raises if all attempts fail.
# ===========================================================================


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based): ``base * 2**(attempt-1)``."""
    return base_delay * (2 ** (attempt - 1))


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    give_up_on: Tuple[Type[Exception], ...] = (),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Decorator for retry logic with exponential backoff.

    - Retries are for transient failures (rate limits, timeouts).
    - Exceptions listed in ``give_up_on`` propagate immediately even when
      they also match ``retryable_exceptions`` (e.g. a revoked grant is an
      HTTP error too, but retrying it is pointless).
    - Eventually raises ``RetryExhaustedError`` if all attempts fail.

    Works with both synchronous and asynchronous functions.

    Args:
        max_attempts: Maximum number of attempts (default ``3``).
        base_delay: Initial delay in seconds before the first retry
            (default ``2.0``), doubled on each further retry.
        retryable_exceptions: Exception types that trigger a retry.
        give_up_on: Exception types that are never retried.
        operation_name: Name used in log messages; defaults to the wrapped
            function's ``__name__``.

    Raises:
        RetryExhaustedError: When all retry attempts have been exhausted.

    Usage::

        @with_retry(
            max_attempts=3,
            retryable_exceptions=(httpx.HTTPError, TokenRefreshError),
            give_up_on=(TokenRevokedError,),
        )
        async def refresh(self, profile): ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        def _should_retry(error: Exception, attempt: int) -> bool:
            if give_up_on and isinstance(error, give_up_on):
                return False
            if attempt < max_attempts:
                delay = backoff_delay(base_delay, attempt)
                logging.warning(
                    "[RETRY] %s attempt %d/%d failed: %s. Retrying in %.1fs...",
                    op_name,
                    attempt,
                    max_attempts,
                    error,
                    delay,
                )
            else:
                logging.error(
                    "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                    op_name,
                    max_attempts,
                    error,
                )
            return True

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if not _should_retry(e, attempt):
                        raise
                    last_error = e
                    if attempt < max_attempts:
                        await asyncio.sleep(backoff_delay(base_delay, attempt))
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            ) from last_error

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    if not _should_retry(e, attempt):
                        raise
                    last_error = e
                    if attempt < max_attempts:
                        time_module.sleep(backoff_delay(base_delay, attempt))
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            ) from last_error

        if asyncio.iscoroutinefunction(func):
            return async_wrapper  # type: ignore[return-value]
        return sync_wrapper  # type: ignore[return-value]

    return decorator
