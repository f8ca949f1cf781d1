"""
Tests for social_publisher.utils module.

Covers:
    - utc_now(): timezone-aware UTC datetime
    - generate_id(): UUID4 string generation
    - ensure_utc() / parse_timestamp(): datetime normalisation
    - to_millis(): epoch millisecond conversion
    - backoff_delay(): exponential delay schedule
    - with_retry(): exponential backoff decorator for sync and async functions
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from uuid import UUID

import pytest

from social_publisher.exceptions import RetryExhaustedError
from social_publisher.utils import (
    backoff_delay,
    ensure_utc,
    generate_id,
    parse_timestamp,
    to_millis,
    utc_now,
    with_retry,
)


# ===========================================================================
# utc_now() / generate_id()
# ===========================================================================


def test_utc_now_returns_timezone_aware_utc():
    """utc_now() must return a datetime whose tzinfo is UTC."""
    result = utc_now()
    assert result.tzinfo == timezone.utc


def test_generate_id_returns_valid_uuid4_string():
    """generate_id() must return a string that parses as a valid UUID4."""
    parsed = UUID(generate_id())
    assert parsed.version == 4


def test_generate_id_returns_unique_values():
    ids = {generate_id() for _ in range(100)}
    assert len(ids) == 100


# ===========================================================================
# ensure_utc() / parse_timestamp()
# ===========================================================================


def test_ensure_utc_naive_datetime_adds_utc():
    """A naive datetime gets UTC attached without shifting the wall time."""
    result = ensure_utc(datetime(2025, 6, 15, 12, 0, 0))
    assert result.tzinfo == timezone.utc
    assert result.hour == 12


def test_ensure_utc_non_utc_aware_converts_to_utc():
    plus_five = timezone(timedelta(hours=5))
    result = ensure_utc(datetime(2025, 6, 15, 17, 0, 0, tzinfo=plus_five))
    assert result.tzinfo == timezone.utc
    assert result.hour == 12


@pytest.mark.parametrize(
    "value",
    [
        "2025-06-15T12:00:00Z",
        "2025-06-15T12:00:00+00:00",
        "2025-06-15T14:00:00+02:00",
        datetime(2025, 6, 15, 12, 0, 0),
    ],
)
def test_parse_timestamp_normalises_to_utc(value):
    """PostgREST strings (with or without Z) and datetimes all come back as UTC."""
    assert parse_timestamp(value) == datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", [None, ""])
def test_parse_timestamp_empty_values(value):
    assert parse_timestamp(value) is None


# ===========================================================================
# epoch milliseconds
# ===========================================================================


def test_to_millis_known_instant():
    assert to_millis(datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)) == 1000


# ===========================================================================
# backoff_delay()
# ===========================================================================


@pytest.mark.parametrize("attempt,expected", [(1, 2.0), (2, 4.0), (3, 8.0)])
def test_backoff_delay_doubles(attempt, expected):
    assert backoff_delay(2.0, attempt) == expected


# ===========================================================================
# with_retry() -- synchronous functions
# ===========================================================================


@patch("social_publisher.utils.time_module.sleep")
def test_with_retry_sync_retries_and_succeeds_second_try(mock_sleep):
    """Sync function that fails once then succeeds is retried exactly once."""
    call_count = 0

    @with_retry(max_attempts=3, base_delay=2.0)
    def flaky():
        nonlocal call_count
        call_count += 1
        if call_count < 2:
            raise ValueError("transient")
        return "recovered"

    assert flaky() == "recovered"
    assert call_count == 2
    mock_sleep.assert_called_once_with(2.0)


@patch("social_publisher.utils.time_module.sleep")
def test_with_retry_sync_exhausts_retries(mock_sleep):
    @with_retry(max_attempts=3, base_delay=1.0, operation_name="test_op")
    def always_fail():
        raise RuntimeError("permanent")

    with pytest.raises(RetryExhaustedError) as exc_info:
        always_fail()

    err = exc_info.value
    assert err.operation == "test_op"
    assert err.attempts == 3
    assert isinstance(err.last_error, RuntimeError)
    # Slept after attempt 1 and attempt 2, not after the last
    assert mock_sleep.call_count == 2
    mock_sleep.assert_any_call(1.0)
    mock_sleep.assert_any_call(2.0)


@patch("social_publisher.utils.time_module.sleep")
def test_with_retry_respects_retryable_exceptions(mock_sleep):
    """Non-retryable exceptions propagate immediately without retrying."""

    @with_retry(max_attempts=3, retryable_exceptions=(ValueError,))
    def raise_type_error():
        raise TypeError("not retryable")

    with pytest.raises(TypeError, match="not retryable"):
        raise_type_error()
    mock_sleep.assert_not_called()


@patch("social_publisher.utils.time_module.sleep")
def test_with_retry_give_up_on_wins_over_retryable(mock_sleep):
    """An exception in give_up_on propagates even if it is also retryable."""

    class Fatal(ValueError):
        pass

    calls = 0

    @with_retry(max_attempts=3, retryable_exceptions=(ValueError,), give_up_on=(Fatal,))
    def revoked():
        nonlocal calls
        calls += 1
        raise Fatal("grant revoked")

    with pytest.raises(Fatal):
        revoked()
    assert calls == 1
    mock_sleep.assert_not_called()


# ===========================================================================
# with_retry() -- asynchronous functions
# ===========================================================================


@pytest.mark.asyncio
async def test_with_retry_async_succeeds_first_try():
    with patch("social_publisher.utils.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:

        @with_retry(max_attempts=3, base_delay=2.0)
        async def succeed():
            return "ok"

        assert await succeed() == "ok"
        mock_sleep.assert_not_called()


@pytest.mark.asyncio
async def test_with_retry_async_exhausts_retries():
    with patch("social_publisher.utils.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:

        @with_retry(max_attempts=3, base_delay=1.0, operation_name="async_op")
        async def always_fail():
            raise RuntimeError("permanent")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await always_fail()

        assert exc_info.value.operation == "async_op"
        assert mock_sleep.call_count == 2


def test_with_retry_preserves_async_function_name():
    @with_retry(max_attempts=2)
    async def my_async_function():
        pass

    assert my_async_function.__name__ == "my_async_function"
