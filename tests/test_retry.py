"""
Unit tests for the retry helpers.

Tests cover the backoff formula, transient-error classification and the
retry loop used by the recognition client and diagram generator.
"""

import asyncio

import pytest

from app.exceptions import (
    ConversionError,
    NoAggregatableContent,
    NonRetryableBackendError,
    NoSpeechDetected,
    RecognitionBackendError,
    TransientBackendError,
)
from app.retry import backoff_delay_ms, call_with_retry, is_transient_error

from tests.conftest import RecordingSleep


class TestBackoffDelay:
    """Test the exponential backoff formula."""

    def test_doubles_per_attempt(self):
        """Test that each retry doubles the delay."""
        assert [backoff_delay_ms(n, 1000, 60000) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_is_capped(self):
        """Test that delays never exceed the cap."""
        assert backoff_delay_ms(3, 1000, 5000) == 4000
        assert backoff_delay_ms(4, 1000, 5000) == 5000
        assert backoff_delay_ms(10, 1000, 5000) == 5000

    def test_rejects_attempt_zero(self):
        with pytest.raises(ValueError):
            backoff_delay_ms(0, 1000, 5000)


class TestIsTransientError:
    """Test transient-error classification."""

    @pytest.mark.parametrize("error", [
        TransientBackendError("rate limited"),
        asyncio.TimeoutError(),
        ConnectionResetError("Connection reset by peer"),
        RecognitionBackendError("socket hang up"),
        RuntimeError("Network is unreachable"),
        RuntimeError("getaddrinfo ENOTFOUND speech.example.com"),
    ])
    def test_transient(self, error):
        assert is_transient_error(error) is True

    @pytest.mark.parametrize("error", [
        NonRetryableBackendError("401 Unauthorized"),
        NoSpeechDetected("nothing said"),
        NoAggregatableContent("empty"),
        RecognitionBackendError("invalid subscription key"),
        ValueError("bad request"),
    ])
    def test_not_transient(self, error):
        assert is_transient_error(error) is False

    def test_non_retryable_wins_over_transient_wording(self):
        """Test that a typed non-retryable error is never retried, whatever its message."""
        assert is_transient_error(NonRetryableBackendError("connection refused by auth proxy")) is False

    def test_conversion_error_with_plain_message_is_not_transient(self):
        assert is_transient_error(ConversionError("Failed to decode audio")) is False


class TestCallWithRetry:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_returns_first_success_without_sleeping(self):
        sleep = RecordingSleep()

        async def operation():
            return "ok"

        result = await call_with_retry(
            operation, max_attempts=3, base_delay_ms=100, max_delay_ms=1000, sleep=sleep
        )

        assert result == "ok"
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_failures_with_backoff(self):
        """Test that transient failures are retried with doubling delays."""
        sleep = RecordingSleep()
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientBackendError("connection reset")
            return "recovered"

        result = await call_with_retry(
            operation, max_attempts=3, base_delay_ms=100, max_delay_ms=1000, sleep=sleep
        )

        assert result == "recovered"
        assert len(attempts) == 3
        assert sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_attempts_run_out(self):
        sleep = RecordingSleep()
        errors = [TransientBackendError(f"timeout {n}") for n in range(3)]

        async def operation():
            raise errors.pop(0)

        with pytest.raises(TransientBackendError, match="timeout 2"):
            await call_with_retry(
                operation, max_attempts=3, base_delay_ms=100, max_delay_ms=150, sleep=sleep
            )
        assert sleep.delays == [0.1, 0.15]

    @pytest.mark.asyncio
    async def test_does_not_retry_non_retryable_errors(self):
        """Test that authentication-style failures fail on the first attempt."""
        sleep = RecordingSleep()
        attempts = []

        async def operation():
            attempts.append(1)
            raise NonRetryableBackendError("401 Unauthorized")

        with pytest.raises(NonRetryableBackendError):
            await call_with_retry(
                operation, max_attempts=5, base_delay_ms=100, max_delay_ms=1000, sleep=sleep
            )
        assert len(attempts) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_on_retry_callback_receives_attempt_and_delay(self):
        sleep = RecordingSleep()
        seen = []

        async def operation():
            if not seen:
                raise TransientBackendError("socket closed")
            return 42

        await call_with_retry(
            operation,
            max_attempts=2,
            base_delay_ms=250,
            max_delay_ms=1000,
            sleep=sleep,
            on_retry=lambda attempt, error, delay: seen.append((attempt, str(error), delay)),
        )

        assert seen == [(1, "socket closed", 250)]

    @pytest.mark.asyncio
    async def test_rejects_zero_attempts(self):
        async def operation():
            return None

        with pytest.raises(ValueError):
            await call_with_retry(operation, max_attempts=0, base_delay_ms=1, max_delay_ms=1)
