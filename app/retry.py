"""
Retry helpers shared by the recognition client, the diagram generator and
the job queue.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from app.exceptions import (
    NonRetryableBackendError,
    NoSpeechDetected,
    PipelineError,
    TransientBackendError,
    describe_error,
)
from app.logging_config import get_logger, log_with_context


T = TypeVar("T")

# Lower-cased substrings that mark an error message as a transient network failure
TRANSIENT_SIGNATURES = (
    "connection",
    "socket",
    "timeout",
    "timed out",
    "network",
    "econnreset",
    "enotfound",
    "temporarily unavailable",
)

logger = get_logger(__name__)


def backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """
    Exponential backoff delay before retry number ``attempt`` (1-based).

    Args:
        attempt: Retry number, starting at 1 for the first retry
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound for any delay

    Returns:
        ``min(base_delay_ms * 2 ** (attempt - 1), max_delay_ms)``
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(base_delay_ms * (2 ** (attempt - 1)), max_delay_ms)


def is_transient_error(error: BaseException) -> bool:
    """
    Decide whether an error is worth retrying.

    Typed pipeline errors decide for themselves; anything else is matched
    against the transient network signatures.
    """
    if isinstance(error, (NonRetryableBackendError, NoSpeechDetected)):
        return False
    if isinstance(error, (TransientBackendError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(error, PipelineError) and not error.retryable:
        return False
    message = describe_error(error).lower()
    return any(signature in message for signature in TRANSIENT_SIGNATURES)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay_ms: int,
    max_delay_ms: int,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: str = "operation",
    on_retry: Optional[Callable[[int, BaseException, int], None]] = None,
) -> T:
    """
    Run ``operation`` until it succeeds, fails permanently, or runs out of attempts.

    The last exception is re-raised unchanged when the operation cannot be
    retried any further.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total number of attempts (>= 1)
        base_delay_ms: Backoff base delay
        max_delay_ms: Backoff cap
        is_retryable: Classifier deciding whether an error is transient
        sleep: Awaitable sleep, injectable for tests
        operation_name: Label used in log records
        on_retry: Optional callback ``(attempt, error, delay_ms)`` before each wait
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not is_retryable(e):
                log_with_context(
                    logger,
                    "warning",
                    f"{operation_name} failed permanently",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=e,
                )
                raise

            delay_ms = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            log_with_context(
                logger,
                "info",
                f"Retrying {operation_name}",
                attempt=attempt,
                max_attempts=max_attempts,
                delay_ms=delay_ms,
                error_message=describe_error(e),
            )
            if on_retry is not None:
                on_retry(attempt, e, delay_ms)
            await sleep(delay_ms / 1000)
            attempt += 1
