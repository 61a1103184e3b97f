"""
Error taxonomy for the conversation diagram pipeline.

Every pipeline error carries a ``retryable`` flag that the job queue
consults before scheduling another attempt. Errors raised inside a single
component are normally converted into typed statuses (for example
``TranscriptionResult.status``); only queue-level failures surface as hard
terminal failures to API callers.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable = True


class ConversionError(PipelineError):
    """
    Raised when audio could not be decoded or re-encoded.

    Fatal for the message being normalized; the enclosing transcription job
    may still retry the whole stage.

    Attributes:
        original_format: Format label of the input, kept for diagnostics
    """

    def __init__(self, message: str, original_format: Optional[str] = None):
        super().__init__(message)
        self.original_format = original_format


class NoSpeechDetected(PipelineError):
    """The recognition backend ran successfully but found no speech."""

    retryable = False


class TransientBackendError(PipelineError):
    """Network, timeout or connection failure that is likely to succeed on retry."""


class NonRetryableBackendError(PipelineError):
    """Authentication or invalid-request failure; never retried."""

    retryable = False


class RecognitionBackendError(PipelineError):
    """Failure reported by a recognition backend, classified by its message."""


class NoAggregatableContent(PipelineError):
    """Aggregation produced no text, so no backend call was attempted."""

    retryable = False


class InvalidJobError(PipelineError, ValueError):
    """A job refers to a missing or wrong-kind subject; retrying cannot help."""

    retryable = False


class ProcessorNotRegistered(PipelineError):
    """A queue item has a job type with no registered processor."""

    retryable = False


class QueueExhausted(PipelineError):
    """
    A job reached its retry limit.

    Attributes:
        job_id: Identifier of the failed queue item
        attempts: Number of attempts that were made
        last_error: Description of the final underlying error
    """

    retryable = False

    def __init__(self, job_id: str, attempts: int, last_error: str):
        super().__init__(
            f"Job {job_id} failed after {attempts} attempts: {last_error}"
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


def describe_error(error: BaseException) -> str:
    """
    Return a non-empty, human-readable description of an exception.

    Exceptions such as ``asyncio.TimeoutError`` stringify to an empty
    string, so the class name is used instead.
    """
    message = str(error).strip()
    if message:
        return message
    return type(error).__name__
