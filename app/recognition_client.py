"""
Speech recognition client.

Wraps an opaque recognition backend with a typed status taxonomy, a
per-attempt timeout, exponential backoff for transient failures and
guaranteed release of the backend session after every attempt.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from app.audio_normalizer import AudioNormalizer
from app.exceptions import (
    ConversionError,
    NoSpeechDetected,
    RecognitionBackendError,
    describe_error,
)
from app.logging_config import get_logger, log_with_context
from app.models import NormalizedAudio, TranscriptionResult, TranscriptionStatus
from app.retry import call_with_retry, is_transient_error


class RecognitionOutcome(str, Enum):
    """What a backend reports for a single recognition request."""
    RECOGNIZED = "recognized"
    NO_SPEECH = "no_speech"
    ERROR = "error"


@dataclass
class BackendResponse:
    """
    Raw response of one backend recognition request.

    Attributes:
        outcome: Recognized, no speech, or a backend-reported error
        text: Recognized text (may be blank even when RECOGNIZED)
        confidence: Backend confidence in [0, 1], if reported
        error: Backend error description for the ERROR outcome
    """
    outcome: RecognitionOutcome
    text: str = ""
    confidence: Optional[float] = None
    error: Optional[str] = None


class RecognitionSession(Protocol):
    """A backend resource held for exactly one recognition attempt."""

    async def recognize(self, audio: NormalizedAudio, language: str) -> BackendResponse:
        ...

    async def close(self) -> None:
        ...


class RecognitionBackend(Protocol):
    """Factory of recognition sessions."""

    name: str

    async def open_session(self) -> RecognitionSession:
        ...


def _is_timeout(error: BaseException) -> bool:
    return isinstance(error, (asyncio.TimeoutError, TimeoutError))


class RecognitionClient:
    """
    Turns normalized audio into a TranscriptionResult.

    Backend failures never escape ``recognize``; they are mapped onto the
    terminal transcription statuses instead.

    Attributes:
        backend: Recognition backend sessions are opened on
        normalizer: Normalizer used by ``transcribe``
        language: Language tag passed to the backend
        max_attempts: Attempts per call for transient failures
        base_delay_ms: Backoff base delay
        max_delay_ms: Backoff cap
        attempt_timeout_seconds: Time limit of a single attempt
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        normalizer: Optional[AudioNormalizer] = None,
        language: str = "en-US",
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 5000,
        attempt_timeout_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.backend = backend
        self.normalizer = normalizer or AudioNormalizer()
        self.language = language
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self._sleep = sleep
        self.logger = get_logger(__name__)

    @property
    def backend_name(self) -> str:
        return getattr(self.backend, "name", type(self.backend).__name__)

    async def transcribe(self, raw_audio: bytes, declared_mime: Optional[str]) -> TranscriptionResult:
        """
        Normalize recorded audio, then recognize it.

        Normalization runs in a worker thread so ffmpeg and numpy work does
        not block the event loop.

        Args:
            raw_audio: Audio file bytes as recorded
            declared_mime: MIME type reported by the client

        Returns:
            TranscriptionResult; ``conversion_error`` when normalization failed
        """
        started = time.monotonic()
        try:
            audio = await asyncio.to_thread(self.normalizer.normalize, raw_audio, declared_mime)
        except ConversionError as e:
            log_with_context(
                self.logger,
                "warning",
                "Audio conversion failed",
                original_format=e.original_format,
                declared_mime=declared_mime,
                error_message=describe_error(e),
            )
            return TranscriptionResult(
                status=TranscriptionStatus.CONVERSION_ERROR,
                original_format=e.original_format,
                error=describe_error(e),
                duration_ms=self._elapsed_ms(started),
            )

        return await self.recognize(audio)

    async def recognize(self, audio: NormalizedAudio) -> TranscriptionResult:
        """
        Recognize normalized audio.

        Transient failures (connection problems, timeouts) are retried with
        exponential backoff; authentication or invalid-request failures and
        "no speech" answers are not.

        Args:
            audio: Canonical audio produced by the normalizer

        Returns:
            TranscriptionResult with one of the terminal statuses
        """
        started = time.monotonic()

        def on_retry(attempt: int, error: BaseException, delay_ms: int) -> None:
            log_with_context(
                self.logger,
                "warning",
                "Recognition attempt failed, retrying",
                backend=self.backend_name,
                attempt=attempt,
                delay_ms=delay_ms,
                error_message=describe_error(error),
            )

        try:
            response = await call_with_retry(
                lambda: self._attempt(audio),
                max_attempts=self.max_attempts,
                base_delay_ms=self.base_delay_ms,
                max_delay_ms=self.max_delay_ms,
                is_retryable=is_transient_error,
                sleep=self._sleep,
                operation_name="Speech recognition",
                on_retry=on_retry,
            )
        except NoSpeechDetected as e:
            return self._result(audio, started, TranscriptionStatus.NO_MATCH, error=describe_error(e))
        except Exception as e:
            status = TranscriptionStatus.TIMEOUT if _is_timeout(e) else TranscriptionStatus.RECOGNITION_ERROR
            log_with_context(
                self.logger,
                "error",
                "Speech recognition failed",
                backend=self.backend_name,
                status=status.value,
                error_message=describe_error(e),
            )
            return self._result(audio, started, status, error=describe_error(e))

        if response.outcome == RecognitionOutcome.NO_SPEECH:
            return self._result(audio, started, TranscriptionStatus.NO_MATCH)

        text = (response.text or "").strip()
        if not text:
            # A recognized-but-empty answer is indistinguishable from silence
            return self._result(audio, started, TranscriptionStatus.NO_MATCH)

        result = self._result(
            audio,
            started,
            TranscriptionStatus.RECOGNIZED,
            text=text,
            confidence=response.confidence,
        )
        log_with_context(
            self.logger,
            "info",
            "Speech recognized",
            backend=self.backend_name,
            text_length=len(text),
            confidence=response.confidence,
            elapsed_ms=result.duration_ms,
        )
        return result

    async def _attempt(self, audio: NormalizedAudio) -> BackendResponse:
        """One recognition attempt on a fresh session, released before returning."""
        session = await self.backend.open_session()
        try:
            response = await asyncio.wait_for(
                session.recognize(audio, self.language),
                timeout=self.attempt_timeout_seconds
            )
        finally:
            try:
                await session.close()
            except Exception as e:
                log_with_context(
                    self.logger,
                    "warning",
                    "Failed to close recognition session",
                    backend=self.backend_name,
                    error_message=describe_error(e),
                )

        if response.outcome == RecognitionOutcome.ERROR:
            raise RecognitionBackendError(response.error or "Recognition backend reported an error")
        return response

    def _result(
        self,
        audio: NormalizedAudio,
        started: float,
        status: TranscriptionStatus,
        text: str = "",
        confidence: Optional[float] = None,
        error: Optional[str] = None
    ) -> TranscriptionResult:
        return TranscriptionResult(
            status=status,
            text=text,
            confidence=confidence,
            original_format=audio.original_format,
            converted_format=audio.converted_format,
            error=error,
            duration_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def get_status(self) -> dict:
        """
        Get the client configuration.

        Returns:
            Dictionary with backend name, language and retry settings
        """
        return {
            "backend": self.backend_name,
            "language": self.language,
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "attempt_timeout_seconds": self.attempt_timeout_seconds,
        }
