"""
Local speech recognition backend built on OpenAI Whisper.

The model is loaded lazily on first use, in a worker thread, and shared by
all sessions. Inference runs on a single dedicated worker thread: attempts
abandoned by a timeout finish in the background before the next one starts.
Sessions hold no resources of their own, so closing them is free.
"""

import asyncio
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np
import whisper

from app.audio_normalizer import INT16_SCALE, parse_wav_header
from app.exceptions import NonRetryableBackendError, RecognitionBackendError
from app.logging_config import get_logger
from app.models import NormalizedAudio
from app.recognition_client import BackendResponse, RecognitionOutcome


def whisper_language(language: str) -> Optional[str]:
    """
    Reduce a BCP-47 tag (``en-US``) to the ISO 639-1 code Whisper expects.

    ``auto`` or an empty tag lets Whisper detect the language.
    """
    if not language or language.lower() == "auto":
        return None
    return language.split("-", 1)[0].lower()


def wav_to_float32(data: bytes) -> np.ndarray:
    """Decode canonical 16-bit PCM WAV bytes to float32 samples in [-1, 1]."""
    try:
        header = parse_wav_header(data)
    except ValueError as e:
        raise NonRetryableBackendError(f"Audio is not a WAV file: {e}") from e

    if header.bits_per_sample != 16 or header.channels != 1:
        raise NonRetryableBackendError(
            f"Expected mono 16-bit audio, got {header.channels} channel(s) "
            f"at {header.bits_per_sample} bits"
        )

    end = header.data_offset + header.frame_count * header.block_align
    samples = np.frombuffer(data[header.data_offset:end], dtype="<i2")
    return samples.astype(np.float32) / INT16_SCALE


def segment_confidence(segments: list) -> Optional[float]:
    """Mean per-segment probability, derived from Whisper's average log-probabilities."""
    logprobs = [s["avg_logprob"] for s in segments if "avg_logprob" in s]
    if not logprobs:
        return None
    return float(sum(math.exp(lp) for lp in logprobs) / len(logprobs))


class WhisperRecognitionBackend:
    """
    Recognition backend running a Whisper model in-process.

    Attributes:
        model_size: Whisper model name (tiny, base, small, medium, large)
        device: Torch device, or None to let Whisper choose
        executor: Single-thread executor running inference
    """

    name = "whisper"

    def __init__(self, model_size: str = "base", device: Optional[str] = None):
        self.model_size = model_size
        self.device = device
        self._model = None
        self._load_lock = asyncio.Lock()
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="whisper")
        # The decoder installs hooks on the shared model; one transcribe at a time
        self._inference_lock = threading.Lock()
        self.logger = get_logger(__name__)

    def is_ready(self) -> bool:
        return self._model is not None

    def load_model(self) -> None:
        """
        Load the Whisper model into memory.

        Whisper downloads the model on first use and caches it in
        ``~/.cache/whisper``.

        Raises:
            RuntimeError: If model loading fails
        """
        try:
            self.logger.info(f"Loading Whisper model: {self.model_size}")
            self._model = whisper.load_model(name=self.model_size, device=self.device)
            self.logger.info(
                f"Whisper model loaded successfully: {self.model_size} "
                f"(device: {self._model.device})"
            )
        except Exception as e:
            self._model = None
            self.logger.error(f"Failed to load Whisper model: {str(e)}")
            raise RuntimeError(f"Failed to load Whisper model: {str(e)}") from e

    async def ensure_loaded(self) -> None:
        async with self._load_lock:
            if self._model is None:
                await asyncio.to_thread(self.load_model)

    async def open_session(self) -> "WhisperSession":
        await self.ensure_loaded()
        return WhisperSession(self)

    def transcribe_samples(self, samples: np.ndarray, language: str) -> BackendResponse:
        """
        Run Whisper over float32 samples (blocking).

        Args:
            samples: Mono float32 samples at 16 kHz
            language: BCP-47 language tag

        Returns:
            BackendResponse; NO_SPEECH when Whisper produced no text
        """
        try:
            with self._inference_lock:
                result = self._model.transcribe(
                    samples,
                    language=whisper_language(language),
                    task="transcribe",
                    fp16=False,
                    verbose=False,
                )
        except Exception as e:
            self.logger.error(f"Transcription failed: {str(e)}")
            raise RecognitionBackendError(f"Whisper transcription failed: {str(e)}") from e

        text = (result.get("text") or "").strip()
        if not text:
            return BackendResponse(outcome=RecognitionOutcome.NO_SPEECH)

        return BackendResponse(
            outcome=RecognitionOutcome.RECOGNIZED,
            text=text,
            confidence=segment_confidence(result.get("segments") or []),
        )

    async def transcribe(self, samples: np.ndarray, language: str) -> BackendResponse:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.transcribe_samples, samples, language)

    def shutdown(self) -> None:
        """Stop the inference thread; queued attempts are dropped."""
        self.logger.info("Shutting down Whisper inference executor")
        self.executor.shutdown(wait=False, cancel_futures=True)

    def get_model_info(self) -> dict:
        return {
            "model_size": self.model_size,
            "device": str(self._model.device) if self._model else None,
            "is_ready": self.is_ready(),
        }


class WhisperSession:
    """A recognition attempt against the shared Whisper model."""

    def __init__(self, backend: WhisperRecognitionBackend):
        self.backend = backend
        self.closed = False

    async def recognize(self, audio: NormalizedAudio, language: str) -> BackendResponse:
        samples = wav_to_float32(audio.data)
        if samples.size == 0:
            return BackendResponse(outcome=RecognitionOutcome.NO_SPEECH)
        return await self.backend.transcribe(samples, language)

    async def close(self) -> None:
        self.closed = True
