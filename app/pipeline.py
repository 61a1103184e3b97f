"""
Pipeline orchestration for the conversation diagram service.

PipelineService wires the storage, recognition client, content aggregator,
diagram cache, diagram generator and job queue together, owns message
intake and registers the two queue processors (audio transcription and
diagram generation).
"""

import asyncio
from typing import Any, Dict, List, Optional

from app.audio_normalizer import AudioNormalizer, parse_wav_header
from app.azure_speech_backend import AzureSpeechRecognitionBackend
from app.config import RecognitionBackendKind, Settings, StorageBackendKind
from app.content_aggregator import ContentAggregator
from app.diagram_cache import DiagramCache
from app.diagram_generator import DiagramGenerator
from app.exceptions import (
    ConversionError,
    InvalidJobError,
    NoAggregatableContent,
    NonRetryableBackendError,
    RecognitionBackendError,
    TransientBackendError,
    describe_error,
)
from app.job_queue import JobQueue, QueueOptions
from app.logging_config import get_logger, log_with_context
from app.models import (
    AudioMessage,
    CachedResult,
    DiagramCacheEntry,
    ImageMessage,
    JobQueueItem,
    JobType,
    Message,
    TextMessage,
    TranscriptionResult,
    TranscriptionStatus,
)
from app.recognition_client import RecognitionBackend, RecognitionClient
from app.retry import is_transient_error
from app.sqlite_storage import SqliteStorage
from app.storage import InMemoryStorage, Storage
from app.whisper_backend import WhisperRecognitionBackend


def build_storage(settings: Settings) -> Storage:
    if settings.storage_backend == StorageBackendKind.MEMORY:
        return InMemoryStorage()
    return SqliteStorage(settings.sqlite_path)


def build_recognition_backend(settings: Settings) -> RecognitionBackend:
    """
    Build the configured recognition backend.

    Raises:
        ValueError: If the Azure backend is selected without credentials
    """
    if settings.recognition_backend == RecognitionBackendKind.AZURE:
        return AzureSpeechRecognitionBackend(
            key=settings.azure_speech_key,
            region=settings.azure_speech_region,
            timeout=settings.recognition_timeout_seconds,
        )
    return WhisperRecognitionBackend(
        model_size=settings.whisper_model_size.value,
        device=settings.whisper_device,
    )


class PipelineService:
    """
    Orchestrates message intake, transcription and diagram generation.

    Attributes:
        storage: Storage collaborator
        recognition_client: RecognitionClient used for audio messages
        aggregator: ContentAggregator building the diagram input text
        cache: DiagramCache in front of the generator
        generator: DiagramGenerator producing Mermaid code
        queue: JobQueue running the transcription and diagram jobs
    """

    def __init__(
        self,
        storage: Storage,
        recognition_client: RecognitionClient,
        aggregator: ContentAggregator,
        cache: DiagramCache,
        generator: DiagramGenerator,
        queue: JobQueue
    ):
        self.storage = storage
        self.recognition_client = recognition_client
        self.aggregator = aggregator
        self.cache = cache
        self.generator = generator
        self.queue = queue
        self.logger = get_logger(__name__)

        self.queue.register_processor(JobType.AUDIO_TRANSCRIPTION, self._process_transcription)
        self.queue.register_processor(JobType.DIAGRAM_GENERATION, self._process_diagram)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineService":
        """Build every component from the application settings."""
        storage = build_storage(settings)
        normalizer = AudioNormalizer(
            target_sample_rate=settings.audio_target_sample_rate,
            noise_floor=settings.audio_noise_floor,
            min_duration_seconds=settings.audio_min_duration_seconds,
        )
        recognition_client = RecognitionClient(
            backend=build_recognition_backend(settings),
            normalizer=normalizer,
            language=settings.recognition_language,
            max_attempts=settings.recognition_max_attempts,
            base_delay_ms=settings.recognition_base_delay_ms,
            max_delay_ms=settings.recognition_max_delay_ms,
            attempt_timeout_seconds=settings.recognition_timeout_seconds,
        )
        queue = JobQueue(
            storage,
            QueueOptions(
                max_concurrent=settings.queue_max_concurrent,
                max_retries=settings.queue_max_retries,
                retry_base_delay_ms=settings.queue_retry_base_delay_ms,
                retry_max_delay_ms=settings.queue_retry_max_delay_ms,
                processing_timeout_seconds=settings.queue_processing_timeout_seconds,
            ),
        )
        return cls(
            storage=storage,
            recognition_client=recognition_client,
            aggregator=ContentAggregator(max_chars=settings.aggregation_max_chars or None),
            cache=DiagramCache(storage),
            generator=DiagramGenerator.from_settings(settings),
            queue=queue,
        )

    async def initialize(self) -> None:
        """
        Prepare storage and start the job queue.

        Jobs interrupted by a previous shutdown are put back to pending.
        """
        self.logger.info("Initializing PipelineService")
        await self.storage.initialize()
        await self.queue.start()
        self.logger.info("PipelineService initialized successfully")

    async def shutdown(self) -> None:
        self.logger.info("Shutting down PipelineService")
        await self.queue.close()
        backend_shutdown = getattr(self.recognition_client.backend, "shutdown", None)
        if backend_shutdown is not None:
            backend_shutdown()
        await self.storage.close()

    # Message intake

    async def add_text_message(self, content: str) -> TextMessage:
        """
        Store a text message.

        Raises:
            ValueError: If the content is blank
        """
        if not content or not content.strip():
            raise ValueError("Text message content must not be empty")
        message = await self.storage.add_message(TextMessage(content=content))
        log_with_context(self.logger, "info", "Text message added", message_id=message.id)
        return message

    async def add_audio_message(
        self,
        audio_data: bytes,
        mime_type: str,
        duration_ms: Optional[int] = None
    ) -> AudioMessage:
        """
        Store an audio message with a pending transcription.

        When no duration is supplied it is read from the WAV header, if the
        audio is WAV.

        Raises:
            ValueError: If the audio is empty
        """
        if not audio_data:
            raise ValueError("Audio data must not be empty")

        if duration_ms is None:
            try:
                duration_ms = parse_wav_header(audio_data).duration_ms
            except ValueError:
                duration_ms = 0

        message = await self.storage.add_message(AudioMessage(
            audio_data=audio_data,
            mime_type=mime_type or "application/octet-stream",
            duration_ms=duration_ms,
        ))
        log_with_context(
            self.logger,
            "info",
            "Audio message added",
            message_id=message.id,
            mime_type=message.mime_type,
            audio_size=len(audio_data),
            duration_ms=duration_ms
        )
        return message

    async def add_image_message(
        self,
        image_data: bytes,
        file_name: str,
        mime_type: str,
        description: Optional[str] = None
    ) -> ImageMessage:
        if not image_data:
            raise ValueError("Image data must not be empty")

        message = await self.storage.add_message(ImageMessage(
            image_data=image_data,
            file_name=file_name,
            file_size=len(image_data),
            mime_type=mime_type or "application/octet-stream",
            description=description,
        ))
        log_with_context(self.logger, "info", "Image message added", message_id=message.id)
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        return await self.storage.get_message(message_id)

    # Queueing

    async def queue_audio_transcription(self, message_id: str) -> JobQueueItem:
        """
        Enqueue transcription of an audio message.

        Raises:
            KeyError: If the message does not exist
            ValueError: If the message is not an audio message
        """
        message = await self.storage.get_message(message_id)
        if message is None:
            raise KeyError(f"Message with id {message_id} not found")
        if not isinstance(message, AudioMessage):
            raise ValueError(f"Message {message_id} is not an audio message")

        return await self.queue.enqueue(
            JobType.AUDIO_TRANSCRIPTION,
            subject_id=message_id,
            payload={"message_id": message_id},
        )

    async def queue_diagram_generation(
        self,
        message_ids: List[str],
        options: Optional[Dict[str, Any]] = None
    ) -> JobQueueItem:
        """
        Enqueue diagram generation for a set of messages.

        The subject id is the comma-joined id list, so two requests for the
        same list in the same order never run concurrently.

        Raises:
            ValueError: If no message ids are given
        """
        if not message_ids:
            raise ValueError("At least one message id is required")

        return await self.queue.enqueue(
            JobType.DIAGRAM_GENERATION,
            subject_id=",".join(message_ids),
            payload={"message_ids": list(message_ids), "options": dict(options or {})},
        )

    # Transcription

    async def _process_transcription(self, item: JobQueueItem) -> Dict[str, Any]:
        message_id = item.payload.get("message_id") or item.subject_id
        result = await self.transcribe_message(message_id, job_id=item.id)
        return {
            "message_id": message_id,
            "status": result.status.value,
            "confidence": result.confidence,
        }

    async def transcribe_message(self, message_id: str, job_id: Optional[str] = None) -> TranscriptionResult:
        """
        Transcribe one audio message and persist the outcome.

        Only ``recognized`` and ``no_match`` are final outcomes. A conversion
        error is recorded and raised; a timeout or recognition error restores
        the status the message had before the attempt and is raised, so the
        queue can decide whether to retry. A failed attempt is never stored
        as a success.

        Args:
            message_id: Id of an audio message
            job_id: Queue item id, for log correlation

        Returns:
            The TranscriptionResult that was persisted

        Raises:
            InvalidJobError: If the message is missing or not audio
            ConversionError: If the audio could not be normalized
            TransientBackendError: On timeout or a transient backend failure
            NonRetryableBackendError: On a permanent backend failure
        """
        message = await self.storage.get_message(message_id)
        if message is None:
            raise InvalidJobError(f"Message with id {message_id} not found")
        if not isinstance(message, AudioMessage):
            raise InvalidJobError(f"Message {message_id} is not an audio message")

        previous_status = message.transcription_status
        await self.storage.update_message(message_id, transcription_status=TranscriptionStatus.PROCESSING)

        try:
            result = await self.recognition_client.transcribe(message.audio_data, message.mime_type)
        except (Exception, asyncio.CancelledError):
            await self.storage.update_message(message_id, transcription_status=previous_status)
            raise

        log_with_context(
            self.logger,
            "info",
            "Transcription attempt finished",
            job_id=job_id,
            message_id=message_id,
            status=result.status.value,
            elapsed_ms=result.duration_ms
        )

        if result.status in (TranscriptionStatus.RECOGNIZED, TranscriptionStatus.NO_MATCH):
            await self.storage.update_message(
                message_id,
                transcription=result.text or None,
                transcription_status=result.status,
                transcription_confidence=result.confidence,
                transcription_error=result.error,
                processed=True,
            )
            return result

        if result.status == TranscriptionStatus.CONVERSION_ERROR:
            await self.storage.update_message(
                message_id,
                transcription_status=TranscriptionStatus.CONVERSION_ERROR,
                transcription_error=result.error,
            )
            raise ConversionError(result.error or "Audio conversion failed", original_format=result.original_format)

        await self.storage.update_message(
            message_id,
            transcription_status=previous_status,
            transcription_error=result.error,
        )
        if result.status == TranscriptionStatus.TIMEOUT:
            raise TransientBackendError(f"Recognition timed out: {result.error}")
        if is_transient_error(RecognitionBackendError(result.error or "")):
            raise TransientBackendError(f"Recognition failed: {result.error}")
        raise NonRetryableBackendError(f"Recognition failed: {result.error}")

    # Diagrams

    async def _process_diagram(self, item: JobQueueItem) -> Dict[str, Any]:
        message_ids = item.payload.get("message_ids") or item.subject_id.split(",")
        cached = await self.generate_diagram(message_ids, item.payload.get("options"), job_id=item.id)
        return {
            "diagram_id": cached.entry.id,
            "input_hash": cached.entry.input_hash,
            "cache_hit": cached.cache_hit,
        }

    async def generate_diagram(
        self,
        message_ids: List[str],
        options: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None
    ) -> CachedResult:
        """
        Aggregate messages and return the (possibly cached) diagram.

        Audio messages that were never transcribed are transcribed first;
        a failure there only leaves a placeholder in the aggregated text.

        Args:
            message_ids: Ids of the messages to visualize
            options: Generation options
            job_id: Queue item id, for log correlation

        Returns:
            CachedResult for the diagram

        Raises:
            InvalidJobError: If none of the messages exist
            NoAggregatableContent: If the messages produce no text
        """
        options = dict(options or {})
        messages = await self.storage.get_messages(message_ids)
        found_ids = [m.id for m in messages]

        found = set(found_ids)
        missing = [message_id for message_id in message_ids if message_id not in found]
        if missing:
            log_with_context(
                self.logger,
                "warning",
                "Skipping unknown messages",
                job_id=job_id,
                missing_ids=missing
            )
        if not messages:
            raise InvalidJobError("None of the requested messages exist")

        untranscribed = [
            m.id for m in messages
            if isinstance(m, AudioMessage) and m.transcription_status == TranscriptionStatus.PENDING
        ]
        for message_id in untranscribed:
            try:
                await self.transcribe_message(message_id, job_id=job_id)
            except Exception as e:
                log_with_context(
                    self.logger,
                    "warning",
                    "Inline transcription failed, using placeholder",
                    job_id=job_id,
                    message_id=message_id,
                    error_message=describe_error(e)
                )
        if untranscribed:
            messages = await self.storage.get_messages(found_ids)

        text = self.aggregator.aggregate(messages)
        log_with_context(
            self.logger,
            "info",
            "Messages aggregated",
            job_id=job_id,
            **self.aggregator.summarize(messages).to_dict()
        )
        if not text:
            raise NoAggregatableContent("Selected messages contain no text to visualize")

        cached = await self.cache.lookup_or_generate(found_ids, text, options, self.generator.generate)

        for message in messages:
            if not isinstance(message, AudioMessage) and not message.processed:
                await self.storage.update_message(message.id, processed=True)

        return cached

    async def get_cached_diagram(self, message_ids: List[str]) -> Optional[DiagramCacheEntry]:
        return await self.cache.get_latest_for_messages(message_ids)

    # Jobs and status

    async def get_job(self, job_id: str) -> Optional[JobQueueItem]:
        return await self.queue.get_job(job_id)

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self.queue.get_stats()

    async def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        return await self.queue.clear_completed(max_age_hours)

    def get_status(self) -> Dict[str, Any]:
        """
        Get the status of every component.

        Returns:
            Dictionary with storage, recognition, generator, queue and cache state
        """
        return {
            "storage": getattr(self.storage, "name", type(self.storage).__name__),
            "recognition": self.recognition_client.get_status(),
            "diagram_generator": {
                "configured": self.generator.is_configured(),
                "model": self.generator.model,
            },
            "queue": self.queue.get_status(),
            "diagrams_in_flight": len(self.cache.in_flight_keys()),
        }
