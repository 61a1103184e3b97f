"""
Data models for the conversation diagram pipeline.

This module defines the conversation messages (text, audio, image), the
results produced by normalization and recognition, the persisted job queue
items and the immutable diagram cache entries.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return uuid4().hex


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class MessageKind(str, Enum):
    """Kinds of conversation message."""
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"


class TranscriptionStatus(str, Enum):
    """
    Transcription state of an audio message.

    Attributes:
        PENDING: Never transcribed
        PROCESSING: A transcription attempt is running
        RECOGNIZED: Speech was recognized and the transcription is non-empty
        NO_MATCH: The backend found no speech (terminal, never retried)
        CONVERSION_ERROR: The audio could not be normalized
        TIMEOUT: Recognition ran out of time on every attempt
        RECOGNITION_ERROR: The backend failed permanently
    """
    PENDING = "pending"
    PROCESSING = "processing"
    RECOGNIZED = "recognized"
    NO_MATCH = "no_match"
    CONVERSION_ERROR = "conversion_error"
    TIMEOUT = "timeout"
    RECOGNITION_ERROR = "recognition_error"


TERMINAL_TRANSCRIPTION_STATUSES = frozenset({
    TranscriptionStatus.RECOGNIZED,
    TranscriptionStatus.NO_MATCH,
    TranscriptionStatus.CONVERSION_ERROR,
    TranscriptionStatus.TIMEOUT,
    TranscriptionStatus.RECOGNITION_ERROR,
})


class JobType(str, Enum):
    """Job types understood by the queue."""
    AUDIO_TRANSCRIPTION = "audio-transcription"
    DIAGRAM_GENERATION = "diagram-generation"


class JobStatus(str, Enum):
    """
    Enumeration of possible job processing states.

    Attributes:
        PENDING: Job is waiting to be dispatched
        PROCESSING: Job is running, or waiting for a scheduled retry
        COMPLETED: Job finished successfully
        FAILED: Job failed permanently (terminal)
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Message:
    """
    Base fields shared by every conversation message.

    Attributes:
        id: Opaque unique identifier assigned at creation
        timestamp: Creation time in epoch milliseconds
        processed: Whether the message has been consumed by a pipeline stage
        sequence: Creation counter assigned by storage (0 until stored), breaks ties between equal timestamps
    """
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    processed: bool = False
    sequence: int = 0

    kind = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value if self.kind else None,
            "timestamp": self.timestamp,
            "processed": self.processed,
            "sequence": self.sequence,
        }


@dataclass
class TextMessage(Message):
    content: str = ""

    kind = MessageKind.TEXT

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["content"] = self.content
        return data


@dataclass
class AudioMessage(Message):
    """
    A recorded audio message and its transcription state.

    Attributes:
        audio_data: Raw bytes as uploaded
        mime_type: Declared MIME type of ``audio_data``
        duration_ms: Client-reported duration of the recording
        transcription: Recognized text (only meaningful when RECOGNIZED)
        transcription_status: Current transcription state
        transcription_error: Description of the last transcription failure
        transcription_confidence: Backend confidence in [0, 1], if reported
    """
    audio_data: bytes = b""
    mime_type: str = "audio/wav"
    duration_ms: int = 0
    transcription: Optional[str] = None
    transcription_status: TranscriptionStatus = TranscriptionStatus.PENDING
    transcription_error: Optional[str] = None
    transcription_confidence: Optional[float] = None

    kind = MessageKind.AUDIO

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "mime_type": self.mime_type,
            "duration_ms": self.duration_ms,
            "audio_size": len(self.audio_data),
            "transcription": self.transcription,
            "transcription_status": self.transcription_status.value,
            "transcription_error": self.transcription_error,
            "transcription_confidence": self.transcription_confidence,
        })
        return data


@dataclass
class ImageMessage(Message):
    image_data: bytes = b""
    file_name: str = ""
    file_size: int = 0
    mime_type: str = "application/octet-stream"
    description: Optional[str] = None

    kind = MessageKind.IMAGE

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "description": self.description,
        })
        return data


@dataclass
class NormalizedAudio:
    """
    Audio in the canonical recognition format (mono, 16-bit PCM WAV).

    Attributes:
        data: Complete WAV file bytes (44-byte header + samples)
        sample_rate: Samples per second
        channels: Always 1 after normalization
        mime: MIME type of ``data``
        duration_ms: Duration of the normalized samples
        original_format: Label of the input format (e.g. "webm", "wav")
        converted_format: Output format label, None when the input was already canonical
        peak: Peak amplitude of the input in [0, 1]
        rms: RMS level of the output in [0, 1]
        gain: Gain factor that was applied (1.0 when none)
        short_clip: True when the clip is shorter than the minimum duration
    """
    data: bytes
    sample_rate: int
    channels: int
    mime: str
    duration_ms: int
    original_format: str
    converted_format: Optional[str] = None
    peak: float = 0.0
    rms: float = 0.0
    gain: float = 1.0
    short_clip: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": len(self.data),
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "mime": self.mime,
            "duration_ms": self.duration_ms,
            "original_format": self.original_format,
            "converted_format": self.converted_format,
            "peak": self.peak,
            "rms": self.rms,
            "gain": self.gain,
            "short_clip": self.short_clip,
        }


@dataclass
class TranscriptionResult:
    """
    Outcome of one recognition call.

    ``status`` is always one of the terminal transcription statuses.
    """
    status: TranscriptionStatus
    text: str = ""
    confidence: Optional[float] = None
    original_format: Optional[str] = None
    converted_format: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == TranscriptionStatus.RECOGNIZED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "text": self.text,
            "confidence": self.confidence,
            "original_format": self.original_format,
            "converted_format": self.converted_format,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class JobQueueItem:
    """
    A persisted unit of work.

    Attributes:
        id: Unique job identifier
        type: Job type, selects the registered processor
        subject_id: Message id, or comma-joined message ids for diagram jobs
        payload: Processor-specific input
        retry_count: Number of retries already scheduled (<= max_retries)
        status: Current job status
        created_at: Creation timestamp (UTC)
        updated_at: Last status change (UTC)
        last_error: Description of the most recent failure
        result: Processor return value once completed
    """
    type: JobType
    subject_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    retry_count: int = 0
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "subject_id": self.subject_id,
            "payload": self.payload,
            "retry_count": self.retry_count,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_error": self.last_error,
            "result": self.result,
        }

    def __repr__(self) -> str:
        return (
            f"JobQueueItem(id={self.id!r}, type={self.type.value!r}, "
            f"status={self.status.value!r}, retry_count={self.retry_count})"
        )


@dataclass(frozen=True)
class DiagramCacheEntry:
    """
    An immutable generated diagram.

    Attributes:
        id: Unique entry identifier
        input_hash: SHA-256 of the aggregated text and canonical options
        message_ids: Message ids the diagram was generated from
        generated_code: Diagram source (Mermaid)
        title: Diagram title, may be empty
        diagram_kind: Diagram type reported by the generator
        generated_at: Generation time (UTC)
        options: Generation options used
    """
    id: str
    input_hash: str
    message_ids: Tuple[str, ...]
    generated_code: str
    title: str
    diagram_kind: str
    generated_at: datetime
    options: Dict[str, Any] = field(default_factory=dict, hash=False, compare=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "input_hash": self.input_hash,
            "message_ids": list(self.message_ids),
            "generated_code": self.generated_code,
            "title": self.title,
            "diagram_kind": self.diagram_kind,
            "generated_at": _iso(self.generated_at),
            "options": self.options,
        }


@dataclass
class DiagramResult:
    """Diagram produced by the generation backend."""
    code: str
    title: str = ""
    kind: str = "flowchart"


@dataclass
class CachedResult:
    entry: DiagramCacheEntry
    cache_hit: bool

    def to_dict(self) -> Dict[str, Any]:
        data = self.entry.to_dict()
        data["cache_hit"] = self.cache_hit
        return data


def message_from_kind(kind: MessageKind, **fields: Any) -> Message:
    """Build the message subclass matching ``kind``."""
    classes = {
        MessageKind.TEXT: TextMessage,
        MessageKind.AUDIO: AudioMessage,
        MessageKind.IMAGE: ImageMessage,
    }
    return classes[MessageKind(kind)](**fields)
