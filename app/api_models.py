"""
API request and response models for the conversation diagram service.

This module defines Pydantic models for API request validation and
response serialization, ensuring consistent data structures across
all endpoints.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TextMessageRequest(BaseModel):
    """Request body for creating a text message."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {"content": "The user logs in, then the API validates the token."}
        }
    )

    content: str = Field(..., min_length=1, description="Message text")


class MessageResponse(BaseModel):
    """
    Response model for a stored message.

    Kind-specific fields are present only for the matching kind.

    Attributes:
        id: Message identifier
        kind: text, audio or image
        timestamp: Creation time in epoch milliseconds
        processed: Whether a pipeline stage has consumed the message
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "9b2f0c7d4a8e4f6c9d1e2a3b4c5d6e7f",
                "kind": "audio",
                "timestamp": 1718000000000,
                "processed": False,
                "mime_type": "audio/webm",
                "duration_ms": 4200,
                "audio_size": 67321,
                "transcription": None,
                "transcription_status": "pending"
            }
        }
    )

    id: str = Field(..., description="Message identifier")
    kind: Literal["text", "audio", "image"] = Field(..., description="Message kind")
    timestamp: int = Field(..., description="Creation time (epoch ms)")
    processed: bool = Field(..., description="Whether the message has been processed")
    content: Optional[str] = Field(None, description="Text content (text messages)")
    mime_type: Optional[str] = Field(None, description="Declared MIME type (audio, image)")
    duration_ms: Optional[int] = Field(None, description="Recording duration (audio)")
    audio_size: Optional[int] = Field(None, description="Audio size in bytes (audio)")
    transcription: Optional[str] = Field(None, description="Recognized text (audio)")
    transcription_status: Optional[str] = Field(None, description="Transcription status (audio)")
    transcription_error: Optional[str] = Field(None, description="Last transcription error (audio)")
    transcription_confidence: Optional[float] = Field(None, description="Recognition confidence (audio)")
    file_name: Optional[str] = Field(None, description="Uploaded file name (image)")
    file_size: Optional[int] = Field(None, description="Image size in bytes (image)")
    description: Optional[str] = Field(None, description="Image description (image)")


class DiagramOptions(BaseModel):
    """Diagram generation options; part of the diagram cache key."""
    model_config = ConfigDict(extra="forbid")

    diagram_type: Literal["flowchart", "sequence", "gantt", "class", "state", "auto"] = Field(
        "auto", description="Requested diagram type"
    )
    direction: Optional[Literal["TD", "LR", "RL", "BT"]] = Field(None, description="Flow direction")
    include_title: bool = Field(False, description="Ask for a descriptive title")
    max_tokens: int = Field(1000, ge=50, le=4000, description="Completion token limit")
    temperature: float = Field(0.3, ge=0.0, le=2.0, description="Sampling temperature")


class DiagramRequest(BaseModel):
    """Request body for diagram generation."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "message_ids": ["9b2f0c7d4a8e4f6c9d1e2a3b4c5d6e7f", "1a2b3c4d5e6f7a8b9c0d1e2f3a4b5c6d"],
                "options": {"diagram_type": "flowchart", "direction": "LR"}
            }
        }
    )

    message_ids: List[str] = Field(..., min_length=1, description="Messages to visualize")
    options: DiagramOptions = Field(default_factory=DiagramOptions, description="Generation options")


class JobCreatedResponse(BaseModel):
    """
    Response model for job creation.

    Attributes:
        job_id: Unique identifier for tracking the job
        status: Current job status (typically "pending" for new jobs)
        type: Job type
        subject_id: Message id or comma-joined message ids
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "job_id": "550e8400e29b41d4a716446655440000",
                "status": "pending",
                "type": "audio-transcription",
                "subject_id": "9b2f0c7d4a8e4f6c9d1e2a3b4c5d6e7f"
            }
        }
    )

    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Current job status")
    type: str = Field(..., description="Job type")
    subject_id: str = Field(..., description="Job subject")


class JobResponse(BaseModel):
    """Response model for a job status query."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "550e8400e29b41d4a716446655440000",
                "type": "diagram-generation",
                "subject_id": "a1,b2",
                "status": "completed",
                "retry_count": 1,
                "last_error": "Recognition timed out: TimeoutError",
                "result": {"diagram_id": "c3d4", "input_hash": "5e88...", "cache_hit": False},
                "created_at": "2024-06-10T12:00:00+00:00",
                "updated_at": "2024-06-10T12:00:04+00:00"
            }
        }
    )

    id: str = Field(..., description="Unique job identifier")
    type: str = Field(..., description="Job type")
    subject_id: str = Field(..., description="Job subject")
    status: str = Field(..., description="Current job status")
    retry_count: int = Field(..., description="Retries scheduled so far")
    last_error: Optional[str] = Field(None, description="Most recent error")
    result: Optional[Dict[str, Any]] = Field(None, description="Processor result (when completed)")
    created_at: Optional[str] = Field(None, description="Creation time (ISO 8601)")
    updated_at: Optional[str] = Field(None, description="Last update (ISO 8601)")


class DiagramResponse(BaseModel):
    """Response model for a cached diagram."""

    id: str = Field(..., description="Cache entry identifier")
    input_hash: str = Field(..., description="SHA-256 of the aggregated input")
    message_ids: List[str] = Field(..., description="Messages the diagram was built from")
    generated_code: str = Field(..., description="Mermaid source")
    title: str = Field(..., description="Diagram title")
    diagram_kind: str = Field(..., description="Diagram type")
    generated_at: Optional[str] = Field(None, description="Generation time (ISO 8601)")
    options: Dict[str, Any] = Field(default_factory=dict, description="Options used")


class QueueResponse(BaseModel):
    """Queue statistics and runtime state."""

    stats: Dict[str, int] = Field(..., description="Item counts by status")
    status: Dict[str, Any] = Field(..., description="Runtime state of the queue")


class HealthResponse(BaseModel):
    """
    Response model for health check endpoint.

    Attributes:
        status: Overall service health status
        storage_backend: Storage collaborator in use
        recognition_backend: Recognition backend in use
        diagram_generator_configured: Whether diagram generation credentials are set
        queue_running: Whether the job queue accepts work
        queue_paused: Whether dispatch is paused
    """
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "storage_backend": "sqlite",
                "recognition_backend": "whisper",
                "diagram_generator_configured": True,
                "queue_running": True,
                "queue_paused": False
            }
        }
    )

    status: str = Field(..., description="Service health status")
    storage_backend: str = Field(..., description="Storage backend")
    recognition_backend: str = Field(..., description="Recognition backend")
    diagram_generator_configured: bool = Field(..., description="Diagram backend configured")
    queue_running: bool = Field(..., description="Queue is running")
    queue_paused: bool = Field(..., description="Queue is paused")


class ErrorResponse(BaseModel):
    """
    Standard error response model.

    All API errors return this consistent structure.

    Attributes:
        error: Error details object containing code, message, and optional details
    """

    class ErrorDetail(BaseModel):
        """Error detail structure."""
        code: str = Field(..., description="Error code")
        message: str = Field(..., description="Human-readable error message")
        details: Optional[str] = Field(None, description="Additional error context")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "NOT_FOUND",
                    "message": "Message with id 9b2f... not found",
                    "details": None
                }
            }
        }
    )

    error: ErrorDetail = Field(..., description="Error information")
