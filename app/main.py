"""
FastAPI application for the conversation diagram service.

This module initializes the FastAPI application, wires the pipeline
service into the request handlers and installs exception handlers for
consistent error responses.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from typing import AsyncGenerator, Optional
import time

from app.api_models import (
    DiagramRequest,
    DiagramResponse,
    HealthResponse,
    JobCreatedResponse,
    JobResponse,
    MessageResponse,
    QueueResponse,
    TextMessageRequest,
)
from app.config import settings
from app.logging_config import setup_logging, get_logger, log_with_context
from app.models import JobQueueItem
from app.pipeline import PipelineService

# Configure structured logging
setup_logging(
    log_level=settings.log_level.value,
    use_json=settings.log_json
)
logger = get_logger(__name__)

MAX_UPLOAD_SIZE_MB = settings.max_upload_size_mb
MAX_UPLOAD_SIZE_BYTES = settings.get_max_upload_size_bytes()
UPLOAD_CHUNK_SIZE = 1024 * 1024

# Global pipeline service instance
pipeline_service: Optional[PipelineService] = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Manage application lifespan events.

    Builds and starts the pipeline on startup; stops the job queue and
    closes storage on shutdown.
    """
    global pipeline_service

    logger.info("Conversation diagram API starting up...")
    logger.info(settings.display())

    try:
        service = PipelineService.from_settings(settings)
        await service.initialize()
        pipeline_service = service
        logger.info("Pipeline service started")
    except Exception as e:
        log_with_context(logger, "error", "Failed to start pipeline service", error=e)
        pipeline_service = None

    logger.info("Application startup complete")

    yield

    logger.info("Conversation diagram API shutting down...")
    if pipeline_service:
        try:
            await pipeline_service.shutdown()
            logger.info("Pipeline service shutdown complete")
        except Exception as e:
            log_with_context(logger, "error", "Error during pipeline service shutdown", error=e)
        pipeline_service = None

    logger.info("Application shutdown complete")


app = FastAPI(
    title="Conversation Diagram API",
    description="""
    Turns a conversation of text, audio and image messages into Mermaid diagrams.

    ## Workflow

    1. Add messages with `POST /api/v1/messages/text`, `/audio` or `/image`
    2. Optionally queue transcription of audio with `POST /api/v1/messages/{id}/transcription`
    3. Queue a diagram with `POST /api/v1/diagrams`
    4. Poll `GET /api/v1/jobs/{job_id}` until the job is "completed" or "failed"
    5. Fetch the diagram with `GET /api/v1/diagrams?message_ids=a,b`

    Identical inputs are generated once; repeated requests are served from the cache.
    Failed jobs are retried with exponential backoff.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status code and processing time of every request."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    log_with_context(
        logger,
        "info",
        "Request completed",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else "unknown",
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2)
    )
    return response


def error_detail(code: str, message: str, details: Optional[str] = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details}}


def require_service() -> PipelineService:
    """Return the running pipeline service or raise 503."""
    if pipeline_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_detail("SERVICE_UNAVAILABLE", "Pipeline service is not available")
        )
    return pipeline_service


# Custom exception handlers for consistent error responses

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Return 400 Bad Request for invalid request data."""
    log_with_context(
        logger,
        "warning",
        "Validation error",
        path=request.url.path,
        method=request.method,
        errors=str(exc.errors())
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid request data",
                "details": str(exc.errors())
            }
        }
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(
    request: Request,
    exc: ValidationError
) -> JSONResponse:
    log_with_context(
        logger,
        "warning",
        "Pydantic validation error",
        path=request.url.path,
        method=request.method,
        errors=str(exc.errors())
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_detail("VALIDATION_ERROR", "Invalid data format", str(exc.errors()))
    )


@app.exception_handler(ValueError)
async def value_error_exception_handler(
    request: Request,
    exc: ValueError
) -> JSONResponse:
    """Return 400 Bad Request for invalid input rejected by the pipeline."""
    log_with_context(
        logger,
        "warning",
        "ValueError",
        path=request.url.path,
        method=request.method,
        error=exc
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_detail("INVALID_INPUT", str(exc))
    )


@app.exception_handler(KeyError)
async def key_error_exception_handler(
    request: Request,
    exc: KeyError
) -> JSONResponse:
    """Return 404 Not Found for unknown messages or jobs."""
    message = exc.args[0] if exc.args else "Resource not found"
    log_with_context(
        logger,
        "warning",
        "KeyError",
        path=request.url.path,
        method=request.method,
        error_message=str(message)
    )
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=error_detail("NOT_FOUND", str(message))
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Return 500 Internal Server Error for unexpected errors."""
    log_with_context(
        logger,
        "error",
        "Unexpected error",
        path=request.url.path,
        method=request.method,
        error=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_detail("INTERNAL_ERROR", "An unexpected error occurred", str(exc))
    )


async def read_upload(upload: UploadFile) -> bytes:
    """
    Read an uploaded file in chunks, enforcing the upload size limit.

    Raises:
        HTTPException 413: If the file exceeds MAX_UPLOAD_SIZE_MB
    """
    chunks = []
    size = 0
    while True:
        chunk = await upload.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        size += len(chunk)
        if size > MAX_UPLOAD_SIZE_BYTES:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=error_detail(
                    "FILE_TOO_LARGE",
                    f"File size exceeds maximum limit of {MAX_UPLOAD_SIZE_MB} MB"
                )
            )
        chunks.append(chunk)
    return b"".join(chunks)


def job_created(item: JobQueueItem) -> JobCreatedResponse:
    return JobCreatedResponse(
        job_id=item.id,
        status=item.status.value,
        type=item.type.value,
        subject_id=item.subject_id
    )


# Health

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Check service health status"
)
async def health_check() -> HealthResponse:
    """
    Report service health and the backends in use.

    Returns "unhealthy" (still 200) when the pipeline failed to start, so
    monitoring can tell a degraded service from an unreachable one.
    """
    if pipeline_service is None:
        return HealthResponse(
            status="unhealthy",
            storage_backend="unavailable",
            recognition_backend="unavailable",
            diagram_generator_configured=False,
            queue_running=False,
            queue_paused=False
        )

    service_status = pipeline_service.get_status()
    return HealthResponse(
        status="healthy",
        storage_backend=service_status["storage"],
        recognition_backend=service_status["recognition"]["backend"],
        diagram_generator_configured=service_status["diagram_generator"]["configured"],
        queue_running=service_status["queue"]["running"],
        queue_paused=service_status["queue"]["paused"]
    )


# Messages

@app.post(
    "/api/v1/messages/text",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Messages"],
    summary="Add a text message"
)
async def create_text_message(request: TextMessageRequest) -> MessageResponse:
    service = require_service()
    message = await service.add_text_message(request.content)
    return MessageResponse(**message.to_dict())


@app.post(
    "/api/v1/messages/audio",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Messages"],
    summary="Add an audio message",
    responses={
        413: {
            "description": "File size exceeds maximum limit",
            "content": {
                "application/json": {
                    "example": {
                        "detail": {
                            "error": {
                                "code": "FILE_TOO_LARGE",
                                "message": "File size exceeds maximum limit of 50 MB",
                                "details": None
                            }
                        }
                    }
                }
            }
        }
    }
)
async def create_audio_message(
    audio_file: UploadFile = File(..., description="Recorded audio (webm, ogg, wav, mp3, m4a, flac)"),
    duration_ms: Optional[int] = Form(None, ge=0, description="Recording duration in milliseconds")
) -> MessageResponse:
    """
    Upload a recorded audio message.

    The message starts with transcription status "pending". Transcription
    runs when it is queued explicitly or when the message is part of a
    diagram request.

    Example (curl):
        ```bash
        curl -X POST http://localhost:8000/api/v1/messages/audio \\
             -F "audio_file=@recording.webm;type=audio/webm"
        ```
    """
    service = require_service()
    data = await read_upload(audio_file)
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail("MISSING_FILE", "Uploaded audio file is empty")
        )

    message = await service.add_audio_message(
        data,
        mime_type=audio_file.content_type or "application/octet-stream",
        duration_ms=duration_ms
    )
    return MessageResponse(**message.to_dict())


@app.post(
    "/api/v1/messages/image",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Messages"],
    summary="Add an image message"
)
async def create_image_message(
    image_file: UploadFile = File(..., description="Image file"),
    description: Optional[str] = Form(None, description="What the image shows")
) -> MessageResponse:
    """
    Upload an image message.

    Images contribute to diagrams only through their description.
    """
    service = require_service()
    data = await read_upload(image_file)
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail("MISSING_FILE", "Uploaded image file is empty")
        )

    message = await service.add_image_message(
        data,
        file_name=image_file.filename or "image",
        mime_type=image_file.content_type or "application/octet-stream",
        description=description
    )
    return MessageResponse(**message.to_dict())


@app.get(
    "/api/v1/messages/{message_id}",
    response_model=MessageResponse,
    tags=["Messages"],
    summary="Get a message and its transcription state"
)
async def get_message(message_id: str) -> MessageResponse:
    service = require_service()
    message = await service.get_message(message_id)
    if message is None:
        raise KeyError(f"Message with id {message_id} not found")
    return MessageResponse(**message.to_dict())


@app.post(
    "/api/v1/messages/{message_id}/transcription",
    response_model=JobCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Messages"],
    summary="Queue transcription of an audio message"
)
async def queue_transcription(message_id: str) -> JobCreatedResponse:
    """
    Queue an audio-transcription job for the message.

    Poll `GET /api/v1/jobs/{job_id}` for the outcome; the message itself
    carries the transcription once the job completes.
    """
    service = require_service()
    item = await service.queue_audio_transcription(message_id)
    return job_created(item)


# Diagrams

@app.post(
    "/api/v1/diagrams",
    response_model=JobCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Diagrams"],
    summary="Queue diagram generation for a set of messages"
)
async def create_diagram(request: DiagramRequest) -> JobCreatedResponse:
    """
    Queue a diagram-generation job.

    The job result carries the diagram id, the input hash and whether the
    diagram came from the cache.
    """
    service = require_service()
    item = await service.queue_diagram_generation(
        request.message_ids,
        request.options.model_dump()
    )
    return job_created(item)


@app.get(
    "/api/v1/diagrams",
    response_model=DiagramResponse,
    tags=["Diagrams"],
    summary="Get the latest diagram for a set of messages"
)
async def get_diagram(
    message_ids: str = Query(..., min_length=1, description="Comma-separated message ids")
) -> DiagramResponse:
    service = require_service()
    ids = [message_id.strip() for message_id in message_ids.split(",") if message_id.strip()]
    if not ids:
        raise ValueError("At least one message id is required")

    entry = await service.get_cached_diagram(ids)
    if entry is None:
        raise KeyError(f"No diagram found for messages {','.join(ids)}")
    return DiagramResponse(**entry.to_dict())


# Jobs and queue

@app.get(
    "/api/v1/jobs/{job_id}",
    response_model=JobResponse,
    tags=["Jobs"],
    summary="Get job status and result"
)
async def get_job(job_id: str) -> JobResponse:
    """
    Get a job's status.

    A job waiting for a retry reports "processing" with its last error.
    """
    service = require_service()
    item = await service.get_job(job_id)
    if item is None:
        raise KeyError(f"Job with id {job_id} not found")

    data = item.to_dict()
    data.pop("payload", None)
    return JobResponse(**data)


@app.get(
    "/api/v1/queue",
    response_model=QueueResponse,
    tags=["Jobs"],
    summary="Get queue statistics"
)
async def get_queue() -> QueueResponse:
    service = require_service()
    return QueueResponse(
        stats=await service.get_queue_stats(),
        status=service.queue.get_status()
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
