"""
Unit tests for the FastAPI application.

Tests CORS configuration, exception handlers and every endpoint. The
pipeline service is replaced by a mock, so no backend is touched.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models import (
    AudioMessage,
    CachedResult,
    DiagramCacheEntry,
    ImageMessage,
    JobQueueItem,
    JobStatus,
    JobType,
    TextMessage,
    TranscriptionStatus,
)

client = TestClient(app)

NOW = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)


def mock_service():
    service = Mock()
    service.add_text_message = AsyncMock()
    service.add_audio_message = AsyncMock()
    service.add_image_message = AsyncMock()
    service.get_message = AsyncMock(return_value=None)
    service.queue_audio_transcription = AsyncMock()
    service.queue_diagram_generation = AsyncMock()
    service.get_cached_diagram = AsyncMock(return_value=None)
    service.get_job = AsyncMock(return_value=None)
    service.get_queue_stats = AsyncMock(return_value={})
    service.get_status.return_value = {
        "storage": "sqlite",
        "recognition": {"backend": "whisper"},
        "diagram_generator": {"configured": True, "model": "gpt-4o-mini"},
        "queue": {"running": True, "paused": False},
        "diagrams_in_flight": 0,
    }
    return service


def job(job_type=JobType.AUDIO_TRANSCRIPTION, subject_id="m1", **fields):
    return JobQueueItem(type=job_type, subject_id=subject_id, id="job-1",
                        created_at=NOW, updated_at=NOW, **fields)


@pytest.fixture
def service():
    service = mock_service()
    with patch("app.main.pipeline_service", service):
        yield service


class TestCORSConfiguration:
    """Test CORS middleware configuration."""

    def test_cors_allows_all_origins(self, service):
        response = client.get("/api/v1/health", headers={"Origin": "http://localhost:3000"})

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_cors_preflight(self, service):
        response = client.options(
            "/api/v1/diagrams",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST"
            }
        )

        assert response.status_code == 200
        assert "access-control-allow-methods" in response.headers


class TestHealthEndpoint:
    """Test the health endpoint."""

    def test_healthy(self, service):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "storage_backend": "sqlite",
            "recognition_backend": "whisper",
            "diagram_generator_configured": True,
            "queue_running": True,
            "queue_paused": False,
        }

    def test_unhealthy_when_service_missing(self):
        """Test that a failed startup is reported, not hidden."""
        with patch("app.main.pipeline_service", None):
            response = client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "unhealthy"
        assert response.json()["recognition_backend"] == "unavailable"


class TestServiceUnavailable:
    """Test endpoints when the pipeline service failed to start."""

    def test_returns_503(self):
        with patch("app.main.pipeline_service", None):
            response = client.post("/api/v1/messages/text", json={"content": "hello"})

        assert response.status_code == 503
        assert response.json()["detail"]["error"]["code"] == "SERVICE_UNAVAILABLE"


class TestMessageEndpoints:
    """Test message intake and lookup."""

    def test_create_text_message(self, service):
        service.add_text_message.return_value = TextMessage(id="m1", content="User logs in", timestamp=1718000000000)

        response = client.post("/api/v1/messages/text", json={"content": "User logs in"})

        assert response.status_code == 201
        data = response.json()
        assert data["id"] == "m1"
        assert data["kind"] == "text"
        assert data["content"] == "User logs in"
        assert data["processed"] is False
        service.add_text_message.assert_awaited_once_with("User logs in")

    def test_empty_text_is_a_validation_error(self, service):
        response = client.post("/api/v1/messages/text", json={"content": ""})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        service.add_text_message.assert_not_called()

    def test_blank_text_rejected_by_service(self, service):
        service.add_text_message.side_effect = ValueError("Text message content must not be empty")

        response = client.post("/api/v1/messages/text", json={"content": "   "})

        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "INVALID_INPUT",
            "message": "Text message content must not be empty",
            "details": None,
        }

    def test_upload_audio_message(self, service):
        service.add_audio_message.return_value = AudioMessage(
            id="a1", audio_data=b"x" * 10, mime_type="audio/webm", duration_ms=4200
        )

        response = client.post(
            "/api/v1/messages/audio",
            files={"audio_file": ("clip.webm", b"\x1aE\xdf\xa3" + b"\x00" * 6, "audio/webm")},
            data={"duration_ms": "4200"}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["kind"] == "audio"
        assert data["transcription_status"] == "pending"
        assert data["audio_size"] == 10
        args, kwargs = service.add_audio_message.call_args
        assert args[0] == b"\x1aE\xdf\xa3" + b"\x00" * 6
        assert kwargs == {"mime_type": "audio/webm", "duration_ms": 4200}

    def test_empty_audio_upload(self, service):
        response = client.post(
            "/api/v1/messages/audio",
            files={"audio_file": ("clip.webm", b"", "audio/webm")}
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "MISSING_FILE"

    def test_missing_audio_file_is_a_validation_error(self, service):
        response = client.post("/api/v1/messages/audio", data={"duration_ms": "100"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_audio_upload_too_large(self, service):
        with patch("app.main.MAX_UPLOAD_SIZE_BYTES", 8):
            response = client.post(
                "/api/v1/messages/audio",
                files={"audio_file": ("clip.wav", b"RIFF" + b"\x00" * 20, "audio/wav")}
            )

        assert response.status_code == 413
        assert response.json()["detail"]["error"]["code"] == "FILE_TOO_LARGE"
        service.add_audio_message.assert_not_called()

    def test_upload_image_message(self, service):
        service.add_image_message.return_value = ImageMessage(
            id="i1", image_data=b"\x89PNG", file_name="board.png", file_size=4,
            mime_type="image/png", description="Login sketch"
        )

        response = client.post(
            "/api/v1/messages/image",
            files={"image_file": ("board.png", b"\x89PNG", "image/png")},
            data={"description": "Login sketch"}
        )

        assert response.status_code == 201
        assert response.json()["description"] == "Login sketch"
        _, kwargs = service.add_image_message.call_args
        assert kwargs == {"file_name": "board.png", "mime_type": "image/png", "description": "Login sketch"}

    def test_get_message(self, service):
        service.get_message.return_value = AudioMessage(
            id="a1",
            audio_data=b"RIFF",
            transcription="the user logs in",
            transcription_status=TranscriptionStatus.RECOGNIZED,
            transcription_confidence=0.92,
            processed=True,
        )

        response = client.get("/api/v1/messages/a1")

        assert response.status_code == 200
        assert response.json()["transcription"] == "the user logs in"
        assert response.json()["transcription_confidence"] == 0.92

    def test_get_unknown_message(self, service):
        response = client.get("/api/v1/messages/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
        assert response.json()["error"]["message"] == "Message with id missing not found"

    def test_queue_transcription(self, service):
        service.queue_audio_transcription.return_value = job()

        response = client.post("/api/v1/messages/m1/transcription")

        assert response.status_code == 202
        assert response.json() == {
            "job_id": "job-1",
            "status": "pending",
            "type": "audio-transcription",
            "subject_id": "m1",
        }

    def test_queue_transcription_for_text_message(self, service):
        service.queue_audio_transcription.side_effect = ValueError("Message m1 is not an audio message")

        response = client.post("/api/v1/messages/m1/transcription")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"


class TestDiagramEndpoints:
    """Test diagram requests and lookup."""

    def test_queue_diagram(self, service):
        service.queue_diagram_generation.return_value = job(JobType.DIAGRAM_GENERATION, "m1,m2")

        response = client.post(
            "/api/v1/diagrams",
            json={"message_ids": ["m1", "m2"], "options": {"diagram_type": "sequence", "direction": "LR"}}
        )

        assert response.status_code == 202
        assert response.json()["type"] == "diagram-generation"
        args, _ = service.queue_diagram_generation.call_args
        assert args[0] == ["m1", "m2"]
        assert args[1] == {
            "diagram_type": "sequence",
            "direction": "LR",
            "include_title": False,
            "max_tokens": 1000,
            "temperature": 0.3,
        }

    @pytest.mark.parametrize("body", [
        {"message_ids": []},
        {"message_ids": ["m1"], "options": {"diagram_type": "pie"}},
        {"message_ids": ["m1"], "options": {"direction": "UP"}},
        {"message_ids": ["m1"], "options": {"max_tokens": 10}},
        {"message_ids": ["m1"], "options": {"unknown": True}},
    ])
    def test_invalid_diagram_request(self, service, body):
        response = client.post("/api/v1/diagrams", json=body)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_get_diagram(self, service):
        service.get_cached_diagram.return_value = DiagramCacheEntry(
            id="d1",
            input_hash="5e88",
            message_ids=("m1", "m2"),
            generated_code="flowchart TD\n    A --> B",
            title="Login flow",
            diagram_kind="flowchart",
            generated_at=NOW,
        )

        response = client.get("/api/v1/diagrams", params={"message_ids": "m1, m2"})

        assert response.status_code == 200
        assert response.json()["generated_code"] == "flowchart TD\n    A --> B"
        assert response.json()["message_ids"] == ["m1", "m2"]
        service.get_cached_diagram.assert_awaited_once_with(["m1", "m2"])

    def test_get_diagram_not_found(self, service):
        response = client.get("/api/v1/diagrams", params={"message_ids": "m1"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_get_diagram_without_ids(self, service):
        response = client.get("/api/v1/diagrams", params={"message_ids": " , "})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"


class TestJobEndpoints:
    """Test job and queue inspection."""

    def test_get_job_waiting_for_retry(self, service):
        """Test that a job waiting for a retry reports processing with its last error."""
        service.get_job.return_value = job(
            status=JobStatus.PROCESSING,
            retry_count=1,
            last_error="Recognition timed out: TimeoutError",
            payload={"message_id": "m1"},
        )

        response = client.get("/api/v1/jobs/job-1")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processing"
        assert data["retry_count"] == 1
        assert data["last_error"] == "Recognition timed out: TimeoutError"
        assert "payload" not in data

    def test_get_completed_job(self, service):
        service.get_job.return_value = job(
            JobType.DIAGRAM_GENERATION,
            status=JobStatus.COMPLETED,
            result=CachedResult(
                entry=DiagramCacheEntry(
                    id="d1", input_hash="5e88", message_ids=("m1",), generated_code="graph TD",
                    title="", diagram_kind="flowchart", generated_at=NOW
                ),
                cache_hit=True
            ).to_dict()
        )

        response = client.get("/api/v1/jobs/job-1")

        assert response.json()["result"]["cache_hit"] is True

    def test_get_unknown_job(self, service):
        response = client.get("/api/v1/jobs/missing")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Job with id missing not found"

    def test_get_queue(self, service):
        service.get_queue_stats.return_value = {"pending": 1, "processing": 2, "completed": 3, "failed": 0,
                                                "total": 6, "in_flight": 2, "scheduled_retries": 1}
        service.queue.get_status.return_value = {"running": True, "paused": False, "in_flight": ["j1", "j2"]}

        response = client.get("/api/v1/queue")

        assert response.status_code == 200
        assert response.json()["stats"]["total"] == 6
        assert response.json()["status"]["in_flight"] == ["j1", "j2"]


class TestUnexpectedErrors:
    """Test the catch-all exception handler."""

    def test_internal_error_format(self, service):
        service.get_job.side_effect = RuntimeError("storage exploded")
        failing_client = TestClient(app, raise_server_exceptions=False)

        response = failing_client.get("/api/v1/jobs/job-1")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert response.json()["error"]["details"] == "storage exploded"
