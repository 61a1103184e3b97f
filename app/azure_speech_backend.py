"""
Azure Speech recognition backend using the REST API for short audio.

Each session owns its own ``requests.Session`` so that an abandoned attempt
(timeout, cancellation) closes its HTTP connection pool independently of
other attempts. The blocking HTTP call runs in a worker thread.
"""

import asyncio

import requests

from app.exceptions import NonRetryableBackendError, TransientBackendError
from app.logging_config import get_logger, log_with_context
from app.models import NormalizedAudio
from app.recognition_client import BackendResponse, RecognitionOutcome


ENDPOINT_TEMPLATE = (
    "https://{region}.stt.speech.microsoft.com/speech/recognition/"
    "conversation/cognitiveservices/v1"
)

SUCCESS_STATUSES = {"Success", "Recognized"}
NO_SPEECH_STATUSES = {"NoMatch", "InitialSilenceTimeout", "BabbleTimeout"}
NON_RETRYABLE_HTTP = {400, 401, 403, 404}


def parse_recognition_response(body: dict) -> BackendResponse:
    """
    Map an Azure short-audio JSON response onto a BackendResponse.

    Args:
        body: Decoded JSON body (simple or detailed output format)

    Returns:
        BackendResponse for the reported ``RecognitionStatus``
    """
    status = body.get("RecognitionStatus") or body.get("recognitionStatus")

    if status in NO_SPEECH_STATUSES:
        return BackendResponse(outcome=RecognitionOutcome.NO_SPEECH)

    if status and status not in SUCCESS_STATUSES:
        return BackendResponse(
            outcome=RecognitionOutcome.ERROR,
            error=body.get("Message") or f"Recognition status: {status}",
        )

    nbest = body.get("NBest") or []
    best = nbest[0] if nbest else {}
    text = body.get("DisplayText") or body.get("Text") or best.get("Display") or best.get("Lexical") or ""
    confidence = best.get("Confidence")

    return BackendResponse(
        outcome=RecognitionOutcome.RECOGNIZED,
        text=text,
        confidence=float(confidence) if confidence is not None else None,
    )


class AzureSpeechRecognitionBackend:
    """
    Recognition backend for the Azure Speech short-audio REST endpoint.

    Attributes:
        key: Speech resource subscription key
        region: Speech resource region
        timeout: HTTP timeout in seconds for a single request
    """

    name = "azure"

    def __init__(self, key: str, region: str, timeout: float = 30.0):
        if not key or not region:
            raise ValueError("Azure Speech backend requires a key and a region")
        self.key = key
        self.region = region
        self.timeout = timeout
        self.endpoint = ENDPOINT_TEMPLATE.format(region=region)
        self.logger = get_logger(__name__)

    async def open_session(self) -> "AzureSpeechSession":
        return AzureSpeechSession(self, requests.Session())


class AzureSpeechSession:
    """One recognition attempt with its own HTTP connection pool."""

    def __init__(self, backend: AzureSpeechRecognitionBackend, http: requests.Session):
        self.backend = backend
        self.http = http
        self.logger = backend.logger

    async def recognize(self, audio: NormalizedAudio, language: str) -> BackendResponse:
        return await asyncio.to_thread(self._post, audio, language)

    def _post(self, audio: NormalizedAudio, language: str) -> BackendResponse:
        headers = {
            "Ocp-Apim-Subscription-Key": self.backend.key,
            "Content-Type": f"audio/wav; codecs=audio/pcm; samplerate={audio.sample_rate}",
            "Accept": "application/json",
        }
        params = {"language": language, "format": "detailed"}

        try:
            response = self.http.post(
                self.backend.endpoint,
                params=params,
                headers=headers,
                data=audio.data,
                timeout=self.backend.timeout,
            )
        except requests.Timeout as e:
            raise TransientBackendError(f"Azure Speech request timed out: {e}") from e
        except requests.ConnectionError as e:
            raise TransientBackendError(f"Azure Speech connection error: {e}") from e

        if response.status_code in NON_RETRYABLE_HTTP:
            raise NonRetryableBackendError(
                f"Azure Speech request failed ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientBackendError(
                f"Azure Speech request failed ({response.status_code}): {response.text[:200]}"
            )
        if not response.ok:
            raise NonRetryableBackendError(
                f"Azure Speech request failed ({response.status_code}): {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransientBackendError("Azure Speech returned a malformed response") from e

        result = parse_recognition_response(body)
        log_with_context(
            self.logger,
            "debug",
            "Azure Speech response",
            recognition_status=body.get("RecognitionStatus"),
            outcome=result.outcome.value,
        )
        return result

    async def close(self) -> None:
        self.http.close()
