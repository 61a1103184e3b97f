"""
Configuration management for the conversation diagram pipeline.

Settings cover audio normalization, the speech-recognition backend, the
job queue, the diagram-generation backend, storage and the HTTP surface.

Uses Pydantic Settings for environment variable management with
validation and type safety.
"""

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WhisperModelSize(str, Enum):
    """Supported Whisper model sizes."""
    TINY = "tiny"
    BASE = "base"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RecognitionBackendKind(str, Enum):
    """Available speech-recognition backends."""
    WHISPER = "whisper"
    AZURE = "azure"


class StorageBackendKind(str, Enum):
    """Available storage collaborators."""
    MEMORY = "memory"
    SQLITE = "sqlite"


class DiagramProvider(str, Enum):
    """Available diagram-generation providers."""
    OPENAI = "openai"
    AZURE = "azure"


class Settings(BaseSettings):
    """
    Configuration settings for the pipeline service.

    All settings can be overridden using environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Audio normalization
    audio_target_sample_rate: int = Field(
        default=16000,
        ge=8000,
        le=48000,
        description="Sample rate of the normalized audio handed to recognition",
        alias="AUDIO_TARGET_SAMPLE_RATE"
    )

    audio_noise_floor: float = Field(
        default=0.001,
        gt=0.0,
        lt=0.1,
        description="Peak amplitude below which no gain is applied",
        alias="AUDIO_NOISE_FLOOR"
    )

    audio_min_duration_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=10.0,
        description="Clips shorter than this are flagged as short",
        alias="AUDIO_MIN_DURATION_SECONDS"
    )

    max_upload_size_mb: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum size of an uploaded audio or image file in megabytes",
        alias="MAX_UPLOAD_SIZE_MB"
    )

    # Speech recognition
    recognition_backend: RecognitionBackendKind = Field(
        default=RecognitionBackendKind.WHISPER,
        description="Speech-recognition backend",
        alias="RECOGNITION_BACKEND"
    )

    recognition_language: str = Field(
        default="en-US",
        description="Language tag sent to the recognition backend",
        alias="RECOGNITION_LANGUAGE"
    )

    recognition_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per recognition call (transient failures only)",
        alias="RECOGNITION_MAX_ATTEMPTS"
    )

    recognition_base_delay_ms: int = Field(
        default=1000,
        ge=0,
        le=60000,
        description="Backoff base delay between recognition attempts",
        alias="RECOGNITION_BASE_DELAY_MS"
    )

    recognition_max_delay_ms: int = Field(
        default=5000,
        ge=0,
        le=300000,
        description="Backoff cap between recognition attempts",
        alias="RECOGNITION_MAX_DELAY_MS"
    )

    recognition_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Timeout for a single recognition attempt",
        alias="RECOGNITION_TIMEOUT_SECONDS"
    )

    whisper_model_size: WhisperModelSize = Field(
        default=WhisperModelSize.BASE,
        description="Whisper model size (affects accuracy and performance)",
        alias="WHISPER_MODEL_SIZE"
    )

    whisper_device: Optional[str] = Field(
        default=None,
        description="Torch device for Whisper (auto-detected when unset)",
        alias="WHISPER_DEVICE"
    )

    azure_speech_key: Optional[str] = Field(
        default=None,
        description="Azure Speech subscription key",
        alias="AZURE_SPEECH_KEY"
    )

    azure_speech_region: Optional[str] = Field(
        default=None,
        description="Azure Speech region, e.g. westeurope",
        alias="AZURE_SPEECH_REGION"
    )

    # Job queue
    queue_max_concurrent: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum number of queue items processed concurrently",
        alias="QUEUE_MAX_CONCURRENT"
    )

    queue_max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries per queue item after the first attempt",
        alias="QUEUE_MAX_RETRIES"
    )

    queue_retry_base_delay_ms: int = Field(
        default=1000,
        ge=0,
        le=600000,
        description="Backoff base delay before a queue item is retried",
        alias="QUEUE_RETRY_BASE_DELAY_MS"
    )

    queue_retry_max_delay_ms: int = Field(
        default=30000,
        ge=0,
        le=3600000,
        description="Backoff cap before a queue item is retried",
        alias="QUEUE_RETRY_MAX_DELAY_MS"
    )

    queue_processing_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        le=3600,
        description="Timeout for a single processing attempt of a queue item",
        alias="QUEUE_PROCESSING_TIMEOUT_SECONDS"
    )

    job_cleanup_max_age_hours: int = Field(
        default=24,
        ge=1,
        le=720,  # 30 days max
        description="Maximum age of completed jobs before cleanup (in hours)",
        alias="JOB_CLEANUP_MAX_AGE_HOURS"
    )

    # Diagram generation
    diagram_provider: DiagramProvider = Field(
        default=DiagramProvider.OPENAI,
        description="Diagram-generation provider",
        alias="DIAGRAM_PROVIDER"
    )

    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key",
        alias="OPENAI_API_KEY"
    )

    openai_base_url: Optional[str] = Field(
        default=None,
        description="Optional OpenAI-compatible base URL",
        alias="OPENAI_BASE_URL"
    )

    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Model (or Azure deployment) used for diagram generation",
        alias="OPENAI_MODEL"
    )

    azure_openai_endpoint: Optional[str] = Field(
        default=None,
        description="Azure OpenAI resource endpoint",
        alias="AZURE_OPENAI_ENDPOINT"
    )

    azure_openai_api_key: Optional[str] = Field(
        default=None,
        description="Azure OpenAI API key",
        alias="AZURE_OPENAI_API_KEY"
    )

    azure_openai_api_version: str = Field(
        default="2024-04-01-preview",
        description="Azure OpenAI API version",
        alias="AZURE_OPENAI_API_VERSION"
    )

    azure_openai_deployment: Optional[str] = Field(
        default=None,
        description="Azure OpenAI deployment name",
        alias="AZURE_OPENAI_DEPLOYMENT"
    )

    diagram_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per diagram-generation call (transient failures only)",
        alias="DIAGRAM_MAX_ATTEMPTS"
    )

    aggregation_max_chars: int = Field(
        default=0,
        ge=0,
        le=1_000_000,
        description="Truncate aggregated text to this many characters (0 disables)",
        alias="AGGREGATION_MAX_CHARS"
    )

    # Storage
    storage_backend: StorageBackendKind = Field(
        default=StorageBackendKind.SQLITE,
        description="Storage collaborator",
        alias="STORAGE_BACKEND"
    )

    sqlite_path: str = Field(
        default="pipeline.db",
        description="SQLite database file used when STORAGE_BACKEND=sqlite",
        alias="SQLITE_PATH"
    )

    # API configuration
    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port to expose the API",
        alias="API_PORT"
    )

    api_host: str = Field(
        default="0.0.0.0",
        description="API host address",
        alias="API_HOST"
    )

    # Logging configuration
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
        alias="LOG_LEVEL"
    )

    log_json: bool = Field(
        default=True,
        description="Emit JSON log records",
        alias="LOG_JSON"
    )

    @field_validator("recognition_max_delay_ms")
    @classmethod
    def validate_recognition_delays(cls, v: int, info) -> int:
        """Ensure the recognition backoff cap is not below its base delay."""
        base = info.data.get("recognition_base_delay_ms", 1000)
        if v < base:
            raise ValueError(
                f"recognition_max_delay_ms ({v}) must be >= recognition_base_delay_ms ({base})"
            )
        return v

    @field_validator("queue_retry_max_delay_ms")
    @classmethod
    def validate_queue_delays(cls, v: int, info) -> int:
        """Ensure the queue backoff cap is not below its base delay."""
        base = info.data.get("queue_retry_base_delay_ms", 1000)
        if v < base:
            raise ValueError(
                f"queue_retry_max_delay_ms ({v}) must be >= queue_retry_base_delay_ms ({base})"
            )
        return v

    def get_max_upload_size_bytes(self) -> int:
        """Get maximum upload size in bytes."""
        return self.max_upload_size_mb * 1024 * 1024

    def display(self) -> str:
        """
        Get a formatted string of the effective configuration.

        Secrets are reported only as set/unset.

        Returns:
            Formatted configuration string
        """
        def secret(value: Optional[str]) -> str:
            return "set" if value else "unset"

        return f"""
Conversation Diagram Pipeline Configuration:
============================================
Audio Target Sample Rate: {self.audio_target_sample_rate} Hz
Audio Noise Floor: {self.audio_noise_floor}
Max Upload Size: {self.max_upload_size_mb} MB
Recognition Backend: {self.recognition_backend.value}
Recognition Language: {self.recognition_language}
Recognition Attempts: {self.recognition_max_attempts} (backoff {self.recognition_base_delay_ms}-{self.recognition_max_delay_ms} ms)
Whisper Model Size: {self.whisper_model_size.value}
Azure Speech Key: {secret(self.azure_speech_key)}
Queue Max Concurrent: {self.queue_max_concurrent}
Queue Max Retries: {self.queue_max_retries} (backoff {self.queue_retry_base_delay_ms}-{self.queue_retry_max_delay_ms} ms)
Queue Processing Timeout: {self.queue_processing_timeout_seconds} s
Diagram Provider: {self.diagram_provider.value}
Diagram Model: {self.openai_model}
OpenAI API Key: {secret(self.openai_api_key)}
Azure OpenAI API Key: {secret(self.azure_openai_api_key)}
Storage Backend: {self.storage_backend.value}
SQLite Path: {self.sqlite_path}
API Host: {self.api_host}
API Port: {self.api_port}
Log Level: {self.log_level.value}
Job Cleanup Max Age: {self.job_cleanup_max_age_hours} hours
"""


# Global settings instance, read by the API bootstrap only.
# Components receive their configuration explicitly.
settings = Settings()
