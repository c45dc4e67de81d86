"""Worker configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Worker settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Worker identity and shared-secret auth for the HTTP surface
    WORKER_ID: str = "meetbot-worker-1"
    WORKER_API_SECRET: str = ""

    # Control plane (Redis pub/sub + cache); empty URL starts in memory mode
    REDIS_URL: str = "redis://localhost:6379/0"
    CONTROL_PLANE_KEY_PREFIX: str = "meetbot:"
    CONTROL_PLANE_CONNECT_TIMEOUT: float = 5.0
    CONTROL_PLANE_OP_TIMEOUT: float = 3.0

    # Monitoring
    SENTRY_DSN: str = ""

    # Capacity limits
    MAX_CONCURRENT_BOTS: int = 10
    MAX_BROWSER_INSTANCES: int = 5
    MEMORY_LIMIT_MB: int = 4096

    # Browser pool
    POOL_ACQUIRE_TIMEOUT_SECONDS: float = 30.0
    POOL_POLL_INTERVAL_SECONDS: float = 0.1
    POOL_CLEANUP_INTERVAL_SECONDS: float = 300.0
    BROWSER_HEADLESS: bool = True

    # Admission / memory pressure
    RESOURCE_CHECK_INTERVAL_SECONDS: float = 30.0
    STALE_SESSION_MINUTES: int = 30

    # Session step timeouts (seconds)
    CLIENT_OPEN_TIMEOUT: float = 30.0
    NAVIGATION_TIMEOUT: float = 60.0
    JOIN_TIMEOUT: float = 90.0
    DRIVER_CALL_TIMEOUT: float = 15.0
    TERMINATE_TIMEOUT_SECONDS: float = 30.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 60.0

    # Audio acquisition
    AUDIO_PROBE_ATTEMPTS: int = 20
    AUDIO_PROBE_INTERVAL_SECONDS: float = 3.0
    CHUNK_DRAIN_INTERVAL_SECONDS: float = 1.0

    # Recording / transcript
    RECORDINGS_DIR: str = "recordings"
    MIN_TRANSCRIPT_CHARS: int = 3
    STATUS_HISTORY_SIZE: int = 200

    # Meeting client
    BOT_DISPLAY_NAME: str = "Meeting Recorder"
    END_DETECTION_ENABLED: bool = False
    END_DETECTION_INTERVAL_SECONDS: float = 10.0

    # Transcription (OpenAI audio API)
    OPENAI_API_KEY: str = ""
    TRANSCRIPTION_MODEL: str = "whisper-1"
    TRANSCRIPTION_LANGUAGE: str = "en"
    TRANSCRIPTION_TIMEOUT: float = 300.0

    # Transcript persistence (main server)
    MAIN_SERVER_URL: str = ""
    MAIN_SERVER_SECRET: str = ""
    PERSISTENCE_TIMEOUT: float = 30.0

    # Lifecycle webhook notifications
    WEBHOOK_URL: str = ""
    WEBHOOK_TIMEOUT: float = 10.0

    @property
    def memory_limit_bytes(self) -> int:
        """Memory ceiling in bytes derived from MEMORY_LIMIT_MB."""
        return self.MEMORY_LIMIT_MB * 1024 * 1024

    def recordings_path(self) -> Path:
        """Return the recordings directory, creating it if missing."""
        path = Path(self.RECORDINGS_DIR)
        path.mkdir(parents=True, exist_ok=True)
        return path


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
