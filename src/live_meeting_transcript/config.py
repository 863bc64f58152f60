"""Session configuration resolved from the environment."""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field

from .errors import ConfigurationError

DEFAULT_ENDPOINT = "https://api.openai.com/v1/audio/transcriptions"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _api_key() -> str:
    return os.getenv("TRANSCRIPTION_API_KEY") or os.getenv("OPENAI_API_KEY") or ""


class SessionConfig(BaseModel):
    api_key: str = Field(default_factory=_api_key)
    endpoint: str = Field(default_factory=lambda: os.getenv("TRANSCRIPTION_ENDPOINT", DEFAULT_ENDPOINT))
    model: str = Field(default_factory=lambda: os.getenv("TRANSCRIPTION_MODEL", "whisper-1"))
    language: str = Field(default_factory=lambda: os.getenv("TRANSCRIPT_LANGUAGE", "en"))

    chunk_duration_ms: int = Field(
        default_factory=lambda: int(os.getenv("CHUNK_DURATION_MS", "5000")), ge=1000, le=60000
    )
    chunk_overlap_ms: int = Field(default=500, ge=0, le=5000)
    min_chunk_duration_ms: int = Field(default=1000, ge=0)
    max_chunk_duration_ms: int = Field(default=15000, ge=1000)
    use_smart_chunking: bool = Field(default_factory=lambda: _env_flag("SMART_CHUNKING", "true"))

    max_concurrent: int = Field(
        default_factory=lambda: int(os.getenv("MAX_CONCURRENT_REQUESTS", "4")), ge=1, le=32
    )
    request_timeout: float = Field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT_SEC", "180")), gt=0
    )
    min_payload_bytes: int = Field(default=4000, ge=0)

    sample_rate: int = Field(default_factory=lambda: int(os.getenv("SAMPLE_RATE", "16000")), ge=8000)
    mic_device: Optional[int] = None
    speech_threshold: float = Field(default=0.15, ge=0.0, le=1.0)
    silence_threshold: float = Field(default=0.05, ge=0.0, le=1.0)

    def require_credentials(self) -> None:
        """Raise if the transcription service cannot be authenticated."""
        if not self.api_key.strip():
            raise ConfigurationError(
                "Transcription API key missing (set TRANSCRIPTION_API_KEY or OPENAI_API_KEY)"
            )
        if not self.endpoint.strip():
            raise ConfigurationError("Transcription endpoint missing")


def load_config(**overrides) -> SessionConfig:
    """Build a config from the environment; explicit non-None overrides win."""
    values = {key: value for key, value in overrides.items() if value is not None}
    return SessionConfig(**values)
