"""
Exception types for the live transcription pipeline.

Only pipeline-wide failures (device access, missing credentials) block a
session from starting. Everything else is contained to the chunk it affects.
"""

from typing import Optional


class TranscriptError(Exception):
    """Base class for all pipeline errors."""


class DeviceError(TranscriptError):
    """The audio capture device could not be opened or started."""


class ConfigurationError(TranscriptError):
    """Missing credentials or an unusable configuration."""


class TranscriptionTimeout(TranscriptError):
    """A transcription request timed out. Never shown to the user."""


class TranscriptionServiceError(TranscriptError):
    """The transcription service rejected a request or sent an unusable reply."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429
