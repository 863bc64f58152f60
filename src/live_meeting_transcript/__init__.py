"""
Live Meeting Transcription

Captures a live microphone stream during a meeting and turns it into an
ordered, hallucination-filtered transcript with best-effort speaker
suggestions, while keeping the number of simultaneous calls to the external
transcription service bounded.
"""

__version__ = "1.0.0"
__author__ = "Live Meeting Transcript Team"
__description__ = "Live meeting transcription with bounded-concurrency service calls"

from .audio_capture import AudioCapture
from .config import SessionConfig, load_config
from .errors import (
    ConfigurationError,
    DeviceError,
    TranscriptError,
    TranscriptionServiceError,
    TranscriptionTimeout,
)
from .logger import TranscriptionLogger
from .orchestrator import TranscriptionOrchestrator
from .session import LiveTranscriptSession
from .speaker_matcher import CorrectionStore, SpeakerMatcher
from .transcription_client import TranscriptionClient
from .types import AudioChunk, SpeakerProfile, TranscriptSegment

__all__ = [
    "AudioCapture",
    "AudioChunk",
    "ConfigurationError",
    "CorrectionStore",
    "DeviceError",
    "LiveTranscriptSession",
    "SessionConfig",
    "SpeakerMatcher",
    "SpeakerProfile",
    "TranscriptError",
    "TranscriptSegment",
    "TranscriptionClient",
    "TranscriptionLogger",
    "TranscriptionOrchestrator",
    "TranscriptionServiceError",
    "TranscriptionTimeout",
    "load_config",
]
