"""
Data types shared across the live transcription pipeline.

Chunks and segments are immutable; stages hand them on instead of mutating them.
Pipeline messages travel over a single ``queue.Queue`` from the capture side
(VAD, chunker, orchestrator completions) to the session's main loop.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AudioChunk:
    """A bounded slice of captured audio, transcribable on its own."""

    id: str
    payload: bytes
    start_time_ms: float
    end_time_ms: float
    index: int = 0
    mime_type: str = "audio/wav"

    @property
    def duration_ms(self) -> float:
        return self.end_time_ms - self.start_time_ms

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True)
class VADState:
    """Snapshot of the voice activity detector."""

    is_speaking: bool = False
    speech_duration_ms: float = 0.0
    silence_duration_ms: float = 0.0
    audio_level: float = 0.0
    speech_probability: float = 0.0


@dataclass(frozen=True)
class TranscriptSegment:
    """An accepted transcription result.

    ``speaker_id`` is only set by an explicit user confirmation (or a prior
    persisted assignment). ``suggested_speaker_id`` and ``confidence`` are
    advisory and come from speaker matching.
    """

    id: str
    text: str
    start_time_ms: float
    end_time_ms: float
    speaker_id: Optional[str] = None
    suggested_speaker_id: Optional[str] = None
    confidence: float = 0.0
    confirmed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SpeakerProfile:
    """Known speaker, owned by an external store."""

    id: str
    name: str
    color: str = "#9CA3AF"
    email: Optional[str] = None
    meeting_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpeakerProfile":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            color=data.get("color", "#9CA3AF"),
            email=data.get("email"),
            meeting_count=int(data.get("meeting_count", data.get("meetingCount", 0))),
        )


@dataclass(frozen=True)
class SpeakerMatch:
    """Result of matching a detected name against known speakers."""

    speaker_id: str
    speaker_name: str
    confidence: float
    reason: str  # exact_name | fuzzy_name | context | user_assigned


@dataclass(frozen=True)
class Correction:
    """A user override of a suggested speaker assignment."""

    original_name: str
    corrected_speaker_id: str
    context_snippet: str = ""


@dataclass(frozen=True)
class TranscriptionResult:
    """Parsed response of the transcription service."""

    text: str
    confidence: Optional[float] = None


# Pipeline messages


@dataclass(frozen=True)
class SpeechStarted:
    at_ms: float


@dataclass(frozen=True)
class SpeechEnded:
    at_ms: float
    duration_ms: float


@dataclass(frozen=True)
class AudioLevel:
    level: float
    probability: float


@dataclass(frozen=True)
class ChunkReady:
    chunk: AudioChunk


@dataclass(frozen=True)
class ChunkFailed:
    index: int
    error: str


@dataclass(frozen=True)
class SegmentReady:
    chunk_id: str
    segment: Optional[TranscriptSegment]
