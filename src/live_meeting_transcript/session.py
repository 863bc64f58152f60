"""
Live transcription session.

Wires the shared microphone source, the voice activity detector, the chunker,
the transcription orchestrator and speaker suggestion together. Capture-side
components post messages on one queue; a single main-loop thread consumes
them, so session state only changes on that thread.
"""

import logging
import queue
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .audio_capture import AudioCapture
from .chunker import AudioChunker, SmartAudioChunker
from .config import SessionConfig, load_config
from .content_filter import ContentFilter
from .diarization import (
    DiarizationResult,
    auto_assign_speakers,
    batch_update_speakers,
    confirm_speaker_assignment,
    diarize_segments,
    reject_speaker_suggestion,
    suggest_speaker,
)
from .orchestrator import TranscriptionOrchestrator
from .speaker_matcher import SpeakerMatcher
from .transcription_client import TranscriptionClient
from .types import (
    AudioChunk,
    AudioLevel,
    ChunkFailed,
    ChunkReady,
    SegmentReady,
    SpeakerProfile,
    SpeechEnded,
    SpeechStarted,
    TranscriptSegment,
)
from .vad import VoiceActivityDetector

logger = logging.getLogger(__name__)

_STOP = object()


class LiveTranscriptSession:
    """One recording session from start() to stop()/cancel()."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        client=None,
        audio_capture: Optional[AudioCapture] = None,
        on_segment: Optional[Callable[[TranscriptSegment], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        speakers: Optional[Sequence[SpeakerProfile]] = None,
        participant_ids: Optional[Iterable[str]] = None,
        matcher: Optional[SpeakerMatcher] = None,
        content_filter: Optional[ContentFilter] = None,
    ):
        """
        Args:
            config: Session settings; resolved from the environment if None.
            client: Transcription client. One is built from ``config`` on start() if None.
            audio_capture: Shared microphone source. Built from ``config`` if None.
            on_segment: Receives every accepted segment.
            on_error: Receives user-visible error messages.
            speakers: Known speaker profiles used for suggestions.
            participant_ids: Speakers expected in this meeting.
            matcher: Speaker matcher (and its correction store).
            content_filter: Quality gates; defaults to the built-in rules.
        """
        self.config = config or load_config()
        self.client = client
        self.audio_capture = audio_capture
        self.on_segment = on_segment
        self.on_error = on_error
        self.speakers: List[SpeakerProfile] = list(speakers or [])
        self.participant_ids: List[str] = list(participant_ids or [])
        self.matcher = matcher or SpeakerMatcher()
        self.content_filter = content_filter or ContentFilter()

        self.events: queue.Queue = queue.Queue()
        self.vad: Optional[VoiceActivityDetector] = None
        self.chunker: Optional[AudioChunker] = None
        self.orchestrator: Optional[TranscriptionOrchestrator] = None

        # State
        self.is_running = False
        self.is_paused = False
        self.is_speaking = False
        self.last_error: Optional[str] = None
        self.session_start: Optional[float] = None
        self._owns_client = False

        self._segments: List[TranscriptSegment] = []
        self._segments_lock = threading.Lock()
        self._outstanding: Dict[str, object] = {}
        self._outstanding_cond = threading.Condition()
        self._loop_thread: Optional[threading.Thread] = None

    @property
    def segments(self) -> List[TranscriptSegment]:
        """Accepted segments ordered by start time."""
        with self._segments_lock:
            return sorted(self._segments, key=lambda s: s.start_time_ms)

    def start(self) -> None:
        """Start capturing. Raises ConfigurationError or DeviceError; nothing is left running on failure."""
        if self.is_running:
            logger.warning("Session already running")
            return

        self.config.require_credentials()

        if self.client is None:
            self.client = TranscriptionClient(
                self.config.api_key,
                self.config.endpoint,
                self.config.model,
                timeout=self.config.request_timeout,
            )
            self._owns_client = True

        if self.audio_capture is None:
            self.audio_capture = AudioCapture(
                sample_rate=self.config.sample_rate,
                device=self.config.mic_device,
            )

        self.events = queue.Queue()
        self.orchestrator = TranscriptionOrchestrator(
            self.client,
            content_filter=self.content_filter,
            max_concurrent=self.config.max_concurrent,
            request_timeout=self.config.request_timeout,
            min_payload_bytes=self.config.min_payload_bytes,
            language=self.config.language,
            on_error=self._report_error,
        )
        self.vad = VoiceActivityDetector(
            speech_threshold=self.config.speech_threshold,
            silence_threshold=self.config.silence_threshold,
            sample_rate=self.config.sample_rate,
            events=self.events,
        )
        self.chunker = self._build_chunker()

        try:
            self.vad.start(self.audio_capture)
            self.chunker.start(self.audio_capture)
        except Exception as e:
            logger.error(f"Failed to start session: {e}")
            self.chunker.stop()
            self.vad.stop()
            self._close_client()
            raise

        self.is_running = True
        self.is_paused = False
        self.is_speaking = False
        self.last_error = None
        self.session_start = time.time()

        self._loop_thread = threading.Thread(target=self._event_loop, name="session-loop", daemon=True)
        self._loop_thread.start()
        logger.info(
            f"Live session started ({self.config.chunk_duration_ms} ms chunks, "
            f"{'smart' if self.config.use_smart_chunking else 'fixed'} chunking, "
            f"max {self.config.max_concurrent} concurrent requests)"
        )

    def _build_chunker(self) -> AudioChunker:
        options = dict(
            chunk_duration=self.config.chunk_duration_ms,
            overlap=self.config.chunk_overlap_ms,
            min_chunk_duration=self.config.min_chunk_duration_ms,
            max_chunk_duration=self.config.max_chunk_duration_ms,
            sample_rate=self.config.sample_rate,
            events=self.events,
        )
        if self.config.use_smart_chunking:
            return SmartAudioChunker(
                speech_threshold=self.config.speech_threshold,
                silence_threshold=self.config.silence_threshold,
                **options,
            )
        return AudioChunker(**options)

    def _event_loop(self):
        while True:
            message = self.events.get()
            if message is _STOP:
                break
            try:
                self._handle(message)
            except Exception as e:
                logger.error(f"Error handling {type(message).__name__}: {e}")

    def _handle(self, message) -> None:
        if isinstance(message, ChunkReady):
            if self.is_paused:
                logger.debug(f"Paused, dropping chunk {message.chunk.id}")
                return
            self._submit(message.chunk)
        elif isinstance(message, SegmentReady):
            if message.segment is not None:
                self._accept_segment(message.segment)
        elif isinstance(message, ChunkFailed):
            self._report_error(f"Chunk {message.index} could not be processed: {message.error}")
        elif isinstance(message, SpeechStarted):
            self.is_speaking = True
        elif isinstance(message, SpeechEnded):
            self.is_speaking = False
            logger.debug(f"Speech ended after {message.duration_ms:.0f} ms")
        elif isinstance(message, threading.Event):
            message.set()
        elif isinstance(message, AudioLevel):
            pass
        else:
            logger.warning(f"Unknown message: {message!r}")

    def _submit(self, chunk: AudioChunk) -> None:
        future = self.orchestrator.submit(chunk)
        with self._outstanding_cond:
            self._outstanding[chunk.id] = future
        future.add_done_callback(lambda f, chunk_id=chunk.id: self._on_transcribed(chunk_id, f))

    def _on_transcribed(self, chunk_id: str, future) -> None:
        try:
            segment = future.result()
            if segment is not None:
                self.events.put(SegmentReady(chunk_id=chunk_id, segment=segment))
        finally:
            with self._outstanding_cond:
                self._outstanding.pop(chunk_id, None)
                self._outstanding_cond.notify_all()

    def _accept_segment(self, segment: TranscriptSegment) -> None:
        try:
            segment = suggest_speaker(segment, self.speakers, self.matcher, self.participant_ids)
        except Exception as e:
            logger.error(f"Speaker suggestion failed for {segment.id}: {e}")

        with self._segments_lock:
            self._segments.append(segment)

        if self.on_segment:
            try:
                self.on_segment(segment)
            except Exception as e:
                logger.error(f"Segment callback failed: {e}")

    def _report_error(self, message: str) -> None:
        self.last_error = message
        if self.on_error:
            try:
                self.on_error(message)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no chunk is awaiting transcription. False on timeout."""
        with self._outstanding_cond:
            return self._outstanding_cond.wait_for(lambda: not self._outstanding, timeout)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Flush the last chunk and shut down.

        With ``wait`` the outstanding requests may finish (up to ``timeout``
        seconds); anything still pending afterwards is cancelled.
        """
        if not self.is_running:
            return
        logger.info("Stopping live session...")
        self.is_running = False

        final_chunk = self.chunker.stop()
        if final_chunk is not None and not self.is_paused:
            self._submit(final_chunk)
        self.vad.stop()

        # Let the loop submit chunks that were already queued
        barrier = threading.Event()
        self.events.put(barrier)
        barrier.wait(timeout=5.0)

        if wait and not self.wait_idle(timeout):
            logger.warning("Timed out waiting for pending transcriptions")
        self._shutdown()

    def cancel(self) -> None:
        """Tear down at once, discarding buffered audio and pending requests."""
        if not self.is_running:
            return
        logger.info("Cancelling live session...")
        self.is_running = False
        self.chunker.stop()
        self.vad.stop()
        self._shutdown()

    def _shutdown(self):
        cancelled = self.orchestrator.close(close_client=False)
        if cancelled:
            logger.info(f"Discarded {cancelled} pending chunks")
        self._close_client()

        self.events.put(_STOP)
        if self._loop_thread:
            self._loop_thread.join(timeout=5.0)
            self._loop_thread = None

        self.is_speaking = False
        self.is_paused = False
        stats = self.orchestrator.get_stats()
        logger.info(
            f"Session finished: {len(self._segments)} segments, "
            f"{stats['admitted']} requests, {stats['failed']} failed"
        )

    def _close_client(self):
        if self._owns_client and self.client is not None:
            try:
                self.client.close()
            except Exception as e:
                logger.error(f"Error closing transcription client: {e}")
            self.client = None
            self._owns_client = False

    def pause(self) -> None:
        if not self.is_running or self.is_paused:
            return
        self.is_paused = True
        self.chunker.set_paused(True)
        logger.info("Session paused")

    def resume(self) -> None:
        if not self.is_running or not self.is_paused:
            return
        self.is_paused = False
        self.chunker.set_paused(False)
        logger.info("Session resumed")

    def force_emit(self) -> Optional[AudioChunk]:
        """Cut the current chunk now instead of waiting for the boundary."""
        if not self.is_running or self.is_paused:
            return None
        return self.chunker.force_emit()

    def get_state(self) -> Dict:
        vad_state = self.vad.get_state() if self.vad else None
        pending = self.orchestrator.pending_count if self.orchestrator else 0
        with self._segments_lock:
            segment_count = len(self._segments)
        return {
            'is_recording': self.is_running,
            'is_paused': self.is_paused,
            'is_processing': pending > 0,
            'is_speaking': self.is_speaking,
            'audio_level': vad_state.audio_level if vad_state else 0.0,
            'duration_sec': time.time() - self.session_start if self.session_start and self.is_running else 0.0,
            'pending_chunks': pending,
            'segment_count': segment_count,
            'last_error': self.last_error,
        }

    def get_stats(self) -> Dict:
        stats = self.get_state()
        if self.orchestrator:
            stats['requests'] = self.orchestrator.get_stats()
        if self.audio_capture:
            stats['audio'] = self.audio_capture.is_healthy()
        return stats

    def _find_segment(self, segment_id: str) -> Optional[int]:
        for index, segment in enumerate(self._segments):
            if segment.id == segment_id:
                return index
        return None

    def confirm_speaker(self, segment_id: str, speaker_id: str) -> Optional[TranscriptSegment]:
        """Confirm the speaker of a segment; overrides teach the matcher."""
        with self._segments_lock:
            index = self._find_segment(segment_id)
            if index is None:
                logger.warning(f"Unknown segment {segment_id}")
                return None
            segment = confirm_speaker_assignment(self._segments[index], speaker_id, self.matcher)
            self._segments[index] = segment
        return segment

    def reject_suggestion(self, segment_id: str) -> Optional[TranscriptSegment]:
        with self._segments_lock:
            index = self._find_segment(segment_id)
            if index is None:
                logger.warning(f"Unknown segment {segment_id}")
                return None
            segment = reject_speaker_suggestion(self._segments[index])
            self._segments[index] = segment
        return segment

    def batch_update_speakers(self, updates: Dict[str, str]) -> List[TranscriptSegment]:
        """Confirm speakers for many segments at once (``segment_id -> speaker_id``)."""
        with self._segments_lock:
            self._segments = batch_update_speakers(self._segments, updates, self.matcher)
            return sorted(self._segments, key=lambda s: s.start_time_ms)

    def auto_assign_speakers(self) -> List[TranscriptSegment]:
        """Suggest speakers for open segments from what was already confirmed."""
        with self._segments_lock:
            self._segments = auto_assign_speakers(self._segments)
            return sorted(self._segments, key=lambda s: s.start_time_ms)

    def rediarize(self) -> DiarizationResult:
        """Re-run speaker suggestion over the whole transcript."""
        with self._segments_lock:
            result = diarize_segments(self._segments, self.speakers, self.matcher, self.participant_ids)
            self._segments = list(result.segments)
        return result

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
