"""
Slices the continuous microphone stream into independently transcribable chunks.

Boundaries run on the stream clock (samples received), not wall time, so a
slow consumer never shifts chunk timestamps. Each chunk carries a short
overlap from its predecessor to soften mid-word cuts.
"""

import io
import logging
import queue
import threading
import time
from typing import List, Optional

import numpy as np
import soundfile as sf

from .types import AudioChunk, ChunkFailed, ChunkReady
from .vad import spectrum_levels, weighted_level

logger = logging.getLogger(__name__)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode mono float samples as 16-bit PCM WAV."""
    buffer = io.BytesIO()
    data = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    sf.write(buffer, data, sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


class AudioChunker:
    """Emits a chunk every ``chunk_duration`` ms of captured audio."""

    OWNER = "chunker"

    def __init__(
        self,
        chunk_duration: float = 5000.0,
        overlap: float = 500.0,
        min_chunk_duration: float = 1000.0,
        max_chunk_duration: float = 15000.0,
        sample_rate: int = 16000,
        events: Optional[queue.Queue] = None,
    ):
        """
        Args:
            chunk_duration: Target chunk length in ms.
            overlap: Audio (ms) repeated at the start of the following chunk.
            min_chunk_duration: Shorter chunks are held back, except on stop().
            max_chunk_duration: Hard limit for boundaries that get extended.
            sample_rate: Sample rate of the fed audio, replaced by the source's on start().
            events: Queue receiving ChunkReady / ChunkFailed messages.
        """
        self.chunk_duration = chunk_duration
        self.overlap = overlap
        self.min_chunk_duration = min_chunk_duration
        self.max_chunk_duration = max_chunk_duration
        self.sample_rate = sample_rate
        self.events = events

        self.source = None
        self._token: Optional[int] = None
        self._is_running = False
        self._paused = False
        self.lock = threading.RLock()
        self._reset_buffers()

    def _reset_buffers(self):
        self._buffer: List[np.ndarray] = []
        self._buffered_samples = 0
        self._since_emit_samples = 0
        self._stream_samples = 0
        self._chunk_start_ms = 0.0
        self._index = 0

    def _ms_to_samples(self, duration_ms: float) -> int:
        return int(self.sample_rate * duration_ms / 1000.0)

    def _samples_to_ms(self, samples: int) -> float:
        return samples * 1000.0 / self.sample_rate

    def start(self, source) -> None:
        if self._is_running:
            raise RuntimeError("Chunker is already running")

        self.sample_rate = source.sample_rate
        with self.lock:
            self._reset_buffers()
        source.acquire(self.OWNER)
        self.source = source
        self._is_running = True
        self._token = source.subscribe(self.feed)
        logger.info(f"{type(self).__name__} started ({self.chunk_duration:.0f} ms chunks)")

    def stop(self) -> Optional[AudioChunk]:
        """Stop and flush whatever audio is buffered as one final chunk."""
        if not self._is_running:
            return None

        self._is_running = False
        if self.source is not None and self._token is not None:
            self.source.unsubscribe(self._token)
        self._token = None

        with self.lock:
            final_chunk = self._emit(final=True)

        if self.source is not None:
            self.source.release(self.OWNER)
            self.source = None

        logger.info(f"{type(self).__name__} stopped after {self._index} chunks")
        return final_chunk

    def force_emit(self) -> Optional[AudioChunk]:
        """Emit the current audio now; the schedule restarts only if a chunk went out."""
        if not self._is_running:
            return None
        with self.lock:
            chunk = self._emit(final=False)
        if chunk:
            self._publish(ChunkReady(chunk))
        return chunk

    def is_active(self) -> bool:
        return self._is_running

    def set_paused(self, paused: bool) -> None:
        self._paused = paused

    def current_duration_ms(self) -> float:
        with self.lock:
            return self._samples_to_ms(self._buffered_samples)

    def feed(self, samples: np.ndarray) -> None:
        """Append a captured block; emits when a boundary is reached."""
        if not self._is_running or self._paused or len(samples) == 0:
            return

        chunk = None
        with self.lock:
            block = np.asarray(samples, dtype=np.float32)
            self._buffer.append(block)
            self._buffered_samples += len(block)
            self._since_emit_samples += len(block)
            self._stream_samples += len(block)
            self._observe(block)
            if self._boundary_due():
                chunk = self._emit(final=False)

        if chunk:
            self._publish(ChunkReady(chunk))

    def _observe(self, block: np.ndarray) -> None:
        """Hook for variants that track the signal."""

    def _boundary_due(self) -> bool:
        return self._since_emit_samples >= self._ms_to_samples(self.chunk_duration)

    def _emit(self, final: bool) -> Optional[AudioChunk]:
        duration = self._samples_to_ms(self._buffered_samples)

        # Skip if chunk is too short (unless final)
        if not final and duration < self.min_chunk_duration:
            return None
        if self._buffered_samples == 0:
            return None
        # Nothing new beyond the overlap carried from the previous chunk
        if final and self._since_emit_samples == 0:
            return None

        audio = np.concatenate(self._buffer)
        end_ms = self._samples_to_ms(self._stream_samples)
        index = self._index
        self._index += 1
        self._since_emit_samples = 0

        try:
            payload = encode_wav(audio, self.sample_rate)
        except Exception as e:
            logger.error(f"Failed to encode chunk {index}: {e}")
            self._buffer = []
            self._buffered_samples = 0
            self._chunk_start_ms = end_ms
            self._publish(ChunkFailed(index=index, error=f"Audio encoding failed: {e}"))
            return None

        chunk = AudioChunk(
            id=f"chunk-{int(time.time() * 1000)}-{index}",
            payload=payload,
            start_time_ms=self._chunk_start_ms,
            end_time_ms=end_ms,
            index=index,
        )

        # Keep the tail as the head of the next chunk
        overlap_samples = self._ms_to_samples(self.overlap)
        if not final and overlap_samples > 0:
            tail = audio[-overlap_samples:]
            self._buffer = [tail]
            self._buffered_samples = len(tail)
            self._chunk_start_ms = end_ms - self._samples_to_ms(len(tail))
        else:
            self._buffer = []
            self._buffered_samples = 0
            self._chunk_start_ms = end_ms

        logger.debug(
            f"Chunk {chunk.id}: {chunk.start_time_ms:.0f}-{chunk.end_time_ms:.0f} ms, "
            f"{chunk.size} bytes{' (final)' if final else ''}"
        )
        return chunk

    def _publish(self, message) -> None:
        if self.events is not None:
            self.events.put(message)


class SmartAudioChunker(AudioChunker):
    """Chunker that aligns boundaries with pauses in speech.

    A chunk is cut early once the speaker has been silent long enough, and
    the regular boundary is postponed while speech is still going on (up to
    ``max_chunk_duration``).
    """

    def __init__(
        self,
        speech_threshold: float = 0.15,
        silence_threshold: float = 0.05,
        silence_duration_for_chunk: float = 800.0,
        smoothing_factor: float = 0.8,
        fft_size: int = 256,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.speech_threshold = speech_threshold
        self.silence_threshold = silence_threshold
        self.silence_duration_for_chunk = silence_duration_for_chunk
        self.smoothing_factor = smoothing_factor
        self.fft_size = fft_size
        self._smoothed_level = 0.0
        self._silence_ms = 0.0

    def start(self, source) -> None:
        self._smoothed_level = 0.0
        self._silence_ms = 0.0
        super().start(source)

    def _observe(self, block: np.ndarray) -> None:
        raw_level = weighted_level(spectrum_levels(block, self.fft_size))
        self._smoothed_level = self._smoothed_level * self.smoothing_factor + raw_level * (1 - self.smoothing_factor)

        if self._smoothed_level < self.silence_threshold:
            self._silence_ms += self._samples_to_ms(len(block))
        elif self._smoothed_level >= self.speech_threshold:
            self._silence_ms = 0.0

    def _boundary_due(self) -> bool:
        new_audio_ms = self._samples_to_ms(self._since_emit_samples)

        if self._silence_ms >= self.silence_duration_for_chunk:
            self._silence_ms = 0.0
            if new_audio_ms >= self.min_chunk_duration:
                return True

        if new_audio_ms >= self.chunk_duration:
            still_speaking = self._smoothed_level >= self.silence_threshold
            if still_speaking and self.current_duration_ms() < self.max_chunk_duration:
                return False
            return True

        return False
