"""
Voice activity detection for the live microphone stream.

Each monitoring tick turns the latest audio frame into a frequency-weighted
loudness score, smooths it, and runs a hysteresis state machine so that
short noise bursts do not flip the speaking state.
"""

import logging
import queue
import threading
import time
from typing import List, Optional, Tuple

import numpy as np

from .types import AudioLevel, SpeechEnded, SpeechStarted, VADState

logger = logging.getLogger(__name__)

DEFAULT_SPEECH_THRESHOLD = 0.15
DEFAULT_SILENCE_THRESHOLD = 0.05


def voice_frequency_weights(bin_count: int, sample_rate: int) -> np.ndarray:
    """Per-bin weights favouring formant and fundamental voice frequencies."""
    bin_width = sample_rate / (bin_count * 2)
    freqs = np.arange(bin_count) * bin_width
    weights = np.select(
        [freqs < 85, freqs < 300, freqs < 3400, freqs < 6000],
        [0.2, 0.8, 1.0, 0.5],
        default=0.1,
    )
    return weights.astype(np.float32)


def spectrum_levels(
    samples: np.ndarray,
    fft_size: int = 512,
    min_db: float = -100.0,
    max_db: float = -30.0,
) -> np.ndarray:
    """Normalized [0, 1] magnitude spectrum of the most recent ``fft_size`` samples."""
    frame = np.asarray(samples, dtype=np.float32)[-fft_size:]
    if frame.size < fft_size:
        frame = np.pad(frame, (fft_size - frame.size, 0))
    windowed = frame * np.blackman(fft_size)
    magnitude = np.abs(np.fft.rfft(windowed))[: fft_size // 2] / fft_size
    db = 20.0 * np.log10(np.maximum(magnitude, 1e-12))
    return np.clip((db - min_db) / (max_db - min_db), 0.0, 1.0)


def weighted_level(spectrum: np.ndarray, weights: Optional[np.ndarray] = None) -> float:
    if spectrum.size == 0:
        return 0.0
    if weights is None:
        return float(np.mean(spectrum))
    weight_sum = float(np.sum(weights))
    if weight_sum <= 0:
        return 0.0
    return float(np.sum(spectrum * weights) / weight_sum)


class VoiceActivityDetector:
    """Speech/silence classifier with smoothed level and hysteresis."""

    OWNER = "vad"

    def __init__(
        self,
        speech_threshold: float = DEFAULT_SPEECH_THRESHOLD,
        silence_threshold: float = DEFAULT_SILENCE_THRESHOLD,
        min_speech_duration: float = 200.0,
        min_silence_duration: float = 500.0,
        smoothing_factor: float = 0.8,
        fft_size: int = 512,
        sample_rate: int = 16000,
        events: Optional[queue.Queue] = None,
        emit_levels: bool = False,
    ):
        self.speech_threshold = speech_threshold
        self.silence_threshold = silence_threshold
        self.min_speech_duration = min_speech_duration
        self.min_silence_duration = min_silence_duration
        self.smoothing_factor = smoothing_factor
        self.fft_size = fft_size
        self.sample_rate = sample_rate
        self.events = events
        self.emit_levels = emit_levels
        self.set_thresholds(speech_threshold, silence_threshold)

        self.weights = voice_frequency_weights(fft_size // 2, sample_rate)

        # Monitoring
        self.source = None
        self._token: Optional[int] = None
        self._blocks: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

        self._reset_state()

    def _reset_state(self):
        self._is_speaking = False
        self._speech_duration = 0.0
        self._silence_duration = 0.0
        self._smoothed_level = 0.0
        self._speech_probability = 0.0
        self._speech_start = 0.0
        self._elapsed = 0.0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, source) -> None:
        """Start monitoring ``source`` (an AudioCapture). Device errors propagate."""
        if self.is_running:
            logger.warning("VAD already running")
            return

        self.sample_rate = source.sample_rate
        self.weights = voice_frequency_weights(self.fft_size // 2, self.sample_rate)
        self._reset_state()
        self._blocks = queue.Queue()

        source.acquire(self.OWNER)
        self.source = source
        self._token = source.subscribe(self._blocks.put)

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._monitor, name="vad-monitor", daemon=True)
        self._thread.start()
        logger.info("Voice activity detection started")

    def stop(self) -> None:
        """Stop monitoring, closing any open speech span first."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

        if self.source is not None and self._token is not None:
            self.source.unsubscribe(self._token)
        self._token = None

        with self._lock:
            messages = []
            if self._is_speaking:
                duration = self._elapsed - self._speech_start
                self._is_speaking = False
                messages.append(SpeechEnded(at_ms=self._elapsed, duration_ms=duration))
        self._publish(messages)

        if self.source is not None:
            self.source.release(self.OWNER)
            self.source = None

        with self._lock:
            self._reset_state()
        logger.info("Voice activity detection stopped")

    def get_state(self) -> VADState:
        with self._lock:
            return VADState(
                is_speaking=self._is_speaking,
                speech_duration_ms=self._speech_duration,
                silence_duration_ms=self._silence_duration,
                audio_level=self._smoothed_level,
                speech_probability=self._speech_probability,
            )

    def set_thresholds(self, speech_threshold: float, silence_threshold: float) -> None:
        self.speech_threshold = max(0.0, min(1.0, speech_threshold))
        self.silence_threshold = max(0.0, min(1.0, silence_threshold))

    def _monitor(self):
        while not self._stop_event.is_set():
            try:
                block = self._blocks.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.process_block(block)
            except Exception as e:
                logger.error(f"VAD tick failed: {e}")

    def process_block(self, samples: np.ndarray) -> None:
        """One monitoring tick over a freshly captured block."""
        if len(samples) == 0:
            return
        raw_level = weighted_level(spectrum_levels(samples, self.fft_size), self.weights)
        delta_ms = len(samples) * 1000.0 / self.sample_rate
        self.update_level(raw_level, delta_ms)

    def update_level(self, raw_level: float, delta_ms: float) -> None:
        """Advance the state machine by ``delta_ms`` with a raw loudness reading."""
        messages = []
        with self._lock:
            self._elapsed += delta_ms
            now = self._elapsed

            self._smoothed_level = (
                self._smoothed_level * self.smoothing_factor
                + raw_level * (1 - self.smoothing_factor)
            )
            level = self._smoothed_level

            spread = self.speech_threshold - self.silence_threshold
            if spread > 0:
                probability = (level - self.silence_threshold) / spread
            else:
                probability = 1.0 if level >= self.speech_threshold else 0.0
            self._speech_probability = max(0.0, min(1.0, probability))

            if level >= self.speech_threshold:
                self._speech_duration += delta_ms
                self._silence_duration = 0.0
            elif level < self.silence_threshold:
                self._silence_duration += delta_ms
                # Confirmed silence clears stray loudness picked up while idle
                if not self._is_speaking and self._silence_duration >= self.min_silence_duration:
                    self._speech_duration = 0.0

            if self.emit_levels:
                messages.append(AudioLevel(level=level, probability=self._speech_probability))

            if not self._is_speaking:
                if self._speech_duration >= self.min_speech_duration:
                    self._is_speaking = True
                    self._speech_start = now - self._speech_duration
                    messages.append(SpeechStarted(at_ms=self._speech_start))
            elif self._silence_duration >= self.min_silence_duration:
                self._is_speaking = False
                duration = now - self._speech_start - self._silence_duration
                self._speech_duration = 0.0
                messages.append(SpeechEnded(at_ms=now, duration_ms=duration))

        self._publish(messages)

    def _publish(self, messages):
        if self.events is None:
            return
        for message in messages:
            self.events.put(message)


def thresholds_from_levels(levels: List[float]) -> Tuple[float, float]:
    """Derive (speech, silence) thresholds from ambient level samples."""
    if not levels:
        return DEFAULT_SPEECH_THRESHOLD, DEFAULT_SILENCE_THRESHOLD

    ordered = sorted(levels)
    median = ordered[len(ordered) // 2]
    p90 = ordered[int(len(ordered) * 0.9)]

    # Silence sits just above the ambient floor
    silence_threshold = min(0.1, median * 1.5)
    speech_threshold = max(silence_threshold + 0.05, min(0.3, p90 * 1.2))
    return speech_threshold, silence_threshold


def calibrate_vad(source, duration_ms: float = 2000.0) -> Tuple[float, float]:
    """Sample ambient level from ``source`` and return (speech, silence) thresholds."""
    levels_queue: queue.Queue = queue.Queue()
    vad = VoiceActivityDetector(events=levels_queue, emit_levels=True)

    logger.info(f"Calibrating VAD for {duration_ms:.0f} ms, please stay quiet...")
    vad.start(source)
    try:
        time.sleep(duration_ms / 1000.0)
    finally:
        vad.stop()

    levels = []
    while True:
        try:
            message = levels_queue.get_nowait()
        except queue.Empty:
            break
        if isinstance(message, AudioLevel):
            levels.append(message.level)

    speech_threshold, silence_threshold = thresholds_from_levels(levels)
    logger.info(
        f"Calibrated thresholds from {len(levels)} samples: "
        f"speech={speech_threshold:.3f}, silence={silence_threshold:.3f}"
    )
    return speech_threshold, silence_threshold
