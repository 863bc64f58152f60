"""
Pytest configuration and fixtures for Live Meeting Transcript tests.
"""

import pytest
import tempfile
import threading
import time
import os
import sys
import numpy as np

# Add src to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from live_meeting_transcript.audio_capture import AudioCapture
from live_meeting_transcript.chunker import encode_wav
from live_meeting_transcript.types import AudioChunk, SpeakerProfile, TranscriptionResult

SAMPLE_RATE = 16000


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def sample_audio_data():
    """Generate sample audio data for testing."""
    sample_rate = SAMPLE_RATE
    duration = 1.0  # 1 second
    frequency = 440  # A4 note

    t = np.linspace(0, duration, int(sample_rate * duration), False)
    audio_data = np.sin(2 * np.pi * frequency * t).astype(np.float32)

    return audio_data, sample_rate


@pytest.fixture
def noise():
    """White noise generator; sigma 0.3 reads as clear speech-level audio."""
    rng = np.random.default_rng(1234)

    def make(duration_ms=1000, sigma=0.3, sample_rate=SAMPLE_RATE):
        samples = int(sample_rate * duration_ms / 1000)
        return np.clip(rng.normal(0.0, sigma, samples), -1.0, 1.0).astype(np.float32)

    return make


@pytest.fixture
def make_chunk(noise):
    """Build AudioChunks with distinct voiced payloads."""
    counter = {'index': 0}

    def make(duration_ms=1000, sigma=0.3, payload=None, start_ms=None):
        index = counter['index']
        counter['index'] += 1
        if payload is None:
            payload = encode_wav(noise(duration_ms, sigma), SAMPLE_RATE)
        start = index * duration_ms if start_ms is None else start_ms
        return AudioChunk(
            id=f"chunk-test-{index}",
            payload=payload,
            start_time_ms=start,
            end_time_ms=start + duration_ms,
            index=index,
        )

    return make


@pytest.fixture
def silent_chunk():
    payload = encode_wav(np.zeros(SAMPLE_RATE, dtype=np.float32), SAMPLE_RATE)
    return AudioChunk(id="chunk-silent", payload=payload, start_time_ms=0, end_time_ms=1000)


class FakeStream:
    """Stands in for sounddevice.InputStream."""

    def __init__(self, callback=None, fail_on_start=False, **kwargs):
        self.callback = callback
        self.kwargs = kwargs
        self.fail_on_start = fail_on_start
        self.started = 0
        self.stopped = 0
        self.closed = 0

    def start(self):
        if self.fail_on_start:
            raise RuntimeError("device busy")
        self.started += 1

    def stop(self):
        self.stopped += 1

    def close(self):
        self.closed += 1


class FakeStreamFactory:
    def __init__(self, fail=False):
        self.fail = fail
        self.streams = []

    def __call__(self, **kwargs):
        stream = FakeStream(fail_on_start=self.fail, **kwargs)
        self.streams.append(stream)
        return stream


@pytest.fixture
def stream_factory():
    return FakeStreamFactory()


@pytest.fixture
def audio_source(stream_factory):
    return AudioCapture(sample_rate=SAMPLE_RATE, stream_factory=stream_factory)


@pytest.fixture
def broken_source():
    """Audio source whose device refuses to start."""
    return AudioCapture(sample_rate=SAMPLE_RATE, stream_factory=FakeStreamFactory(fail=True))


class FakeTranscriptionClient:
    """Transcription client whose calls can be held open until released."""

    def __init__(self, text="This is a test transcript", confidence=0.95, block=False, error=None, delay=0.0):
        self.text = text
        self.delay = delay
        self.confidence = confidence
        self.block = block
        self.error = error
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._gates = {}
        self._cond = threading.Condition()

    def _gate(self, payload):
        with self._cond:
            return self._gates.setdefault(payload, threading.Event())

    def transcribe(self, payload, language):
        gate = self._gate(payload)
        with self._cond:
            self.calls.append(payload)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self._cond.notify_all()
        try:
            if self.block:
                gate.wait(timeout=10.0)
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return TranscriptionResult(text=self.text, confidence=self.confidence)
        finally:
            with self._cond:
                self.active -= 1

    def wait_for_calls(self, count, timeout=5.0):
        with self._cond:
            return self._cond.wait_for(lambda: len(self.calls) >= count, timeout)

    def release(self, payload):
        self._gate(payload).set()

    def release_all(self):
        self.block = False
        with self._cond:
            gates = list(self._gates.values())
        for gate in gates:
            gate.set()

    def close(self):
        self.closed = True


@pytest.fixture
def fake_client():
    client = FakeTranscriptionClient()
    yield client
    client.release_all()


@pytest.fixture
def blocking_client():
    client = FakeTranscriptionClient(block=True)
    yield client
    client.release_all()


@pytest.fixture
def make_client():
    """Factory for FakeTranscriptionClients with custom behaviour."""
    clients = []

    def make(**kwargs):
        client = FakeTranscriptionClient(**kwargs)
        clients.append(client)
        return client

    yield make
    for client in clients:
        client.release_all()


@pytest.fixture
def speakers():
    return [
        SpeakerProfile(id="spk-peter", name="Peter", email="peter.mueller@example.com", meeting_count=3),
        SpeakerProfile(id="spk-anna", name="Anna Schmidt", email="anna@example.com", meeting_count=10),
        SpeakerProfile(id="spk-tom", name="Tom", meeting_count=1),
    ]


@pytest.fixture
def audio_device_list():
    """Mock audio device list for testing."""
    return {
        'input': [
            {'id': 0, 'name': 'Default Microphone', 'channels': 1, 'sample_rate': 44100.0},
            {'id': 1, 'name': 'USB Headset Microphone', 'channels': 1, 'sample_rate': 48000.0},
        ],
        'output': [
            {'id': 10, 'name': 'Default Speakers', 'channels': 2, 'sample_rate': 44100.0},
        ]
    }
