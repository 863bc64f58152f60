"""
Shared microphone source for the live transcription pipeline.

One input stream is opened per session and fanned out to every consumer
(VAD, chunker). The stream is held by named owners: the first ``acquire``
opens it, and it is only closed when the last holder releases it.
"""

import sounddevice as sd
import numpy as np
import threading
import itertools
from typing import Optional, Callable, Dict, List, Set
import logging

from .errors import DeviceError

logger = logging.getLogger(__name__)

AudioCallback = Callable[[np.ndarray], None]


class AudioCapture:
    """Reference-counted microphone capture with fan-out to subscribers."""

    def __init__(
        self,
        sample_rate: int = 16000,
        block_duration: float = 0.05,
        device: Optional[int] = None,
        stream_factory: Optional[Callable] = None,
    ):
        self.sample_rate = sample_rate
        self.block_duration = block_duration
        self.block_size = int(sample_rate * block_duration)
        self.device = device

        self._stream_factory = stream_factory or sd.InputStream
        self.stream = None

        # Holders and subscribers
        self._holders: Set[str] = set()
        self._subscribers: Dict[int, AudioCallback] = {}
        self._tokens = itertools.count(1)
        self.lock = threading.RLock()

        # Error tracking
        self.errors = 0
        self.max_errors = 5
        self.release_count = 0

    @staticmethod
    def list_audio_devices() -> Dict[str, List[Dict]]:
        """List available audio devices."""
        try:
            devices = sd.query_devices()
            input_devices = []
            output_devices = []

            for i, device in enumerate(devices):
                device_info = {
                    'id': i,
                    'name': device['name'],
                    'channels': device['max_input_channels'] if device['max_input_channels'] > 0 else device['max_output_channels'],
                    'sample_rate': device['default_samplerate']
                }

                if device['max_input_channels'] > 0:
                    input_devices.append(device_info)
                if device['max_output_channels'] > 0:
                    output_devices.append(device_info)

            return {'input': input_devices, 'output': output_devices}
        except Exception as e:
            logger.error(f"Failed to list audio devices: {e}")
            return {'input': [], 'output': []}

    @property
    def is_open(self) -> bool:
        return self.stream is not None

    @property
    def holders(self) -> Set[str]:
        with self.lock:
            return set(self._holders)

    def _open_stream(self):
        try:
            stream = self._stream_factory(
                device=self.device,
                channels=1,
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                callback=self._audio_callback,
                dtype=np.float32
            )
            stream.start()
            logger.info(f"Opened microphone stream (device: {self.device})")
            return stream
        except Exception as e:
            logger.error(f"Failed to open microphone stream: {e}")
            raise DeviceError(f"Microphone not available: {e}") from e

    def _close_stream(self):
        stream, self.stream = self.stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.error(f"Error closing microphone stream: {e}")
        finally:
            self.release_count += 1
            logger.info("Microphone stream released")

    def acquire(self, owner: str) -> None:
        """Take a hold on the device, opening it for the first holder."""
        with self.lock:
            if owner in self._holders:
                logger.warning(f"{owner} already holds the microphone")
                return
            if self.stream is None:
                self.errors = 0
                self.stream = self._open_stream()
            self._holders.add(owner)
            logger.debug(f"Microphone acquired by {owner} ({len(self._holders)} holders)")

    def release(self, owner: str) -> bool:
        """Drop ``owner``'s hold. The device closes when no holder is left."""
        with self.lock:
            if owner not in self._holders:
                logger.warning(f"{owner} does not hold the microphone, ignoring release")
                return False
            self._holders.discard(owner)
            logger.debug(f"Microphone released by {owner} ({len(self._holders)} holders)")
            if not self._holders:
                self._close_stream()
            return True

    def subscribe(self, callback: AudioCallback) -> int:
        with self.lock:
            token = next(self._tokens)
            self._subscribers[token] = callback
            return token

    def unsubscribe(self, token: int) -> None:
        with self.lock:
            self._subscribers.pop(token, None)

    def _audio_callback(self, indata, frames, time_info, status):
        """Microphone audio callback."""
        try:
            if status:
                logger.warning(f"Mic audio status: {status}")

            # Convert to mono
            if len(indata.shape) > 1:
                audio_data = np.mean(indata, axis=1)
            else:
                audio_data = indata.flatten()

            self.publish(audio_data.astype(np.float32, copy=True))

        except Exception as e:
            self.errors += 1
            logger.error(f"Mic callback error ({self.errors}/{self.max_errors}): {e}")
            if self.errors >= self.max_errors:
                logger.error("Too many mic errors, stopping mic stream")
                if self.stream:
                    self.stream.stop()

    def publish(self, audio_data: np.ndarray) -> None:
        """Deliver a mono block to every subscriber."""
        with self.lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            callback(audio_data)

    def is_healthy(self) -> Dict[str, bool]:
        """Check if the capture stream is healthy."""
        return {
            'open': self.stream is not None,
            'healthy': self.stream is not None and self.errors < self.max_errors,
            'holders': len(self._holders) > 0
        }
