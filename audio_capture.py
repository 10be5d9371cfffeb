"""
Microphone capture: 16 kHz mono audio delivered in fixed 4096-sample frames
as 16-bit little-endian PCM, ready for the Gemini Live API.
"""

import logging
import threading
from typing import Callable, Optional, Union

import numpy as np

import config

logger = logging.getLogger("audio-capture")

# One input device per process; held from open() until close()
_device_lock = threading.Lock()


class MicrophoneUnavailableError(Exception):
    """Microphone permission denied, device missing or in use, or audio backend unavailable"""


def encode_frame(samples: np.ndarray) -> bytes:
    """float32 samples in [-1, 1] -> int16 PCM bytes"""
    scaled = np.clip(np.asarray(samples, dtype=np.float32) * 32768.0, -32768, 32767)
    return scaled.astype("<i2").tobytes()


class Microphone:
    """
    Exclusive handle on the input device.

    Only one Microphone can be open at a time in the process; a second
    open() raises MicrophoneUnavailableError until the first is closed.
    The frame callback runs on the PortAudio thread at a fixed cadence,
    once per FRAME_SIZE samples.
    """

    def __init__(
        self,
        sample_rate: int = config.SAMPLE_RATE,
        frame_size: int = config.FRAME_SIZE,
        device: Optional[Union[int, str]] = config.MICROPHONE_DEVICE,
    ):
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.device = device
        self._stream = None
        self._owns_device = False
        self._on_frame: Optional[Callable[[bytes], None]] = None

    def open(self, on_frame: Callable[[bytes], None]):
        """Acquire the device. Raises MicrophoneUnavailableError."""
        if not _device_lock.acquire(blocking=False):
            logger.warning("⚠️ Microphone is already in use by another session")
            raise MicrophoneUnavailableError("Microphone in use")
        self._owns_device = True
        self._on_frame = on_frame
        try:
            # PortAudio is loaded on import; a missing library is a missing device for us
            import sounddevice as sd
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                blocksize=self.frame_size,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
        except Exception as e:
            logger.error(f"❌ Could not open microphone: {e}")
            self._release()
            raise MicrophoneUnavailableError(str(e)) from e
        logger.info(f"🎤 Microphone opened ({self.sample_rate} Hz, {self.frame_size}-sample frames)")

    def start(self):
        """Begin delivering frames. PortAudio may only reject the device here."""
        try:
            self._stream.start()
        except Exception as e:
            logger.error(f"❌ Could not start microphone: {e}")
            raise MicrophoneUnavailableError(str(e)) from e

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.warning(f"⚠️ Audio input status: {status}")
        if self._on_frame is not None:
            self._on_frame(encode_frame(indata[:, 0]))

    def _release(self):
        self._on_frame = None
        if self._owns_device:
            self._owns_device = False
            _device_lock.release()

    def close(self):
        stream, self._stream = self._stream, None
        try:
            if stream is not None:
                stream.stop()
                stream.close()
                logger.info("🎤 Microphone released")
        finally:
            self._release()
