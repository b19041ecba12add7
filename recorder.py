"""Microphone recorder adapter."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import wave
from pathlib import Path
from typing import Any, Optional

from errors import DeviceError, PermissionDeniedError
from interfaces import AmplitudeCallback
from models import CapturedAudio

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)


def pcm16_from_float(samples: Any) -> bytes:
    """Convert float samples in [-1, 1] to little-endian 16-bit PCM."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def write_wav(path: Path, samples: Any, sample_rate: int, channels: int = 1) -> None:
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16_from_float(samples))


class SoundDeviceRecorder:
    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
        amplitude_gain: float = 15.0,
        temp_dir: Optional[Path] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.amplitude_gain = amplitude_gain
        self._temp_dir = temp_dir
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._chunks: list[Any] = []
        self._on_amplitude: Optional[AmplitudeCallback] = None

    def start(self, on_amplitude: Optional[AmplitudeCallback] = None) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None or np is None:
                raise DeviceError("sounddevice is not installed")
            self._chunks = []
            self._on_amplitude = on_amplitude
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=blocksize,
                    callback=self._on_audio,
                )
                self._stream.start()
            except Exception as exc:
                self._stream = None
                if "permission" in str(exc).lower():
                    raise PermissionDeniedError(str(exc)) from exc
                raise DeviceError(str(exc)) from exc
            self._running = True
            logger.info(f"Recording started ({self.sample_rate} Hz, {self.channels} ch)")

    def stop(self) -> Optional[CapturedAudio]:
        with self._lock:
            if not self._running:
                return None
            self._running = False
            stream, self._stream = self._stream, None
        # stream.stop() waits for a running callback, which needs the lock.
        if stream is not None:
            stream.stop()
            stream.close()
        with self._lock:
            chunks, self._chunks = self._chunks, []

        if chunks:
            samples = np.concatenate(chunks).reshape(-1)
        else:
            samples = np.zeros(0, dtype=np.float32)
        fd, name = tempfile.mkstemp(suffix=".wav", dir=self._temp_dir)
        os.close(fd)
        path = Path(name)
        write_wav(path, samples, self.sample_rate, 1)
        duration = len(samples) / float(self.sample_rate)
        logger.info(f"Recording stopped: {duration:.2f}s captured to {path}")
        return CapturedAudio(path=path, samples=samples, sample_rate=self.sample_rate, duration_s=duration)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug(f"Audio status: {status}")
        block = np.asarray(indata, dtype=np.float32)
        if block.ndim > 1:
            block = block.mean(axis=1)
        with self._lock:
            if not self._running:
                return
            self._chunks.append(block.copy())
        callback = self._on_amplitude
        if callback is not None and len(block):
            rms = float(np.sqrt(np.mean(block * block)))
            callback(min(rms * self.amplitude_gain, 1.0))
