"""Microphone capture into a rolling ring buffer."""

from __future__ import annotations

import json
import logging
import threading

import numpy as np

# Audio deps
try:
    import sounddevice as sd
except (ImportError, OSError):
    sd = None

from talkloop.config import AudioConfig
from talkloop.errors import AudioInitError


class AudioCapture:
    """Keeps the last ``buffer_ms`` of mono float32 audio.

    ``sounddevice`` fills the buffer from its own callback thread; the loop
    only takes snapshots with ``get`` and empties it with ``clear``.
    """

    def __init__(self, cfg: AudioConfig, logger: logging.Logger):
        self.cfg = cfg
        self.logger = logger
        self.sample_rate = cfg.sample_rate
        self.capacity = (cfg.sample_rate * cfg.buffer_ms) // 1000

        self._buffer = np.zeros(self.capacity, dtype=np.float32)
        self._pos = 0
        self._len = 0
        self._lock = threading.Lock()
        self._stream = None
        self.running = False

    def init(self) -> None:
        """Open the capture device; failure is fatal."""
        if sd is None:
            raise AudioInitError("sounddevice is not available (missing PortAudio?)")

        try:
            self._stream = sd.InputStream(
                device=self.cfg.capture_id,
                channels=1,
                samplerate=self.sample_rate,
                dtype="float32",
                callback=self._callback,
            )
        except (sd.PortAudioError, ValueError) as e:
            raise AudioInitError(f"audio init failed: {e}") from e

        self.logger.info("audio_ready %s", json.dumps({
            "device": self.cfg.capture_id,
            "sample_rate": self.sample_rate,
            "buffer_ms": self.cfg.buffer_ms,
        }))

    def resume(self) -> None:
        if self._stream is not None and not self.running:
            self._stream.start()
            self.running = True

    def pause(self) -> None:
        if self._stream is not None and self.running:
            self._stream.stop()
            self.running = False

    def close(self) -> None:
        self.pause()
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            self.logger.debug("audio_status %s", json.dumps({"status": str(status)}))
        self.push(np.asarray(indata, dtype=np.float32).reshape(-1))

    def push(self, samples: np.ndarray) -> None:
        """Append samples, overwriting the oldest once full."""
        n = samples.shape[0]
        if n == 0:
            return
        if n > self.capacity:
            samples = samples[n - self.capacity:]
            n = self.capacity

        with self._lock:
            end = self._pos + n
            if end <= self.capacity:
                self._buffer[self._pos:end] = samples
            else:
                first = self.capacity - self._pos
                self._buffer[self._pos:] = samples[:first]
                self._buffer[:n - first] = samples[first:]
            self._pos = end % self.capacity
            self._len = min(self._len + n, self.capacity)

    def get(self, ms: int) -> np.ndarray:
        """Copy of the most recent ``ms`` milliseconds (less if not yet captured)."""
        wanted = (self.sample_rate * ms) // 1000
        with self._lock:
            n = min(wanted, self._len)
            if n == 0:
                return np.zeros(0, dtype=np.float32)
            start = (self._pos - n) % self.capacity
            if start + n <= self.capacity:
                return self._buffer[start:start + n].copy()
            return np.concatenate((self._buffer[start:], self._buffer[:n - (self.capacity - start)]))

    def clear(self) -> None:
        with self._lock:
            self._pos = 0
            self._len = 0

    def __len__(self) -> int:
        with self._lock:
            return self._len
