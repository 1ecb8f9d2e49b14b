"""Microphone capture and small audio helpers (level metering, WAV encoding)."""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Iterable, Optional

import numpy as np
import soundfile as sf

log = logging.getLogger("avatar_engine.audio")


class MicrophoneUnavailable(RuntimeError):
    """The input device could not be opened (missing, busy, or permission denied)."""


def rms_level(samples: np.ndarray) -> float:
    """RMS of an int16 block, normalised to 0.0–1.0."""
    if samples.size == 0:
        return 0.0
    x = samples.astype(np.float32) / 32768.0
    return float(np.sqrt(np.mean(x ** 2)))


def encode_wav(blocks: Iterable[np.ndarray], sample_rate: int) -> bytes:
    """Concatenate int16 blocks into an in-memory 16-bit mono WAV file."""
    parts = [b.reshape(-1) for b in blocks]
    data = np.concatenate(parts) if parts else np.zeros(0, dtype=np.int16)
    buf = io.BytesIO()
    sf.write(buf, data, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def _load_sounddevice():
    """Import sounddevice on first use; it raises OSError when PortAudio is missing."""
    try:
        import sounddevice
    except OSError as exc:
        raise MicrophoneUnavailable(str(exc)) from exc
    return sounddevice


class MicrophoneStream:
    """sounddevice InputStream feeding int16 mono blocks into an asyncio.Queue.

    The PortAudio callback runs on the audio thread; blocks are handed to the
    event loop with call_soon_threadsafe.
    """

    def __init__(self, sample_rate: int = 16000, block_ms: int = 100, device: Optional[int] = None) -> None:
        self.sample_rate = sample_rate
        self._blocksize = int(sample_rate * block_ms / 1000)
        self._device = device
        self._stream = None
        self._queue: Optional[asyncio.Queue[np.ndarray]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def open(self) -> None:
        sd = _load_sounddevice()
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self._blocksize,
                device=self._device,
                callback=self._callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError, OSError) as exc:
            # ValueError: unknown device or unsupported sample rate
            self._stream = None
            self._queue = None
            raise MicrophoneUnavailable(str(exc)) from exc
        log.info("event=mic_opened sample_rate=%d blocksize=%d", self.sample_rate, self._blocksize)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        if self._loop is None or self._queue is None:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, indata[:, 0].copy())

    async def read(self) -> np.ndarray:
        if self._queue is None:
            raise MicrophoneUnavailable("microphone not open")
        return await self._queue.get()

    def drain(self) -> int:
        """Drop blocks captured while the caller was busy elsewhere."""
        dropped = 0
        while self._queue is not None and not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        return dropped

    def close(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as exc:
                log.warning("event=mic_close_failed error=%s", exc)
            self._stream = None
        self._queue = None
        log.info("event=mic_closed")
