"""
vad.py — Avatar Engine · Energy-based voice activity gate
=========================================================
Used where the recognition backend has no native end-of-utterance signal.
The caller samples the microphone level every `interval_ms` and feeds it
to `update()`; the gate answers with SPEECH_STARTED / SPEECH_STOPPED.

Hysteresis
──────────
  • start: level > speech_threshold
  • stop : level < silence_threshold (lower) for silence_duration_ms,
           and the recording is at least min_recording_ms long
  • cut  : recording reached max_recording_ms

While suspended (avatar speaking) or busy (previous recording still being
transcribed) the gate produces nothing, so captures never overlap.
"""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import Optional

from avatar_engine.config import VadConfig

log = logging.getLogger("avatar_engine.vad")


class GateEvent(Enum):
    SPEECH_STARTED = auto()
    SPEECH_STOPPED = auto()


class VoiceActivityGate:
    def __init__(self, config: VadConfig) -> None:
        if config.silence_threshold >= config.speech_threshold:
            raise ValueError("silence_threshold must be below speech_threshold")
        self._config = config
        self._recording = False
        self._started_ms = 0.0
        self._silence_since_ms: Optional[float] = None
        self._suspended = False
        self._busy = False

    @property
    def interval_sec(self) -> float:
        return self._config.interval_ms / 1000.0

    @property
    def recording(self) -> bool:
        return self._recording

    @property
    def suspended(self) -> bool:
        return self._suspended or self._busy

    def suspend(self) -> bool:
        """Stop gating.  Returns True when an in-progress recording was discarded."""
        self._suspended = True
        return self._abort()

    def resume(self) -> None:
        self._suspended = False

    def set_busy(self, busy: bool) -> None:
        self._busy = busy
        if busy:
            self._abort()

    def _abort(self) -> bool:
        aborted = self._recording
        if aborted:
            log.debug("event=vad_recording_discarded")
        self._recording = False
        self._silence_since_ms = None
        return aborted

    def update(self, level: float, now_ms: float) -> Optional[GateEvent]:
        if self.suspended:
            return None

        if not self._recording:
            if level > self._config.speech_threshold:
                self._recording = True
                self._started_ms = now_ms
                self._silence_since_ms = None
                log.debug("event=vad_speech_started level=%.4f", level)
                return GateEvent.SPEECH_STARTED
            return None

        elapsed = now_ms - self._started_ms
        if elapsed >= self._config.max_recording_ms:
            log.info("event=vad_max_recording elapsed_ms=%.0f", elapsed)
            return self._stop()

        if level < self._config.silence_threshold:
            if self._silence_since_ms is None:
                self._silence_since_ms = now_ms
            silent_for = now_ms - self._silence_since_ms
            if silent_for >= self._config.silence_duration_ms and elapsed >= self._config.min_recording_ms:
                log.debug("event=vad_speech_stopped elapsed_ms=%.0f", elapsed)
                return self._stop()
        else:
            self._silence_since_ms = None
        return None

    def _stop(self) -> GateEvent:
        self._recording = False
        self._silence_since_ms = None
        return GateEvent.SPEECH_STOPPED
