"""
speech.py — Avatar Engine · Speech input sources
================================================
One capability interface, several recognition backends.

    start() / pause() / resume() / destroy() / is_paused()
    callbacks: on_result(transcript, is_final), on_start, on_end,
               on_speech_start, on_speech_end, on_error(code)

Continuous-listening contract
─────────────────────────────
A recognition session that ends on its own (socket closed, backend
timeout, transient error) is restarted after `restart_delay_sec` as long as
the source is neither paused nor destroyed.  `not-allowed` (microphone
missing or denied) stops the restart loop: the user has to retry.

Backends
────────
  • DeepgramSpeechSource      — websocket streaming STT, interim + final
  • TranscriptionSpeechSource — VoiceActivityGate capture, WAV upload to
                                the transcription endpoint, final only
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
import numpy as np
import websockets

from avatar_engine.audio import MicrophoneStream, MicrophoneUnavailable, encode_wav, rms_level
from avatar_engine.config import SpeechConfig
from avatar_engine.vad import GateEvent, VoiceActivityGate

log = logging.getLogger("avatar_engine.speech")

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


def _noop(*args: Any) -> None:
    pass


@dataclass
class SpeechCallbacks:
    on_result: Callable[[str, bool], None]
    on_start: Callable[[], None] = _noop
    on_end: Callable[[], None] = _noop
    on_speech_start: Callable[[], None] = _noop
    on_speech_end: Callable[[], None] = _noop
    on_error: Callable[[str], None] = _noop


class SpeechError(Exception):
    """Recognition failure carrying a short error code (not-allowed, network, ...)."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code


async def open_microphone(factory: Callable[..., Any], **kwargs: Any) -> Any:
    """Build and open a microphone; any device failure becomes a `not-allowed` SpeechError."""
    try:
        mic = factory(**kwargs)
        await mic.open()
    except (MicrophoneUnavailable, OSError, ValueError) as exc:
        raise SpeechError("not-allowed", str(exc)) from exc
    return mic


class SpeechInputSource(ABC):
    """Lifecycle + auto-restart loop.  Subclasses implement one recognition session."""

    def __init__(self, callbacks: SpeechCallbacks, config: SpeechConfig) -> None:
        self._callbacks = callbacks
        self._config = config
        self._task: Optional[asyncio.Task] = None
        self._paused = True
        self._destroyed = False

    # -- public contract --------------------------------------------------------

    def start(self) -> None:
        if self._destroyed:
            return
        self._paused = False
        self._spawn()

    def pause(self) -> None:
        if self._destroyed or self._paused:
            return
        self._paused = True
        self._cancel()
        log.info("event=speech_paused backend=%s", self.backend)

    def resume(self) -> None:
        if self._destroyed or not self._paused:
            return
        self._paused = False
        self._spawn()
        log.info("event=speech_resumed backend=%s", self.backend)

    def is_paused(self) -> bool:
        return self._paused

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._paused = True
        self._cancel()
        log.info("event=speech_destroyed backend=%s", self.backend)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    @abstractmethod
    def backend(self) -> str:
        ...

    # -- restart loop -------------------------------------------------------------

    def _spawn(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"speech_{self.backend}")

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while not self._paused and not self._destroyed:
            self._emit(self._callbacks.on_start)
            try:
                await self._recognize()
            except SpeechError as exc:
                log.warning("event=speech_error backend=%s code=%s error=%s", self.backend, exc.code, exc)
                if exc.code == "not-allowed":
                    self._paused = True
                self._emit(self._callbacks.on_error, exc.code)
            except Exception as exc:
                log.warning("event=speech_error backend=%s code=network error=%s", self.backend, exc)
                self._emit(self._callbacks.on_error, "network")
            finally:
                self._emit(self._callbacks.on_end)

            if self._paused or self._destroyed or not self._config.auto_restart:
                return
            log.info("event=speech_auto_restart backend=%s delay_sec=%.2f", self.backend, self._config.restart_delay_sec)
            await asyncio.sleep(self._config.restart_delay_sec)

    def _emit(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            log.exception("event=speech_callback_error backend=%s", self.backend)

    @abstractmethod
    async def _recognize(self) -> None:
        """Run one recognition session until it ends.  Raise SpeechError on failure."""


# ---------------------------------------------------------------------------
# Deepgram streaming backend
# ---------------------------------------------------------------------------

class DeepgramSpeechSource(SpeechInputSource):
    def __init__(
        self,
        callbacks: SpeechCallbacks,
        config: SpeechConfig,
        *,
        api_key: str,
        microphone_factory: Callable[..., Any] = MicrophoneStream,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        super().__init__(callbacks, config)
        self._api_key = api_key
        self._microphone_factory = microphone_factory
        self._connect = connect
        self._finals: list[str] = []

    @property
    def backend(self) -> str:
        return "deepgram"

    def listen_url(self) -> str:
        params = {
            "model": self._config.deepgram_model,
            "language": self._config.language,
            "encoding": "linear16",
            "sample_rate": self._config.sample_rate,
            "channels": 1,
            "interim_results": "true",
            "smart_format": "true",
            "punctuate": "true",
            "vad_events": "true",
            "endpointing": self._config.deepgram_endpointing_ms,
            "utterance_end_ms": 1000,
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def _recognize(self) -> None:
        mic = await open_microphone(self._microphone_factory, sample_rate=self._config.sample_rate)

        self._finals.clear()
        try:
            async with self._connect(
                self.listen_url(),
                additional_headers={"Authorization": f"Token {self._api_key}"},
            ) as ws:
                log.info("event=deepgram_connected model=%s language=%s",
                         self._config.deepgram_model, self._config.language)
                sender = asyncio.create_task(self._send_audio(ws, mic), name="deepgram_sender")
                try:
                    async for raw in ws:
                        self._handle_message(raw)
                finally:
                    sender.cancel()
        except (websockets.exceptions.WebSocketException, OSError) as exc:
            raise SpeechError("network", str(exc)) from exc
        finally:
            mic.close()
        log.info("event=deepgram_session_ended")

    async def _send_audio(self, ws: Any, mic: Any) -> None:
        try:
            while True:
                block = await mic.read()
                await ws.send(block.tobytes())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=deepgram_send_failed error=%s", exc)
            await ws.close()

    def _handle_message(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            return
        kind = msg.get("type")

        if kind == "SpeechStarted":
            self._emit(self._callbacks.on_speech_start)
            return

        if kind == "UtteranceEnd":
            self._flush()
            self._emit(self._callbacks.on_speech_end)
            return

        if kind != "Results":
            return

        alternatives = (msg.get("channel") or {}).get("alternatives") or [{}]
        transcript = (alternatives[0].get("transcript") or "").strip()

        if msg.get("is_final"):
            if transcript:
                self._finals.append(transcript)
            if msg.get("speech_final"):
                self._flush()
                self._emit(self._callbacks.on_speech_end)
            elif self._finals:
                self._emit(self._callbacks.on_result, " ".join(self._finals), False)
        elif transcript:
            self._emit(self._callbacks.on_result, " ".join(self._finals + [transcript]), False)

    def _flush(self) -> None:
        if not self._finals:
            return
        text = " ".join(self._finals)
        self._finals.clear()
        log.info("event=transcript_final text=%.80s", text)
        self._emit(self._callbacks.on_result, text, True)


# ---------------------------------------------------------------------------
# VAD-gated upload backend
# ---------------------------------------------------------------------------

class TranscriptionSpeechSource(SpeechInputSource):
    def __init__(
        self,
        callbacks: SpeechCallbacks,
        config: SpeechConfig,
        *,
        microphone_factory: Callable[..., Any] = MicrophoneStream,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(callbacks, config)
        self._microphone_factory = microphone_factory
        self._client = client or httpx.AsyncClient(timeout=30)
        self._clock = clock
        self.gate = VoiceActivityGate(config.vad)

    @property
    def backend(self) -> str:
        return "transcription"

    def destroy(self) -> None:
        super().destroy()
        try:
            asyncio.get_running_loop().create_task(self._client.aclose())
        except RuntimeError:
            pass

    async def _recognize(self) -> None:
        mic = await open_microphone(
            self._microphone_factory,
            sample_rate=self._config.sample_rate,
            block_ms=self._config.vad.interval_ms,
        )

        self.gate.resume()
        frames: list[np.ndarray] = []
        try:
            while True:
                block = await mic.read()
                event = self.gate.update(rms_level(block), self._clock() * 1000.0)

                if event is GateEvent.SPEECH_STARTED:
                    frames = [block]
                    self._emit(self._callbacks.on_speech_start)
                elif event is GateEvent.SPEECH_STOPPED:
                    frames.append(block)
                    self._emit(self._callbacks.on_speech_end)
                    await self._finish_recording(frames)
                    frames = []
                    drain = getattr(mic, "drain", None)
                    if drain is not None:
                        drain()
                elif self.gate.recording:
                    frames.append(block)
        finally:
            self.gate.suspend()
            mic.close()

    async def _finish_recording(self, frames: list[np.ndarray]) -> None:
        self.gate.set_busy(True)
        try:
            text = await self.transcribe(encode_wav(frames, self._config.sample_rate))
        finally:
            self.gate.set_busy(False)
        if text:
            log.info("event=transcript_final text=%.80s", text)
            self._emit(self._callbacks.on_result, text, True)

    async def transcribe(self, wav: bytes) -> str:
        """Upload one recording.  Transport failures are reported, never raised."""
        try:
            r = await self._client.post(
                self._config.transcription_url,
                files={"audio": ("speech.wav", wav, "audio/wav")},
            )
            data = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.error("event=transcription_failed error=%s", exc)
            self._emit(self._callbacks.on_error, "network")
            return ""
        if r.status_code >= 400 or not isinstance(data, dict) or "text" not in data:
            log.warning("event=transcription_error status=%d body=%.120s", r.status_code, data)
            self._emit(self._callbacks.on_error, "no-speech")
            return ""
        return str(data.get("text") or "").strip()


def create_speech_source(
    config: SpeechConfig,
    callbacks: SpeechCallbacks,
    *,
    deepgram_api_key: Optional[str] = None,
    **kwargs: Any,
) -> SpeechInputSource:
    """Backend selection by configuration."""
    if config.backend == "deepgram":
        if not deepgram_api_key:
            raise ValueError("DEEPGRAM_API_KEY is required for the deepgram speech backend")
        return DeepgramSpeechSource(callbacks, config, api_key=deepgram_api_key, **kwargs)
    if config.backend == "transcription":
        return TranscriptionSpeechSource(callbacks, config, **kwargs)
    raise ValueError(f"Unsupported speech backend: '{config.backend}'")
