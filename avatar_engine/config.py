"""
config.py — Avatar Engine · Runtime Configuration
=================================================
Pydantic models for every tunable parameter of the avatar widget.
Serialises to / deserialises from JSON.  Used by:
  • server.py       — GET/PUT /config endpoints, builds the SessionHost
  • coordinator.py  — settle delays and greeting defaults
  • speech.py / vad.py / avatar.py — backend parameters

All models are frozen: a running coordinator holds one immutable
EngineConfig for its whole lifetime.  Changing settings means building a
new config (see `merge_patch`) and a new coordinator.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

log = logging.getLogger("avatar_engine.config")

# ---------------------------------------------------------------------------
# Fixed user-facing strings (Korean, the widget's only language)
# ---------------------------------------------------------------------------

DEFAULT_GUEST_NAME = "손님"
FALLBACK_REPLY = "죄송합니다. 오류가 발생했습니다."
EMPTY_REPLY = "응답을 생성하지 못했습니다."
MIC_PERMISSION_NOTICE = "마이크 권한이 필요합니다. 설정에서 마이크를 허용해주세요."


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class AvatarVoiceConfig(_Frozen):
    """Voice settings forwarded to the streaming avatar."""
    rate: float = Field(default=1.5, ge=0.5, le=2.0, description="Speaking rate")
    emotion: str = Field(default="excited", description="Voice emotion preset")
    model: str = Field(default="eleven_flash_v2_5", description="TTS model used by the avatar")


class AvatarConfig(_Frozen):
    """Streaming avatar session parameters (HeyGen streaming API)."""
    avatar_name: str = Field(default="Ann_Therapist_public", description="Avatar ID")
    quality: Literal["low", "medium", "high"] = Field(default="low", description="Video quality")
    language: str = Field(default="ko", description="Avatar speech language")
    knowledge_base_id: Optional[str] = Field(default=None, description="Optional knowledge base ID")
    voice: AvatarVoiceConfig = Field(default_factory=AvatarVoiceConfig)
    api_base: str = Field(default="https://api.heygen.com", description="Streaming API base URL")
    request_timeout_sec: float = Field(default=15.0, gt=0.0, description="REST call timeout")


class TurnConfig(_Frozen):
    """TurnCoordinator timing.  All delays are empirical tuning knobs."""
    greeting_settle_sec: float = Field(default=1.5, ge=0.0, le=10.0, description="Wait after stream_ready before greeting")
    resume_settle_sec: float = Field(default=0.5, ge=0.0, le=5.0, description="Echo tail guard after avatar stops talking")
    teardown_quiescence_sec: float = Field(default=0.5, ge=0.0, le=5.0, description="Wait after teardown before a new start")
    guest_name: str = Field(default=DEFAULT_GUEST_NAME, description="Name used when no profile is known")


class VadConfig(_Frozen):
    """VoiceActivityGate hysteresis (levels are float32 RMS, 0.0–1.0)."""
    interval_ms: int = Field(default=100, ge=10, le=1000, description="Level sampling interval")
    speech_threshold: float = Field(default=0.03, gt=0.0, le=1.0, description="Level that starts a recording")
    silence_threshold: float = Field(default=0.015, gt=0.0, le=1.0, description="Level counted as silence")
    silence_duration_ms: int = Field(default=1500, ge=100, le=10000, description="Sustained silence that ends a recording")
    min_recording_ms: int = Field(default=500, ge=0, le=10000, description="Recordings shorter than this never end on silence")
    max_recording_ms: int = Field(default=30000, ge=1000, le=120000, description="Hard cut for runaway recordings")


class SpeechConfig(_Frozen):
    """SpeechInputSource backend selection and parameters."""
    backend: Literal["deepgram", "transcription"] = Field(default="deepgram", description="Recognition backend")
    language: str = Field(default="ko", description="Recognition language")
    sample_rate: int = Field(default=16000, description="Microphone sample rate (Hz)")
    auto_restart: bool = Field(default=True, description="Restart recognition after a spontaneous end")
    restart_delay_sec: float = Field(default=0.25, ge=0.0, le=10.0, description="Pause before auto-restart")
    deepgram_model: str = Field(default="nova-3", description="Deepgram model")
    deepgram_endpointing_ms: int = Field(default=800, ge=0, le=5000, description="Silence endpointing (ms)")
    transcription_url: str = Field(default="http://127.0.0.1:8020/api/whisper", description="Upload endpoint for the transcription backend")
    vad: VadConfig = Field(default_factory=VadConfig)


class ServiceConfig(_Frozen):
    """Where the widget reaches its own HTTP collaborators."""
    chat_url: str = Field(default="http://127.0.0.1:8020/api/chat", description="ResponseGenerator endpoint")
    token_url: str = Field(default="http://127.0.0.1:8020/api/get-access-token", description="Access token endpoint")
    request_timeout_sec: float = Field(default=30.0, gt=0.0, description="HTTP timeout")


class LLMConfig(_Frozen):
    """Groq parameters used behind /api/chat and /api/whisper."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq chat model ID")
    temperature: Optional[float] = Field(default=0.7, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: Optional[int] = Field(default=300, ge=1, description="Max response tokens")
    transcription_model: str = Field(default="whisper-large-v3", description="Groq speech-to-text model")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class EngineConfig(_Frozen):
    """Complete runtime configuration for one avatar widget."""
    avatar: AvatarConfig = Field(default_factory=AvatarConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    services: ServiceConfig = Field(default_factory=ServiceConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "EngineConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_invalid path=%s error=%s fallback=defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "EngineConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"turn": {"resume_settle_sec": 0.8}}
        only changes turn.resume_settle_sec, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return EngineConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
