"""Groq calls behind the /api/chat and /api/whisper routes."""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

from groq import AsyncGroq

from avatar_engine.config import LLMConfig

log = logging.getLogger("avatar_engine.llm")


class GroqBackend:
    """Chat completion + speech-to-text on one AsyncGroq client.

    The client is created on first use so the server can boot (and serve
    /health) without GROQ_API_KEY set.
    """

    def __init__(
        self,
        config: LLMConfig,
        *,
        language: str = "ko",
        client: Optional[AsyncGroq] = None,
    ) -> None:
        self._config = config
        self._language = language
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=os.environ["GROQ_API_KEY"])
        return self._client

    async def complete(self, messages: list[dict]) -> str:
        kwargs = {}
        if self._config.temperature is not None:
            kwargs["temperature"] = self._config.temperature
        if self._config.max_tokens is not None:
            kwargs["max_tokens"] = self._config.max_tokens

        t0 = time.perf_counter()
        response = await self._get_client().chat.completions.create(
            model=self._config.model,
            messages=messages,
            stream=False,
            **kwargs,
        )
        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        log.info("event=llm_complete model=%s messages=%d chars=%d latency_ms=%.0f",
                 self._config.model, len(messages), len(content), (time.perf_counter() - t0) * 1000)
        return content

    async def transcribe(self, filename: str, audio: bytes) -> str:
        t0 = time.perf_counter()
        result = await self._get_client().audio.transcriptions.create(
            file=(filename, audio),
            model=self._config.transcription_model,
            language=self._language,
        )
        text = (getattr(result, "text", "") or "").strip()
        log.info("event=stt_complete model=%s bytes=%d chars=%d latency_ms=%.0f",
                 self._config.transcription_model, len(audio), len(text), (time.perf_counter() - t0) * 1000)
        return text

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
