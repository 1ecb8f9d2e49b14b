"""ResponseGenerator clients, greeting composition and the token client.

Both HTTP clients talk to the widget's own backend (server.py).  The
ResponseGenerator contract is that `generate()` never raises: transport
errors, non-2xx statuses and malformed bodies all degrade to a fixed
fallback string.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from avatar_engine.config import (
    DEFAULT_GUEST_NAME,
    EMPTY_REPLY,
    FALLBACK_REPLY,
    ServiceConfig,
)
from avatar_engine.models import ResponseRequest, UserProfile

log = logging.getLogger("avatar_engine.responses")


def compose_greeting(profile: Optional[UserProfile], guest_name: str = DEFAULT_GUEST_NAME) -> str:
    """Local greeting: personalised for returning players, generic otherwise."""
    name = (profile.display_name if profile else "") or guest_name
    if profile is not None and profile.total_games > 0:
        best = profile.stats.get("best_score", 0)
        return f"안녕하세요, {name}님! 다시 만나서 반가워요. 최고 점수 {best}점이네요!"
    return f"안녕하세요, {name}님! 저는 두뇌 게임 도우미예요."


class ResponseGenerator(ABC):
    """Opaque request/response collaborator: utterance (+ history + profile) → reply text."""

    @abstractmethod
    async def generate(self, request: ResponseRequest) -> str:
        """Return reply text.  Must not raise."""

    async def aclose(self) -> None:
        pass


class HttpResponseGenerator(ResponseGenerator):
    """POSTs the /api/chat contract and reads `{reply}` / `{error}`."""

    def __init__(
        self,
        config: ServiceConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = config.chat_url
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_sec)

    async def generate(self, request: ResponseRequest) -> str:
        try:
            r = await self._client.post(self._url, json=request.to_payload())
            data = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.error("event=chat_request_failed type=%s error=%s", request.kind, exc)
            return FALLBACK_REPLY

        if not isinstance(data, dict):
            log.error("event=chat_malformed_body type=%s status=%d", request.kind, r.status_code)
            return FALLBACK_REPLY
        if r.status_code >= 400 or "reply" not in data:
            log.warning("event=chat_error_reply type=%s status=%d error=%s",
                        request.kind, r.status_code, data.get("error"))
            return FALLBACK_REPLY

        reply = str(data.get("reply") or "").strip()
        log.info("event=chat_reply type=%s len=%d", request.kind, len(reply))
        return reply or EMPTY_REPLY

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpTokenClient:
    """POST (no body) to the token endpoint; the response text is the bearer token."""

    def __init__(
        self,
        config: ServiceConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = config.token_url
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_sec)

    async def __call__(self) -> str:
        r = await self._client.post(self._url)
        r.raise_for_status()
        token = r.text.strip()
        if not token:
            raise ValueError("token endpoint returned an empty body")
        log.info("event=access_token_fetched len=%d", len(token))
        return token

    async def aclose(self) -> None:
        await self._client.aclose()
