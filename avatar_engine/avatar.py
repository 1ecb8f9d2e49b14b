"""
avatar.py — Avatar Engine · Remote avatar output sink
=====================================================
AvatarOutputSink is the coordinator's only view of the streaming avatar:

    initialize(token) → start(config) → speak(text) / interrupt() → stop()

and four events, registered with the `event_handler` decorator:

    stream_ready   video track is live — safe to greet
    disconnected   transport lost without stop() being called
    start_talking  avatar began audible speech
    stop_talking   avatar finished audible speech

HeyGenAvatarSink drives the HeyGen streaming REST API (httpx) and joins
the LiveKit room the session is published in (livekit rtc) to receive
the talking events from the data channel.  `interrupt()` and `stop()`
never raise.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import httpx
from livekit import rtc

from avatar_engine.config import AvatarConfig

log = logging.getLogger("avatar_engine.avatar")

EventHandler = Callable[..., None]

_TALK_EVENTS = {
    "avatar_start_talking": "start_talking",
    "avatar_stop_talking":  "stop_talking",
}


class AvatarError(RuntimeError):
    """A streaming avatar REST call failed."""


class AvatarOutputSink(ABC):
    """Base class: event registry + lifecycle contract."""

    EVENTS = ("stream_ready", "disconnected", "start_talking", "stop_talking")

    def __init__(self) -> None:
        self._event_handlers: dict[str, list[EventHandler]] = {name: [] for name in self.EVENTS}

    def event_handler(self, name: str) -> Callable[[EventHandler], EventHandler]:
        def decorator(handler: EventHandler) -> EventHandler:
            self.add_event_handler(name, handler)
            return handler
        return decorator

    def add_event_handler(self, name: str, handler: EventHandler) -> None:
        if name not in self._event_handlers:
            raise ValueError(f"Unknown avatar event '{name}'. Valid: {', '.join(self.EVENTS)}")
        self._event_handlers[name].append(handler)

    def _call_event_handler(self, name: str, *args: Any) -> None:
        for handler in list(self._event_handlers[name]):
            try:
                handler(*args)
            except Exception:
                log.exception("event=avatar_handler_error name=%s", name)

    @abstractmethod
    def initialize(self, token: str) -> "AvatarOutputSink":
        """Bind the access credential.  Returns the sink itself as the handle."""

    @abstractmethod
    async def start(self, config: AvatarConfig) -> None:
        """Open the remote session."""

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Have the avatar say `text` verbatim."""

    @abstractmethod
    async def interrupt(self) -> None:
        """Cut off current speech.  Best-effort, never raises."""

    @abstractmethod
    async def stop(self) -> None:
        """Close the remote session.  Never raises."""


# ---------------------------------------------------------------------------
# Server-side credential issue (used behind POST /api/get-access-token)
# ---------------------------------------------------------------------------

async def create_streaming_token(
    api_key: str,
    *,
    api_base: str = "https://api.heygen.com",
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Exchange the account API key for a short-lived streaming token."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=15)
    try:
        r = await client.post(
            f"{api_base.rstrip('/')}/v1/streaming.create_token",
            headers={"x-api-key": api_key},
        )
        r.raise_for_status()
        token = ((r.json() or {}).get("data") or {}).get("token")
    finally:
        if owns_client:
            await client.aclose()
    if not token:
        raise AvatarError("streaming.create_token returned no token")
    return token


# ---------------------------------------------------------------------------
# HeyGen streaming avatar
# ---------------------------------------------------------------------------

class HeyGenAvatarSink(AvatarOutputSink):
    def __init__(
        self,
        config: AvatarConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        room_factory: Callable[[], Any] = rtc.Room,
    ) -> None:
        super().__init__()
        self._config = config
        self._transport = transport
        self._room_factory = room_factory
        self._client: Optional[httpx.AsyncClient] = None
        self._room: Optional[Any] = None
        self._session_id: Optional[str] = None
        self._stopping = False

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def initialize(self, token: str) -> "HeyGenAvatarSink":
        self._client = httpx.AsyncClient(
            base_url=self._config.api_base,
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._config.request_timeout_sec,
            transport=self._transport,
        )
        return self

    async def _post(self, path: str, body: dict) -> dict:
        if self._client is None:
            raise AvatarError("avatar sink used before initialize()")
        r = await self._client.post(path, json=body)
        if r.status_code >= 400:
            raise AvatarError(f"{path} failed: HTTP {r.status_code} {r.text[:200]}")
        try:
            return (r.json() or {}).get("data") or {}
        except ValueError as exc:
            raise AvatarError(f"{path} returned a malformed body") from exc

    def _session_body(self, config: AvatarConfig) -> dict:
        body: dict[str, Any] = {
            "quality": config.quality,
            "avatar_name": config.avatar_name,
            "language": config.language,
            "version": "v2",
            "video_encoding": "H264",
            "voice": {
                "rate": config.voice.rate,
                "emotion": config.voice.emotion,
                "model": config.voice.model,
            },
        }
        if config.knowledge_base_id:
            body["knowledge_base_id"] = config.knowledge_base_id
        return body

    async def start(self, config: AvatarConfig) -> None:
        self._stopping = False
        info = await self._post("/v1/streaming.new", self._session_body(config))
        self._session_id = info.get("session_id")
        if not self._session_id or not info.get("url") or not info.get("access_token"):
            raise AvatarError("streaming.new returned an incomplete session")
        log.info("event=avatar_session_created session_id=%s avatar=%s", self._session_id, config.avatar_name)

        room = self._room_factory()
        room.on("data_received", self._on_data_received)
        room.on("track_subscribed", self._on_track_subscribed)
        room.on("disconnected", self._on_room_disconnected)
        self._room = room
        await room.connect(info["url"], info["access_token"])

        await self._post("/v1/streaming.start", {"session_id": self._session_id})
        log.info("event=avatar_session_started session_id=%s", self._session_id)

    async def speak(self, text: str) -> None:
        log.info("event=avatar_speak session_id=%s text=%.80s", self._session_id, text)
        await self._post(
            "/v1/streaming.task",
            {"session_id": self._session_id, "text": text, "task_type": "repeat"},
        )

    async def interrupt(self) -> None:
        if not self._session_id:
            return
        try:
            await self._post("/v1/streaming.interrupt", {"session_id": self._session_id})
        except Exception as exc:
            log.warning("event=avatar_interrupt_failed error=%s", exc)

    async def stop(self) -> None:
        self._stopping = True
        if self._session_id:
            try:
                await self._post("/v1/streaming.stop", {"session_id": self._session_id})
            except Exception as exc:
                log.warning("event=avatar_stop_failed error=%s", exc)
        if self._room is not None:
            try:
                await self._room.disconnect()
            except Exception as exc:
                log.warning("event=avatar_room_disconnect_failed error=%s", exc)
        if self._client is not None:
            await self._client.aclose()
        log.info("event=avatar_session_stopped session_id=%s", self._session_id)
        self._room = None
        self._client = None
        self._session_id = None

    # -- LiveKit room callbacks -------------------------------------------------

    def _on_data_received(self, packet: Any) -> None:
        try:
            message = json.loads(bytes(packet.data).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return
        name = _TALK_EVENTS.get(message.get("type", "")) if isinstance(message, dict) else None
        if name:
            log.debug("event=avatar_%s", name)
            self._call_event_handler(name)

    def _on_track_subscribed(self, track: Any, publication: Any = None, participant: Any = None) -> None:
        if getattr(track, "kind", None) == rtc.TrackKind.KIND_VIDEO:
            log.info("event=avatar_stream_ready session_id=%s", self._session_id)
            self._call_event_handler("stream_ready")

    def _on_room_disconnected(self, *args: Any) -> None:
        if self._stopping:
            return
        log.warning("event=avatar_stream_disconnected session_id=%s", self._session_id)
        self._call_event_handler("disconnected")
