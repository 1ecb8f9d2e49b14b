"""
server.py — Avatar Engine · FastAPI backend
===========================================
HTTP + websocket surface of the avatar widget.

Endpoints
---------
  WS   /ws/control               Control channel: one SessionHost (and one
                                 TurnCoordinator) per connection
  WS   /ws/logs                  Real-time log stream
  POST /api/get-access-token     Streaming avatar token (plain text)
  POST /api/chat                 ResponseGenerator contract → {reply} | {error}
  POST /api/whisper              multipart `audio` → {text} | {error}
  GET  /health                   Liveness
  GET  /config                   Current EngineConfig
  PUT  /config                   Merge-patch + persist; applies to new sessions

Usage
-----
    python -m avatar_engine.server            # 0.0.0.0:8020
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError

from avatar_engine.avatar import HeyGenAvatarSink, create_streaming_token
from avatar_engine.config import DEFAULT_GUEST_NAME, EngineConfig
from avatar_engine.coordinator import PublishCallback, TurnCoordinator
from avatar_engine.host import SessionHost
from avatar_engine.llm import GroqBackend
from avatar_engine.models import UserProfile
from avatar_engine.prompts import build_chat_messages, build_game_explain_messages
from avatar_engine.responses import HttpResponseGenerator, HttpTokenClient, compose_greeting
from avatar_engine.speech import create_speech_source

load_dotenv()

log = logging.getLogger("avatar_engine.server")

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"
NO_REPLY = "죄송합니다. 답변을 생성하지 못했습니다."

TokenIssuer = Callable[[], Awaitable[str]]
CoordinatorFactory = Callable[[EngineConfig, PublishCallback], TurnCoordinator]


# ---------------------------------------------------------------------------
# WebSocket log broadcaster
# ---------------------------------------------------------------------------

class LogBroadcaster:
    """Fan-out hub for log events to every connected /ws/logs client."""
    def __init__(self, history_size: int = 500) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late joiners
        self._history_size = history_size

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history:
            try:
                await ws.send_text(json.dumps(event, ensure_ascii=False))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > self._history_size:
            self._history = self._history[-self._history_size:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event, ensure_ascii=False))
            except Exception:
                dead.add(ws)
        self._clients -= dead


class _WsBroadcastHandler(logging.Handler):
    """Forwards every avatar_engine log record to the broadcaster."""
    def __init__(self, broadcaster: LogBroadcaster) -> None:
        super().__init__()
        self._broadcaster = broadcaster

    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no event loop yet during startup
        loop.call_soon_threadsafe(lambda: loop.create_task(self._broadcaster.broadcast(event)))


def configure_logging(broadcaster: Optional[LogBroadcaster] = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    if broadcaster is not None:
        handler = _WsBroadcastHandler(broadcaster)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        logging.getLogger("avatar_engine").addHandler(handler)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    type: str = "chat"
    message: Optional[str] = None
    history: list[dict[str, Any]] = []
    userName: Optional[str] = None
    userStats: Optional[dict[str, Any]] = None
    customer: Optional[dict[str, Any]] = None
    game: Optional[str] = None

    def user_name(self) -> str:
        if self.userName:
            return self.userName
        if self.customer:
            return str(self.customer.get("name") or "")
        return ""


# ---------------------------------------------------------------------------
# Default collaborators
# ---------------------------------------------------------------------------

def default_token_issuer(config_getter: Callable[[], EngineConfig]) -> TokenIssuer:
    async def issue() -> str:
        api_key = os.environ.get("HEYGEN_API_KEY")
        if not api_key:
            raise RuntimeError("HEYGEN_API_KEY is missing from .env")
        return await create_streaming_token(api_key, api_base=config_getter().avatar.api_base)
    return issue


def default_coordinator_factory(config: EngineConfig, on_publish: PublishCallback) -> TurnCoordinator:
    """Widget wiring: HTTP token + chat clients, HeyGen avatar, configured speech backend."""
    token_client = HttpTokenClient(config.services)
    deepgram_key = os.environ.get("DEEPGRAM_API_KEY")
    return TurnCoordinator(
        config,
        fetch_token=token_client,
        avatar_factory=HeyGenAvatarSink,
        generator=HttpResponseGenerator(config.services),
        speech_factory=lambda callbacks: create_speech_source(
            config.speech, callbacks, deepgram_api_key=deepgram_key,
        ),
        on_publish=on_publish,
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config_path: Optional[str | Path] = None,
    *,
    llm: Optional[GroqBackend] = None,
    token_issuer: Optional[TokenIssuer] = None,
    coordinator_factory: CoordinatorFactory = default_coordinator_factory,
    broadcaster: Optional[LogBroadcaster] = None,
) -> FastAPI:
    path = Path(config_path or os.getenv("ENGINE_CONFIG_PATH", "engine_config.json"))
    state: dict[str, Any] = {"config": EngineConfig.load(path)}
    hosts: Set[SessionHost] = set()
    logs = broadcaster or LogBroadcaster()

    def current_config() -> EngineConfig:
        return state["config"]

    backend = llm or GroqBackend(current_config().llm, language=current_config().speech.language)
    issue_token = token_issuer or default_token_issuer(current_config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("event=server_start config=%s", path)
        yield
        log.info("event=server_shutdown active_sessions=%d", len(hosts))
        await asyncio.gather(*(h.close() for h in list(hosts)), return_exceptions=True)
        await backend.aclose()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Avatar Engine",
        version="1.0.0",
        description="Turn-taking backend for the brain-game avatar widget",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.broadcaster = logs
    app.state.hosts = hosts

    # -- HTTP --------------------------------------------------------------------

    @app.post("/api/get-access-token", response_class=PlainTextResponse)
    async def get_access_token() -> PlainTextResponse:
        try:
            token = await issue_token()
        except Exception as exc:
            log.error("event=access_token_failed error=%s", exc)
            raise HTTPException(status_code=500, detail="Failed to retrieve access token") from exc
        log.info("event=access_token_issued")
        return PlainTextResponse(token)

    @app.post("/api/chat")
    async def chat(body: ChatRequest) -> JSONResponse:
        if body.type == "greeting":
            profile = UserProfile(name=body.user_name(), stats=body.userStats, customer=body.customer)
            return JSONResponse({"reply": compose_greeting(profile, DEFAULT_GUEST_NAME)})

        if body.type == "game_explain":
            if not body.game:
                raise HTTPException(status_code=400, detail="game is required for game_explain")
            messages = build_game_explain_messages(body.game)
        elif body.type == "chat":
            if not body.message:
                raise HTTPException(status_code=400, detail="message is required for chat")
            messages = build_chat_messages(body.message, body.history, body.user_name(), body.userStats)
        else:
            raise HTTPException(status_code=400, detail=f"Unknown request type '{body.type}'")

        try:
            reply = await backend.complete(messages)
        except Exception as exc:
            log.error("event=chat_failed type=%s error=%s", body.type, exc)
            return JSONResponse({"error": "Failed to get response"}, status_code=500)
        return JSONResponse({"reply": reply or NO_REPLY})

    @app.post("/api/whisper")
    async def whisper(audio: Optional[UploadFile] = File(None)) -> JSONResponse:
        if audio is None:
            return JSONResponse({"error": "오디오 파일이 없습니다"}, status_code=400)
        data = await audio.read()
        log.info("event=whisper_request filename=%s bytes=%d", audio.filename, len(data))
        try:
            text = await backend.transcribe(audio.filename or "speech.wav", data)
        except Exception as exc:
            log.error("event=whisper_failed error=%s", exc)
            return JSONResponse({"error": "음성 인식 실패"}, status_code=500)
        return JSONResponse({"text": text})

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":          "ok",
            "active_sessions": len(hosts),
            "speech_backend":  current_config().speech.backend,
        })

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(current_config().model_dump())

    @app.put("/config")
    async def put_config(patch: dict[str, Any]) -> JSONResponse:
        """Merge-patch the config.  Running sessions keep the config they started with."""
        try:
            updated = current_config().merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=json.loads(exc.json())) from exc
        state["config"] = updated
        updated.save(path)
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(updated.model_dump())

    # -- websockets ----------------------------------------------------------------

    @app.websocket("/ws/control")
    async def ws_control(ws: WebSocket) -> None:
        """One widget session.  Inbound control messages, outbound status updates."""
        await ws.accept()
        outbox: asyncio.Queue[dict] = asyncio.Queue()
        host = SessionHost(
            lambda on_publish: coordinator_factory(current_config(), on_publish),
            outbox.put_nowait,
        )
        hosts.add(host)
        log.info("event=control_client_connected remote=%s", ws.client)

        async def writer() -> None:
            while True:
                message = await outbox.get()
                await ws.send_text(json.dumps(message, ensure_ascii=False))

        writer_task = asyncio.create_task(writer(), name="control_writer")
        try:
            while True:
                await host.handle(await ws.receive_text())
        except WebSocketDisconnect:
            pass
        finally:
            hosts.discard(host)
            await host.close()
            writer_task.cancel()
            log.info("event=control_client_disconnected remote=%s", ws.client)

    @app.websocket("/ws/logs")
    async def ws_logs(ws: WebSocket) -> None:
        await logs.connect(ws)
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            logs.disconnect(ws)

    return app


def main() -> None:
    import uvicorn

    broadcaster = LogBroadcaster()
    configure_logging(broadcaster)
    app = create_app(broadcaster=broadcaster)
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8020")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
