"""
host.py — Avatar Engine · Control-channel session host
======================================================
Maps the embedding page's control messages onto one TurnCoordinator and
publishes coordinator updates back to the page.

Inbound (JSON, one object per message)
──────────────────────────────────────
    START_AVATAR   {name?, stats?, customer?}   reset, then start fresh
    RESET_AVATAR / STOP_AVATAR                  reset
    EXPLAIN_GAME   {game}                       speak a game explanation
    CUSTOMER_LOGIN {customer} / CUSTOMER_LOGOUT replace / clear customer
    USER_MESSAGE   {message}                    typed turn
    TOGGLE_MIC                                  microphone button

Unknown types and malformed payloads are ignored.

Outbound
────────
    {"type": "STATUS",  "status": ..., "phase": ...}
    {"type": "INTERIM", "text": ...}
    {"type": "TURN",    "role": ..., "content": ...}
    {"type": "NOTICE",  "message": ...}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from avatar_engine.coordinator import PublishCallback, TurnCoordinator
from avatar_engine.models import UserProfile

log = logging.getLogger("avatar_engine.host")

CoordinatorFactory = Callable[[PublishCallback], TurnCoordinator]


class ControlMessage(BaseModel):
    """One inbound control command.  Extra fields are ignored."""
    model_config = ConfigDict(extra="ignore")

    type: str
    name: Optional[str] = None
    stats: Optional[dict[str, Any]] = None
    customer: Optional[dict[str, Any]] = None
    game: Optional[str] = None
    message: Optional[str] = None


class SessionHost:
    def __init__(self, coordinator_factory: CoordinatorFactory, send: Callable[[dict], None]) -> None:
        self._send = send
        self.coordinator = coordinator_factory(self.publish)
        # Identity of the current session; cleared on every reset
        self._name = ""
        self._stats: Optional[dict[str, Any]] = None
        self._customer: Optional[dict[str, Any]] = None
        self._handlers = {
            "START_AVATAR":    self._on_start,
            "RESET_AVATAR":    self._on_reset,
            "STOP_AVATAR":     self._on_reset,
            "EXPLAIN_GAME":    self._on_explain_game,
            "CUSTOMER_LOGIN":  self._on_login,
            "CUSTOMER_LOGOUT": self._on_logout,
            "USER_MESSAGE":    self._on_user_message,
            "TOGGLE_MIC":      self._on_toggle_mic,
        }

    @property
    def profile(self) -> UserProfile:
        return UserProfile(name=self._name, stats=self._stats, customer=self._customer)

    def publish(self, kind: str, payload: dict) -> None:
        self._send({"type": kind.upper(), **payload})

    async def handle(self, raw: Union[str, bytes, dict]) -> bool:
        """Apply one control message.  Returns False when it was ignored."""
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            msg = ControlMessage.model_validate(data)
        except (ValueError, ValidationError) as exc:
            log.warning("event=control_message_invalid error=%s", exc)
            return False

        handler = self._handlers.get(msg.type)
        if handler is None:
            log.debug("event=control_message_ignored type=%s", msg.type)
            return False
        log.info("event=control_message type=%s", msg.type)
        await handler(msg)
        return True

    async def close(self) -> None:
        await self.coordinator.destroy()

    # -- command handlers -------------------------------------------------------

    async def _on_start(self, msg: ControlMessage) -> None:
        await self._on_reset(msg)
        if msg.name:
            self._name = msg.name
        if msg.stats is not None:
            self._stats = msg.stats
        if msg.customer is not None:
            self._customer = msg.customer
        await self.coordinator.start(self.profile)

    async def _on_reset(self, msg: ControlMessage) -> None:
        await self.coordinator.reset()
        self._name = ""
        self._stats = None
        self._customer = None

    async def _on_explain_game(self, msg: ControlMessage) -> None:
        if msg.game:
            self.coordinator.explain_game(msg.game)

    async def _on_login(self, msg: ControlMessage) -> None:
        self._customer = msg.customer
        self._refresh_profile()

    async def _on_logout(self, msg: ControlMessage) -> None:
        self._customer = None
        self._refresh_profile()

    async def _on_user_message(self, msg: ControlMessage) -> None:
        if msg.message:
            self.coordinator.send_text(msg.message)

    async def _on_toggle_mic(self, msg: ControlMessage) -> None:
        self.coordinator.toggle_microphone()

    def _refresh_profile(self) -> None:
        if self.coordinator.state.has_started:
            self.coordinator.update_profile(self.profile)
