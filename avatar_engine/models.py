"""Data model shared by the coordinator, the host and the collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Optional


class Phase(Enum):
    IDLE         = "idle"
    CONNECTING   = "connecting"
    GREETING     = "greeting"
    LISTENING    = "listening"
    PROCESSING   = "processing"
    SPEAKING     = "speaking"
    DISCONNECTED = "disconnected"
    DESTROYED    = "destroyed"


class MicState(Enum):
    LISTENING = "listening"
    PAUSED    = "paused"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class ConversationTurn:
    """One entry of the conversation log."""
    role: Literal["user", "assistant"]
    content: str
    greeting: bool = False  # greetings are logged but never sent back as history

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class UtteranceEvent:
    """A recognition result produced by a SpeechInputSource."""
    text: str
    is_final: bool
    ordinal: int = 0


@dataclass(frozen=True)
class UserProfile:
    """Read-only identity + statistics supplied by the embedding page."""
    name: str = ""
    stats: Optional[Mapping[str, Any]] = None
    customer: Optional[Mapping[str, Any]] = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.customer:
            return str(self.customer.get("name") or "")
        return ""

    @property
    def total_games(self) -> int:
        """Number of games played, tolerant of string values from the page."""
        if not self.stats:
            return 0
        try:
            return int(self.stats.get("total_games") or 0)
        except (TypeError, ValueError):
            return 0


@dataclass(frozen=True)
class ResponseRequest:
    """Everything a ResponseGenerator needs for one reply."""
    kind: Literal["greeting", "chat", "game_explain"]
    message: str = ""
    history: tuple[ConversationTurn, ...] = field(default_factory=tuple)
    profile: Optional[UserProfile] = None
    game: str = ""

    def to_payload(self) -> dict:
        """JSON body of the /api/chat contract."""
        payload: dict[str, Any] = {"type": self.kind}
        if self.message:
            payload["message"] = self.message
        if self.kind == "chat":
            payload["history"] = [t.to_dict() for t in self.history]
        if self.game:
            payload["game"] = self.game
        if self.profile is not None:
            payload["userName"] = self.profile.display_name
            if self.profile.stats is not None:
                payload["userStats"] = dict(self.profile.stats)
            if self.profile.customer is not None:
                payload["customer"] = dict(self.profile.customer)
        return payload
