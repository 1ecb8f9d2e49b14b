"""Shared fakes for the coordinator collaborators."""

import asyncio
from typing import Optional

import pytest

from avatar_engine.avatar import AvatarOutputSink
from avatar_engine.config import AvatarConfig, EngineConfig
from avatar_engine.coordinator import TurnCoordinator
from avatar_engine.responses import ResponseGenerator

FAST_TURNS = {
    "turn": {
        "greeting_settle_sec": 0.0,
        "resume_settle_sec": 0.0,
        "teardown_quiescence_sec": 0.0,
    }
}

REPLIES = {
    "greeting": "안녕하세요, 김철수님!",
    "chat": "최고 점수는 90점이에요.",
    "game_explain": "화투 짝맞추기는 같은 그림의 패를 찾는 게임이에요.",
}


async def settle(rounds: int = 50) -> None:
    """Let pending tasks and zero-delay timers run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeAvatar(AvatarOutputSink):
    def __init__(self, config: AvatarConfig) -> None:
        super().__init__()
        self.config = config
        self.calls: list[tuple] = []
        self.spoken: list[str] = []
        self.speak_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.interrupt_error: Optional[Exception] = None

    def initialize(self, token: str) -> "FakeAvatar":
        self.calls.append(("initialize", token))
        return self

    async def start(self, config: AvatarConfig) -> None:
        self.calls.append(("start",))
        if self.start_error is not None:
            raise self.start_error

    async def speak(self, text: str) -> None:
        self.calls.append(("speak", text))
        if self.speak_error is not None:
            raise self.speak_error
        self.spoken.append(text)

    async def interrupt(self) -> None:
        self.calls.append(("interrupt",))
        if self.interrupt_error is not None:
            raise self.interrupt_error

    async def stop(self) -> None:
        self.calls.append(("stop",))
        if self.stop_error is not None:
            raise self.stop_error

    def emit(self, name: str) -> None:
        self._call_event_handler(name)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class FakeSpeech:
    """Duck-typed SpeechInputSource that records lifecycle calls."""

    def __init__(self, callbacks) -> None:
        self.callbacks = callbacks
        self.calls: list[str] = []
        self._paused = True
        self.destroyed = False

    def start(self) -> None:
        self.calls.append("start")
        self._paused = False

    def pause(self) -> None:
        self.calls.append("pause")
        self._paused = True

    def resume(self) -> None:
        self.calls.append("resume")
        self._paused = False

    def is_paused(self) -> bool:
        return self._paused

    def destroy(self) -> None:
        self.calls.append("destroy")
        self.destroyed = True
        self._paused = True

    def say(self, text: str, is_final: bool = True) -> None:
        self.callbacks.on_result(text, is_final)


class FakeGenerator(ResponseGenerator):
    def __init__(self) -> None:
        self.requests = []
        self.replies = dict(REPLIES)
        self.hold: Optional[asyncio.Event] = None
        self.closed = False

    async def generate(self, request) -> str:
        self.requests.append(request)
        if self.hold is not None:
            await self.hold.wait()
        return self.replies[request.kind]

    async def aclose(self) -> None:
        self.closed = True

    def of_kind(self, kind: str) -> list:
        return [r for r in self.requests if r.kind == kind]


class FakeTokens:
    def __init__(self) -> None:
        self.calls = 0
        self.error: Optional[Exception] = None

    async def __call__(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return f"token-{self.calls}"


class Harness:
    """A TurnCoordinator wired to fakes, plus handles on every fake."""

    def __init__(self, patch: Optional[dict] = None, on_publish=None) -> None:
        self.config = EngineConfig().merge_patch(patch or FAST_TURNS)
        self.tokens = FakeTokens()
        self.generator = FakeGenerator()
        self.avatars: list[FakeAvatar] = []
        self.speech_sources: list[FakeSpeech] = []
        self.published: list[tuple[str, dict]] = []
        self._forward = on_publish
        self.coordinator = TurnCoordinator(
            self.config,
            fetch_token=self.tokens,
            avatar_factory=self._make_avatar,
            generator=self.generator,
            speech_factory=self._make_speech,
            on_publish=self._publish,
        )

    def _publish(self, kind: str, payload: dict) -> None:
        self.published.append((kind, payload))
        if self._forward is not None:
            self._forward(kind, payload)

    def _make_avatar(self, config: AvatarConfig) -> FakeAvatar:
        avatar = FakeAvatar(config)
        self.avatars.append(avatar)
        return avatar

    def _make_speech(self, callbacks) -> FakeSpeech:
        speech = FakeSpeech(callbacks)
        self.speech_sources.append(speech)
        return speech

    @property
    def avatar(self) -> FakeAvatar:
        return self.avatars[-1]

    @property
    def speech(self) -> FakeSpeech:
        return self.speech_sources[-1]

    def published_of(self, kind: str) -> list[dict]:
        return [payload for k, payload in self.published if k == kind]

    async def start_and_greet(self, profile=None) -> None:
        """start → stream_ready → greeting spoken → avatar done talking → listening."""
        await self.coordinator.start(profile)
        await settle()
        self.avatar.emit("stream_ready")
        await settle()
        self.avatar.emit("start_talking")
        self.avatar.emit("stop_talking")
        await settle()


@pytest.fixture
def harness_factory():
    return Harness


@pytest.fixture
def fast_config() -> EngineConfig:
    return EngineConfig().merge_patch(FAST_TURNS)
