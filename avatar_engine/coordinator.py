"""
coordinator.py — Avatar Engine · TurnCoordinator
================================================
Driver around the pure transition function in state_machine.py.

    dispatch(event) → transition() → execute effects

Effects are executed in order:

  • microphone effects (start / pause / resume) run inline, so the source
    is paused before the next event can be delivered
  • network effects (token + connect, greeting, reply, speak, interrupt)
    run as tracked tasks that report back by dispatching an event stamped
    with the session generation they were started for
  • settle timers use loop.call_later and are cancelled on teardown

Teardown
────────
Reset / disconnect / destroy cancel every timer and task, destroy the
speech source, stop the avatar (errors tolerated) and hold the coordinator
busy for `teardown_quiescence_sec`.  `start()` awaits that quiescence, so
two avatar sessions never overlap.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional

from avatar_engine.avatar import AvatarOutputSink
from avatar_engine.config import EMPTY_REPLY, FALLBACK_REPLY, AvatarConfig, EngineConfig
from avatar_engine.models import ConversationTurn, MicState, Phase, ResponseRequest, UserProfile, UtteranceEvent
from avatar_engine.responses import ResponseGenerator, compose_greeting
from avatar_engine.speech import SpeechCallbacks, SpeechInputSource
from avatar_engine.state_machine import (
    AvatarStartTalking,
    AvatarStopTalking,
    Connect,
    ConnectFailed,
    CoordinatorState,
    Destroy,
    Disconnected,
    Event,
    ExplainGame,
    GenerateResponse,
    GreetingReady,
    Interrupt,
    Notify,
    PauseMic,
    Publish,
    RequestGreeting,
    Reset,
    ResponseReceived,
    ResumeMic,
    ScheduleTimer,
    Speak,
    SpeakFinished,
    SpeechError,
    Start,
    StartMic,
    StreamReady,
    Teardown,
    ToggleMicrophone,
    UpdateProfile,
    UserMessage,
    Utterance,
    transition,
)

log = logging.getLogger("avatar_engine.coordinator")

TokenFetcher = Callable[[], Awaitable[str]]
AvatarFactory = Callable[[AvatarConfig], AvatarOutputSink]
SpeechFactory = Callable[[SpeechCallbacks], SpeechInputSource]
PublishCallback = Callable[[str, dict], None]


class TurnCoordinator:
    def __init__(
        self,
        config: EngineConfig,
        *,
        fetch_token: TokenFetcher,
        avatar_factory: AvatarFactory,
        generator: ResponseGenerator,
        speech_factory: SpeechFactory,
        on_publish: Optional[PublishCallback] = None,
    ) -> None:
        self._config = config
        self._fetch_token = fetch_token
        self._avatar_factory = avatar_factory
        self._generator = generator
        self._speech_factory = speech_factory
        self._on_publish = on_publish

        self._state = CoordinatorState()
        self._avatar: Optional[AvatarOutputSink] = None
        self._speech: Optional[SpeechInputSource] = None
        self._timers: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()
        self._interrupting: Optional[asyncio.Task] = None
        self._teardowns_pending = 0
        self._teardown_tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._ordinal = 0
        self._last_status = self._state.status

    # -- read-only view ---------------------------------------------------------

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return self._state.history

    @property
    def mic_state(self) -> Optional[MicState]:
        return self._state.mic

    @property
    def tearing_down(self) -> bool:
        return not self._idle.is_set()

    # -- public operations -----------------------------------------------------

    async def start(self, profile: Optional[UserProfile] = None) -> bool:
        """Open a session.  Returns False when one is already running (idempotent start)."""
        if self._state.has_started:
            log.info("event=start_ignored reason=already_started phase=%s", self._state.phase.name)
            return False
        if not self._idle.is_set():
            log.info("event=start_waiting_for_teardown")
            await self._idle.wait()
        generation = self._state.generation
        self.dispatch(Start(profile=profile, session_id=uuid.uuid4().hex))
        return self._state.generation != generation

    async def reset(self) -> None:
        self.dispatch(Reset())
        await self._idle.wait()

    async def destroy(self) -> None:
        """Terminal teardown.  The coordinator ignores every later event."""
        if self._state.phase is Phase.DESTROYED:
            return
        self.dispatch(Destroy())
        await self._idle.wait()
        try:
            await self._generator.aclose()
        except Exception as exc:
            log.warning("event=generator_close_failed error=%s", exc)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def toggle_microphone(self) -> None:
        self.dispatch(ToggleMicrophone())

    def send_text(self, text: str) -> None:
        self.dispatch(UserMessage(text))

    def explain_game(self, game: str) -> None:
        self.dispatch(ExplainGame(game))

    def update_profile(self, profile: Optional[UserProfile]) -> None:
        self.dispatch(UpdateProfile(profile))

    # -- dispatch ---------------------------------------------------------------

    def dispatch(self, event: Event) -> None:
        before = self._state
        self._state, effects = transition(before, event, self._config.turn)
        after = self._state

        if after.phase is not before.phase:
            log.info("event=phase_change from=%s to=%s trigger=%s",
                     before.phase.name, after.phase.name, type(event).__name__)
        if after.generation == before.generation and len(after.history) > len(before.history):
            for turn in after.history[len(before.history):]:
                self._publish("turn", turn.to_dict())

        for effect in effects:
            self._execute(effect)

        status = self._state.status
        if status != self._last_status:
            self._last_status = status
            self._publish("status", {"status": status, "phase": self._state.phase.value})

    def _execute(self, effect: Any) -> None:
        if isinstance(effect, Connect):
            self._spawn(self._connect(effect.generation), "connect")
        elif isinstance(effect, ScheduleTimer):
            self._schedule(effect.event, effect.delay)
        elif isinstance(effect, RequestGreeting):
            self._spawn(self._greet(effect.generation, effect.profile), "greeting")
        elif isinstance(effect, Speak):
            self._spawn(self._speak(effect.generation, effect.text), "speak")
        elif isinstance(effect, Interrupt):
            self._interrupting = self._spawn(self._interrupt(), "interrupt")
        elif isinstance(effect, GenerateResponse):
            self._spawn(self._respond(effect), "respond")
        elif isinstance(effect, StartMic):
            self._start_mic(effect.generation)
        elif isinstance(effect, PauseMic):
            if self._speech is not None:
                self._speech.pause()
        elif isinstance(effect, ResumeMic):
            if self._speech is None:
                self._start_mic(self._state.generation)
            else:
                self._speech.resume()
        elif isinstance(effect, Teardown):
            self._teardown()
        elif isinstance(effect, Notify):
            log.warning("event=user_notice message=%s", effect.message)
            self._publish("notice", {"message": effect.message})
        elif isinstance(effect, Publish):
            self._publish(effect.kind, effect.payload)
        else:
            raise TypeError(f"Unknown coordinator effect: {effect!r}")

    def _publish(self, kind: str, payload: dict) -> None:
        if self._on_publish is None:
            return
        try:
            self._on_publish(kind, payload)
        except Exception:
            log.exception("event=publish_failed kind=%s", kind)

    # -- scheduling helpers ------------------------------------------------------

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"coordinator_{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule(self, event: Event, delay: float) -> None:
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)
            self.dispatch(event)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    # -- effect bodies ------------------------------------------------------------

    async def _connect(self, generation: int) -> None:
        try:
            token = await self._fetch_token()
        except Exception as exc:
            log.error("event=token_fetch_failed error=%s", exc)
            self.dispatch(ConnectFailed(generation, f"token: {exc}"))
            return
        if generation != self._state.generation:
            return

        avatar = self._avatar_factory(self._config.avatar)
        avatar.initialize(token)
        self._bind(avatar, generation)
        self._avatar = avatar
        try:
            await avatar.start(self._config.avatar)
        except Exception as exc:
            log.error("event=avatar_start_failed error=%s", exc)
            if self._avatar is avatar:
                self._avatar = None
            await self._stop_avatar(avatar)
            self.dispatch(ConnectFailed(generation, f"avatar: {exc}"))
            return
        if generation != self._state.generation:
            log.info("event=avatar_started_after_teardown generation=%d", generation)
            await self._stop_avatar(avatar)

    def _bind(self, avatar: AvatarOutputSink, generation: int) -> None:
        avatar.add_event_handler("stream_ready", lambda: self.dispatch(StreamReady(generation)))
        avatar.add_event_handler("start_talking", lambda: self.dispatch(AvatarStartTalking(generation)))
        avatar.add_event_handler("stop_talking", lambda: self.dispatch(AvatarStopTalking(generation)))
        avatar.add_event_handler("disconnected", lambda: self.dispatch(Disconnected(generation)))

    async def _greet(self, generation: int, profile: Optional[UserProfile]) -> None:
        text = ""
        try:
            text = await self._generator.generate(ResponseRequest(kind="greeting", profile=profile))
        except Exception as exc:
            log.warning("event=greeting_generation_failed error=%s", exc)
        if not text.strip() or text in (FALLBACK_REPLY, EMPTY_REPLY):
            text = compose_greeting(profile, self._config.turn.guest_name)
            log.info("event=greeting_composed_locally")
        self.dispatch(GreetingReady(generation, text))

    async def _speak(self, generation: int, text: str) -> None:
        if self._interrupting is not None and not self._interrupting.done():
            await asyncio.wait({self._interrupting})
        avatar = self._avatar
        failed = avatar is None
        if avatar is not None:
            try:
                await avatar.speak(text)
            except Exception as exc:
                log.warning("event=avatar_speak_failed error=%s", exc)
                failed = True
        self.dispatch(SpeakFinished(generation, failed=failed))

    async def _interrupt(self) -> None:
        avatar = self._avatar
        if avatar is None:
            return
        try:
            await avatar.interrupt()
        except Exception as exc:
            log.warning("event=avatar_interrupt_failed error=%s", exc)

    async def _respond(self, effect: GenerateResponse) -> None:
        try:
            reply = await self._generator.generate(effect.request)
        except Exception as exc:
            log.error("event=response_generation_failed type=%s error=%s", effect.request.kind, exc)
            reply = FALLBACK_REPLY
        self.dispatch(ResponseReceived(effect.generation, effect.turn_id, reply, record=effect.record))

    # -- microphone -----------------------------------------------------------------

    def _speech_callbacks(self, generation: int) -> SpeechCallbacks:
        def on_result(text: str, is_final: bool) -> None:
            self._ordinal += 1
            self.dispatch(Utterance(generation, UtteranceEvent(text, is_final, self._ordinal)))

        def on_error(code: str) -> None:
            self.dispatch(SpeechError(generation, code))

        return SpeechCallbacks(
            on_result=on_result,
            on_error=on_error,
            on_speech_start=lambda: log.debug("event=user_speech_started"),
            on_speech_end=lambda: log.debug("event=user_speech_ended"),
        )

    def _start_mic(self, generation: int) -> None:
        if self._speech is None:
            try:
                self._speech = self._speech_factory(self._speech_callbacks(generation))
            except Exception as exc:
                log.error("event=speech_source_unavailable error=%s", exc)
                asyncio.get_running_loop().call_soon(self.dispatch, SpeechError(generation, "not-allowed"))
                return
        self._speech.start()
        log.info("event=mic_started generation=%d", generation)

    # -- teardown ---------------------------------------------------------------------

    def _teardown(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()
        self._interrupting = None

        if self._speech is not None:
            self._speech.destroy()
            self._speech = None

        avatar, self._avatar = self._avatar, None
        self._teardowns_pending += 1
        self._idle.clear()
        task = asyncio.get_running_loop().create_task(self._finish_teardown(avatar), name="coordinator_teardown")
        self._teardown_tasks.add(task)
        task.add_done_callback(self._teardown_tasks.discard)
        log.info("event=teardown_started generation=%d phase=%s", self._state.generation, self._state.phase.name)

    async def _finish_teardown(self, avatar: Optional[AvatarOutputSink]) -> None:
        try:
            if avatar is not None:
                await self._stop_avatar(avatar)
            await asyncio.sleep(self._config.turn.teardown_quiescence_sec)
        finally:
            self._teardowns_pending -= 1
            if self._teardowns_pending == 0:
                self._idle.set()
                log.info("event=teardown_complete")

    async def _stop_avatar(self, avatar: AvatarOutputSink) -> None:
        try:
            await avatar.stop()
        except Exception as exc:
            log.warning("event=avatar_stop_failed error=%s", exc)
