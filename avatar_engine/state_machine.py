"""
state_machine.py — Avatar Engine · Turn-taking transition function
==================================================================
Pure state machine behind the TurnCoordinator.

    transition(state, event, config) -> (next_state, effects)

Nothing in this module performs I/O.  Effects (speak, interrupt, resume the
microphone, schedule a settle timer, ...) are returned as plain values and
executed by the driver in coordinator.py, so every transition can be tested
without an avatar connection or a microphone.

Phase flow
──────────
    IDLE → CONNECTING → GREETING → LISTENING ⇄ PROCESSING ⇄ SPEAKING
    any  → DISCONNECTED (transport lost)      any → IDLE (reset)
    any  → DESTROYED (terminal)

Stale-event rejection
─────────────────────
Every event that originates from an asynchronous operation carries the
`generation` of the session that started it.  A reset or disconnect bumps
the generation, so late token fetches, LLM replies, avatar events and
settle timers from a torn-down session are dropped here rather than
mutating the new one.  Resume timers additionally carry the `talk_epoch`
at which the avatar stopped talking; a start_talking in between bumps the
epoch and invalidates the timer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Union

from avatar_engine.config import MIC_PERMISSION_NOTICE, TurnConfig
from avatar_engine.models import (
    ConversationTurn,
    MicState,
    Phase,
    ResponseRequest,
    UserProfile,
    UtteranceEvent,
)

log = logging.getLogger("avatar_engine.state_machine")

ACTIVE_PHASES = frozenset({
    Phase.CONNECTING,
    Phase.GREETING,
    Phase.LISTENING,
    Phase.PROCESSING,
    Phase.SPEAKING,
})
CONVERSATION_PHASES = ACTIVE_PHASES - {Phase.CONNECTING}


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoordinatorState:
    phase: Phase = Phase.IDLE
    generation: int = 0
    session_id: str = ""
    has_greeted: bool = False
    avatar_speaking: bool = False
    mic: Optional[MicState] = None          # None: no speech source created yet
    mic_user_disabled: bool = False
    talk_epoch: int = 0
    turn_id: int = 0
    history: tuple[ConversationTurn, ...] = ()
    profile: Optional[UserProfile] = None
    error_notified: bool = False

    @property
    def has_started(self) -> bool:
        return self.phase in ACTIVE_PHASES

    @property
    def is_processing(self) -> bool:
        return self.phase in (Phase.PROCESSING, Phase.SPEAKING)

    @property
    def is_avatar_speaking(self) -> bool:
        return self.avatar_speaking

    @property
    def status(self) -> str:
        """Short status string shown by the embedding page."""
        if self.avatar_speaking:
            return "speaking"
        if self.is_processing:
            return "thinking"
        if self.mic is MicState.LISTENING:
            return "listening"
        if self.phase in (Phase.CONNECTING, Phase.GREETING):
            return "connecting"
        return "idle"

    def history_snapshot(self) -> tuple[ConversationTurn, ...]:
        """Completed exchanges, as handed to the ResponseGenerator."""
        return tuple(t for t in self.history if not t.greeting)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Start:
    profile: Optional[UserProfile] = None
    session_id: str = ""


@dataclass(frozen=True)
class ConnectFailed:
    generation: int
    reason: str = ""


@dataclass(frozen=True)
class StreamReady:
    generation: int


@dataclass(frozen=True)
class GreetingSettled:
    generation: int


@dataclass(frozen=True)
class GreetingReady:
    generation: int
    text: str


@dataclass(frozen=True)
class AvatarStartTalking:
    generation: int


@dataclass(frozen=True)
class AvatarStopTalking:
    generation: int


@dataclass(frozen=True)
class ResumeSettled:
    generation: int
    epoch: int


@dataclass(frozen=True)
class Utterance:
    generation: int
    utterance: UtteranceEvent


@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass(frozen=True)
class ExplainGame:
    game: str


@dataclass(frozen=True)
class ResponseReceived:
    generation: int
    turn_id: int
    reply: str
    record: bool = True


@dataclass(frozen=True)
class SpeakFinished:
    generation: int
    failed: bool = False


@dataclass(frozen=True)
class SpeechError:
    generation: int
    code: str


@dataclass(frozen=True)
class ToggleMicrophone:
    pass


@dataclass(frozen=True)
class UpdateProfile:
    profile: Optional[UserProfile]


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class Disconnected:
    generation: int


@dataclass(frozen=True)
class Destroy:
    pass


Event = Union[
    Start, ConnectFailed, StreamReady, GreetingSettled, GreetingReady,
    AvatarStartTalking, AvatarStopTalking, ResumeSettled, Utterance,
    UserMessage, ExplainGame, ResponseReceived, SpeakFinished, SpeechError,
    ToggleMicrophone, UpdateProfile, Reset, Disconnected, Destroy,
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Connect:
    generation: int


@dataclass(frozen=True)
class ScheduleTimer:
    event: Event
    delay: float


@dataclass(frozen=True)
class RequestGreeting:
    generation: int
    profile: Optional[UserProfile]


@dataclass(frozen=True)
class Speak:
    generation: int
    text: str


@dataclass(frozen=True)
class Interrupt:
    generation: int


@dataclass(frozen=True)
class GenerateResponse:
    generation: int
    turn_id: int
    request: ResponseRequest
    record: bool = True


@dataclass(frozen=True)
class StartMic:
    generation: int


@dataclass(frozen=True)
class PauseMic:
    pass


@dataclass(frozen=True)
class ResumeMic:
    pass


@dataclass(frozen=True)
class Teardown:
    pass


@dataclass(frozen=True)
class Notify:
    message: str


@dataclass(frozen=True)
class Publish:
    kind: str
    payload: dict = field(default_factory=dict)


Effect = Union[
    Connect, ScheduleTimer, RequestGreeting, Speak, Interrupt,
    GenerateResponse, StartMic, PauseMic, ResumeMic, Teardown, Notify,
    Publish,
]

Result = tuple[CoordinatorState, list]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _stale(state: CoordinatorState, event) -> bool:
    if event.generation != state.generation:
        log.debug(
            "event=stale_event_dropped type=%s event_gen=%d current_gen=%d",
            type(event).__name__, event.generation, state.generation,
        )
        return True
    return False


def _listen(state: CoordinatorState) -> Result:
    """Bring the microphone to LISTENING unless the user turned it off."""
    if state.mic_user_disabled or state.mic is MicState.DESTROYED:
        return state, []
    if state.mic is None:
        return replace(state, mic=MicState.LISTENING), [StartMic(state.generation)]
    if state.mic is MicState.PAUSED:
        return replace(state, mic=MicState.LISTENING), [ResumeMic()]
    return state, []


def _torn_down(state: CoordinatorState, phase: Phase) -> Result:
    """Fresh state after reset / disconnect / destroy.  Profile and log are cleared."""
    cleared = CoordinatorState(
        phase=phase,
        generation=state.generation + 1,
        mic=MicState.DESTROYED,
    )
    return cleared, [Teardown()]


def _begin_turn(state: CoordinatorState, text: str) -> Result:
    turn_id = state.turn_id + 1
    request = ResponseRequest(
        kind="chat",
        message=text,
        history=state.history_snapshot(),
        profile=state.profile,
    )
    next_state = replace(
        state,
        phase=Phase.PROCESSING,
        turn_id=turn_id,
        history=state.history + (ConversationTurn("user", text),),
    )
    log.info("event=turn_begin turn_id=%d text=%.80s", turn_id, text)
    return next_state, [
        Interrupt(state.generation),
        GenerateResponse(state.generation, turn_id, request),
    ]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _on_start(state: CoordinatorState, event: Start, config: TurnConfig) -> Result:
    if state.phase not in (Phase.IDLE, Phase.DISCONNECTED):
        log.info("event=start_ignored phase=%s", state.phase.name)
        return state, []
    generation = state.generation + 1
    next_state = CoordinatorState(
        phase=Phase.CONNECTING,
        generation=generation,
        session_id=event.session_id,
        profile=event.profile,
    )
    return next_state, [Connect(generation)]


def _on_connect_failed(state: CoordinatorState, event: ConnectFailed, config: TurnConfig) -> Result:
    if _stale(state, event) or state.phase is not Phase.CONNECTING:
        return state, []
    log.warning("event=connect_failed reason=%s", event.reason)
    return replace(state, phase=Phase.IDLE), []


def _on_stream_ready(state: CoordinatorState, event: StreamReady, config: TurnConfig) -> Result:
    if _stale(state, event):
        return state, []
    if state.has_greeted or state.phase is not Phase.CONNECTING:
        log.info("event=stream_ready_repeat phase=%s greeted=%s", state.phase.name, state.has_greeted)
        return state, []
    return replace(state, phase=Phase.GREETING), [
        ScheduleTimer(GreetingSettled(state.generation), config.greeting_settle_sec),
    ]


def _on_greeting_settled(state: CoordinatorState, event: GreetingSettled, config: TurnConfig) -> Result:
    if _stale(state, event) or state.phase is not Phase.GREETING or state.has_greeted:
        return state, []
    return state, [RequestGreeting(state.generation, state.profile)]


def _on_greeting_ready(state: CoordinatorState, event: GreetingReady, config: TurnConfig) -> Result:
    if _stale(state, event) or state.phase is not Phase.GREETING or state.has_greeted:
        return state, []
    next_state = replace(
        state,
        has_greeted=True,
        history=state.history + (ConversationTurn("assistant", event.text, greeting=True),),
    )
    return next_state, [Speak(state.generation, event.text)]


def _on_start_talking(state: CoordinatorState, event: AvatarStartTalking, config: TurnConfig) -> Result:
    if _stale(state, event) or state.phase not in ACTIVE_PHASES:
        return state, []
    next_state = replace(state, avatar_speaking=True, talk_epoch=state.talk_epoch + 1)
    if state.mic is MicState.LISTENING:
        return replace(next_state, mic=MicState.PAUSED), [PauseMic()]
    return next_state, []


def _on_stop_talking(state: CoordinatorState, event: AvatarStopTalking, config: TurnConfig) -> Result:
    if _stale(state, event) or state.phase not in ACTIVE_PHASES:
        return state, []
    next_state = replace(state, avatar_speaking=False)
    return next_state, [
        ScheduleTimer(ResumeSettled(state.generation, state.talk_epoch), config.resume_settle_sec),
    ]


def _on_resume_settled(state: CoordinatorState, event: ResumeSettled, config: TurnConfig) -> Result:
    if _stale(state, event):
        return state, []
    if event.epoch != state.talk_epoch or state.avatar_speaking:
        log.debug("event=resume_timer_superseded epoch=%d current=%d", event.epoch, state.talk_epoch)
        return state, []
    if state.phase not in CONVERSATION_PHASES or not state.has_greeted:
        return state, []
    return _listen(state)


def _on_utterance(state: CoordinatorState, event: Utterance, config: TurnConfig) -> Result:
    if _stale(state, event):
        return state, []
    utterance = event.utterance
    if state.mic is not MicState.LISTENING or state.avatar_speaking:
        log.info("event=utterance_suppressed mic=%s final=%s ordinal=%d text=%.40s",
                 state.mic.name if state.mic else None, utterance.is_final,
                 utterance.ordinal, utterance.text)
        return state, []
    text = utterance.text.strip()
    if not text:
        return state, []
    if not utterance.is_final:
        return state, [Publish("interim", {"text": text})]
    if state.phase is not Phase.LISTENING:
        log.info("event=utterance_dropped phase=%s text=%.40s", state.phase.name, text)
        return state, []
    return _begin_turn(state, text)


def _on_user_message(state: CoordinatorState, event: UserMessage, config: TurnConfig) -> Result:
    text = event.text.strip()
    if not text or state.phase is not Phase.LISTENING or state.avatar_speaking:
        log.info("event=user_message_dropped phase=%s", state.phase.name)
        return state, []
    return _begin_turn(state, text)


def _on_explain_game(state: CoordinatorState, event: ExplainGame, config: TurnConfig) -> Result:
    if not event.game or state.phase is not Phase.LISTENING or state.avatar_speaking:
        log.info("event=explain_game_dropped phase=%s avatar_speaking=%s", state.phase.name, state.avatar_speaking)
        return state, []
    turn_id = state.turn_id + 1
    request = ResponseRequest(kind="game_explain", game=event.game, profile=state.profile)
    next_state = replace(state, phase=Phase.PROCESSING, turn_id=turn_id)
    return next_state, [GenerateResponse(state.generation, turn_id, request, record=False)]


def _on_response(state: CoordinatorState, event: ResponseReceived, config: TurnConfig) -> Result:
    if _stale(state, event):
        return state, []
    if event.turn_id != state.turn_id or state.phase is not Phase.PROCESSING:
        log.info("event=response_discarded turn_id=%d phase=%s", event.turn_id, state.phase.name)
        return state, []
    history = state.history
    if event.record:
        history = history + (ConversationTurn("assistant", event.reply),)
    return replace(state, phase=Phase.SPEAKING, history=history), [Speak(state.generation, event.reply)]


def _on_speak_finished(state: CoordinatorState, event: SpeakFinished, config: TurnConfig) -> Result:
    if _stale(state, event):
        return state, []
    next_state = state
    if state.phase in (Phase.GREETING, Phase.SPEAKING):
        next_state = replace(state, phase=Phase.LISTENING)
    if not event.failed:
        return next_state, []
    # Speak failed: the avatar will never send stop_talking, resume right away.
    next_state = replace(next_state, avatar_speaking=False, talk_epoch=next_state.talk_epoch + 1)
    return _listen(next_state)


def _on_speech_error(state: CoordinatorState, event: SpeechError, config: TurnConfig) -> Result:
    if _stale(state, event):
        return state, []
    if event.code != "not-allowed":
        log.info("event=speech_error_ignored code=%s", event.code)
        return state, []
    next_state = replace(state, mic=MicState.PAUSED, mic_user_disabled=True)
    if state.error_notified:
        return next_state, []
    return replace(next_state, error_notified=True), [Notify(MIC_PERMISSION_NOTICE)]


def _on_toggle(state: CoordinatorState, event: ToggleMicrophone, config: TurnConfig) -> Result:
    if state.phase not in CONVERSATION_PHASES or state.avatar_speaking:
        log.info("event=toggle_ignored phase=%s speaking=%s", state.phase.name, state.avatar_speaking)
        return state, []
    if state.mic is MicState.LISTENING:
        return replace(state, mic=MicState.PAUSED, mic_user_disabled=True), [PauseMic()]
    return _listen(replace(state, mic_user_disabled=False, error_notified=False))


def _on_update_profile(state: CoordinatorState, event: UpdateProfile, config: TurnConfig) -> Result:
    return replace(state, profile=event.profile), []


def _on_reset(state: CoordinatorState, event: Reset, config: TurnConfig) -> Result:
    return _torn_down(state, Phase.IDLE)


def _on_disconnected(state: CoordinatorState, event: Disconnected, config: TurnConfig) -> Result:
    if _stale(state, event) or state.phase not in ACTIVE_PHASES:
        return state, []
    return _torn_down(state, Phase.DISCONNECTED)


def _on_destroy(state: CoordinatorState, event: Destroy, config: TurnConfig) -> Result:
    return _torn_down(state, Phase.DESTROYED)


_HANDLERS: dict[type, Callable[..., Result]] = {
    Start: _on_start,
    ConnectFailed: _on_connect_failed,
    StreamReady: _on_stream_ready,
    GreetingSettled: _on_greeting_settled,
    GreetingReady: _on_greeting_ready,
    AvatarStartTalking: _on_start_talking,
    AvatarStopTalking: _on_stop_talking,
    ResumeSettled: _on_resume_settled,
    Utterance: _on_utterance,
    UserMessage: _on_user_message,
    ExplainGame: _on_explain_game,
    ResponseReceived: _on_response,
    SpeakFinished: _on_speak_finished,
    SpeechError: _on_speech_error,
    ToggleMicrophone: _on_toggle,
    UpdateProfile: _on_update_profile,
    Reset: _on_reset,
    Disconnected: _on_disconnected,
    Destroy: _on_destroy,
}


def transition(state: CoordinatorState, event: Event, config: TurnConfig) -> Result:
    """Apply one event.  Returns the next state and the effects to execute, in order."""
    if state.phase is Phase.DESTROYED:
        return state, []
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown coordinator event: {event!r}")
    return handler(state, event, config)
