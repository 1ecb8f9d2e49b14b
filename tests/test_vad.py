import pytest

from avatar_engine.config import VadConfig
from avatar_engine.vad import GateEvent, VoiceActivityGate

LOUD = 0.2
MID = 0.02      # between the two thresholds
QUIET = 0.001


def feed(gate, levels, start_ms=0, step_ms=100):
    """Feed one level per interval; returns [(t_ms, event)] for non-None events."""
    events = []
    for i, level in enumerate(levels):
        t = start_ms + i * step_ms
        event = gate.update(level, t)
        if event is not None:
            events.append((t, event))
    return events


@pytest.fixture
def gate():
    return VoiceActivityGate(VadConfig())


def test_recording_starts_above_speech_threshold(gate):
    assert feed(gate, [QUIET, MID, LOUD]) == [(200, GateEvent.SPEECH_STARTED)]
    assert gate.recording


def test_recording_stops_after_sustained_silence(gate):
    events = feed(gate, [LOUD] * 10 + [QUIET] * 20)
    # silence begins at 1000 ms, 1500 ms of it ends the recording
    assert events == [(0, GateEvent.SPEECH_STARTED), (2500, GateEvent.SPEECH_STOPPED)]
    assert not gate.recording


def test_short_recordings_do_not_end_before_minimum():
    gate = VoiceActivityGate(VadConfig(silence_duration_ms=100, min_recording_ms=1000))
    events = feed(gate, [LOUD] + [QUIET] * 15)
    assert events[-1] == (1000, GateEvent.SPEECH_STOPPED)


def test_level_between_thresholds_is_not_silence(gate):
    events = feed(gate, [LOUD] + [QUIET] * 10 + [MID] + [QUIET] * 10)
    assert events == [(0, GateEvent.SPEECH_STARTED)]


def test_runaway_recording_is_cut_at_maximum():
    gate = VoiceActivityGate(VadConfig(max_recording_ms=2000))
    events = feed(gate, [LOUD] * 25)
    assert (2000, GateEvent.SPEECH_STOPPED) in events


def test_suspended_gate_is_inert_and_discards_recording(gate):
    feed(gate, [LOUD])
    assert gate.suspend() is True
    assert gate.suspended
    assert feed(gate, [LOUD] * 5, start_ms=100) == []
    gate.resume()
    assert feed(gate, [LOUD], start_ms=600) == [(600, GateEvent.SPEECH_STARTED)]


def test_busy_gate_ignores_speech_while_transcribing(gate):
    gate.set_busy(True)
    assert feed(gate, [LOUD] * 3) == []
    gate.set_busy(False)
    assert feed(gate, [LOUD], start_ms=300) == [(300, GateEvent.SPEECH_STARTED)]


def test_suspend_without_recording_reports_nothing_discarded(gate):
    assert gate.suspend() is False


def test_thresholds_must_leave_a_hysteresis_band():
    with pytest.raises(ValueError):
        VoiceActivityGate(VadConfig(speech_threshold=0.02, silence_threshold=0.02))


def test_interval_in_seconds(gate):
    assert gate.interval_sec == pytest.approx(0.1)
