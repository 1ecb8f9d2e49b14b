import pytest
from pydantic import ValidationError

from avatar_engine.config import EngineConfig, VadConfig


def test_defaults_match_widget_tuning():
    config = EngineConfig()
    assert config.turn.greeting_settle_sec == 1.5
    assert config.turn.resume_settle_sec == 0.5
    assert config.turn.guest_name == "손님"
    assert config.avatar.quality == "low"
    assert config.avatar.voice.rate == 1.5
    assert config.speech.backend == "deepgram"
    assert config.speech.vad == VadConfig()


def test_models_are_frozen():
    config = EngineConfig()
    with pytest.raises(ValidationError):
        config.turn.resume_settle_sec = 2.0


def test_missing_file_gives_defaults(tmp_path):
    assert EngineConfig.load(tmp_path / "absent.json") == EngineConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "engine_config.json"
    config = EngineConfig().merge_patch({"avatar": {"knowledge_base_id": "kb-7"}})
    config.save(path)
    assert EngineConfig.load(path) == config


def test_cleared_optional_settings_survive_a_restart(tmp_path):
    path = tmp_path / "engine_config.json"
    config = EngineConfig().merge_patch({"llm": {"temperature": None, "max_tokens": None}})
    config.save(path)
    loaded = EngineConfig.load(path)
    assert loaded.llm.temperature is None
    assert loaded.llm.max_tokens is None
    assert loaded == config


def test_invalid_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "engine_config.json"
    path.write_text('{"turn": {"resume_settle_sec": "soon"}}', encoding="utf-8")
    assert EngineConfig.load(path) == EngineConfig()


def test_merge_patch_is_nested_and_leaves_original_alone():
    base = EngineConfig()
    patched = base.merge_patch({"speech": {"vad": {"silence_duration_ms": 2000}}})
    assert patched.speech.vad.silence_duration_ms == 2000
    assert patched.speech.vad.speech_threshold == base.speech.vad.speech_threshold
    assert patched.speech.language == "ko"
    assert base.speech.vad.silence_duration_ms == 1500


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        EngineConfig().merge_patch({"speech": {"backend": "browser"}})
