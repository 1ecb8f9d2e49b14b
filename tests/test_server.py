import json

import pytest
from fastapi.testclient import TestClient

from avatar_engine.server import NO_REPLY, LogBroadcaster, create_app

from conftest import Harness


class FakeLLM:
    def __init__(self):
        self.messages = []
        self.reply = "화투 짝맞추기에서 최고 90점을 기록하셨어요!"
        self.error = None
        self.transcripts = []
        self.closed = False

    async def complete(self, messages):
        self.messages.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply

    async def transcribe(self, filename, audio):
        self.transcripts.append((filename, audio))
        if self.error is not None:
            raise self.error
        return "안녕하세요"

    async def aclose(self):
        self.closed = True


class Backend:
    def __init__(self, tmp_path):
        self.llm = FakeLLM()
        self.config_path = tmp_path / "engine_config.json"
        self.token_error = None
        self.harnesses = []

    async def issue_token(self):
        if self.token_error is not None:
            raise self.token_error
        return "stream-token"

    def coordinator_factory(self, config, on_publish):
        harness = Harness(on_publish=on_publish)
        self.harnesses.append(harness)
        return harness.coordinator

    def app(self):
        return create_app(
            self.config_path,
            llm=self.llm,
            token_issuer=self.issue_token,
            coordinator_factory=self.coordinator_factory,
            broadcaster=LogBroadcaster(),
        )


@pytest.fixture
def backend(tmp_path):
    return Backend(tmp_path)


@pytest.fixture
def client(backend):
    with TestClient(backend.app()) as c:
        yield c
    assert backend.llm.closed


def test_health(client):
    assert client.get("/health").json() == {
        "status": "ok", "active_sessions": 0, "speech_backend": "deepgram",
    }


class TestAccessToken:
    def test_returns_plain_text(self, client):
        res = client.post("/api/get-access-token")
        assert res.status_code == 200
        assert res.text == "stream-token"
        assert res.headers["content-type"].startswith("text/plain")

    def test_failure_is_500(self, client, backend):
        backend.token_error = RuntimeError("HEYGEN_API_KEY is missing from .env")
        res = client.post("/api/get-access-token")
        assert res.status_code == 500


class TestChat:
    def test_chat_builds_prompt_from_profile_and_history(self, client, backend):
        res = client.post("/api/chat", json={
            "type": "chat",
            "message": "화투 점수 알려줘",
            "history": [
                {"role": "user", "content": "안녕"},
                {"role": "assistant", "content": "반가워요"},
                {"role": "system", "content": "ignored"},
            ],
            "userName": "김철수",
            "userStats": {"total_games": 4, "best_hwatu": 90},
        })
        assert res.json() == {"reply": backend.llm.reply}
        messages = backend.llm.messages[0]
        assert messages[0]["role"] == "system"
        assert "김철수님" in messages[0]["content"]
        assert "화투 짝맞추기: 90점" in messages[0]["content"]
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "화투 점수 알려줘"

    def test_type_defaults_to_chat(self, client, backend):
        assert client.post("/api/chat", json={"message": "안녕"}).status_code == 200
        assert backend.llm.messages[0][-1] == {"role": "user", "content": "안녕"}

    def test_greeting_is_composed_without_the_model(self, client, backend):
        res = client.post("/api/chat", json={
            "type": "greeting", "userName": "김철수", "userStats": {"total_games": 5, "best_score": 480},
        })
        assert res.json() == {"reply": "안녕하세요, 김철수님! 다시 만나서 반가워요. 최고 점수 480점이네요!"}
        assert backend.llm.messages == []

    def test_game_explain(self, client, backend):
        res = client.post("/api/chat", json={"type": "game_explain", "game": "윷놀이"})
        assert res.status_code == 200
        assert "'윷놀이'" in backend.llm.messages[0][-1]["content"]

    @pytest.mark.parametrize("body", [
        {"type": "chat"},
        {"type": "game_explain"},
        {"type": "weather", "message": "비 와?"},
    ])
    def test_bad_requests_are_400(self, client, body):
        assert client.post("/api/chat", json=body).status_code == 400

    def test_model_failure_is_500_with_error_body(self, client, backend):
        backend.llm.error = RuntimeError("rate limited")
        res = client.post("/api/chat", json={"message": "안녕"})
        assert res.status_code == 500
        assert res.json() == {"error": "Failed to get response"}

    def test_empty_completion_gets_apology(self, client, backend):
        backend.llm.reply = ""
        assert client.post("/api/chat", json={"message": "안녕"}).json() == {"reply": NO_REPLY}


class TestWhisper:
    def test_transcribes_uploaded_audio(self, client, backend):
        res = client.post("/api/whisper", files={"audio": ("speech.wav", b"RIFFdata", "audio/wav")})
        assert res.json() == {"text": "안녕하세요"}
        assert backend.llm.transcripts == [("speech.wav", b"RIFFdata")]

    def test_missing_file_is_400(self, client):
        res = client.post("/api/whisper")
        assert res.status_code == 400
        assert res.json() == {"error": "오디오 파일이 없습니다"}

    def test_backend_failure_is_500(self, client, backend):
        backend.llm.error = RuntimeError("groq down")
        res = client.post("/api/whisper", files={"audio": ("speech.wav", b"RIFF", "audio/wav")})
        assert res.status_code == 500
        assert res.json() == {"error": "음성 인식 실패"}


class TestConfig:
    def test_get_returns_defaults(self, client):
        data = client.get("/config").json()
        assert data["turn"]["resume_settle_sec"] == 0.5
        assert data["speech"]["backend"] == "deepgram"

    def test_put_merges_and_persists(self, client, backend):
        res = client.put("/config", json={"speech": {"backend": "transcription"}})
        assert res.status_code == 200
        assert res.json()["speech"]["backend"] == "transcription"
        assert res.json()["speech"]["language"] == "ko"
        saved = json.loads(backend.config_path.read_text(encoding="utf-8"))
        assert saved["speech"]["backend"] == "transcription"
        assert client.get("/health").json()["speech_backend"] == "transcription"

    def test_put_null_is_persisted(self, client, backend):
        res = client.put("/config", json={"llm": {"temperature": None}})
        assert res.json()["llm"]["temperature"] is None
        saved = json.loads(backend.config_path.read_text(encoding="utf-8"))
        assert saved["llm"]["temperature"] is None

    def test_put_rejects_invalid_values(self, client, backend):
        res = client.put("/config", json={"turn": {"resume_settle_sec": -1}})
        assert res.status_code == 422
        assert not backend.config_path.exists()


class TestControlChannel:
    def test_start_avatar_reports_connecting(self, client, backend):
        with client.websocket_connect("/ws/control") as ws:
            ws.send_text(json.dumps({"type": "START_AVATAR", "name": "김철수"}))
            message = ws.receive_json()
            assert message == {"type": "STATUS", "status": "connecting", "phase": "connecting"}
            assert client.get("/health").json()["active_sessions"] == 1
        assert backend.harnesses[0].coordinator.phase.value == "destroyed"
        assert backend.harnesses[0].generator.closed

    def test_each_connection_gets_its_own_coordinator(self, client, backend):
        with client.websocket_connect("/ws/control"):
            pass
        with client.websocket_connect("/ws/control"):
            pass
        assert len(backend.harnesses) == 2
        assert client.get("/health").json()["active_sessions"] == 0


def test_log_stream_replays_history(client):
    async def push():
        await client.app.state.broadcaster.broadcast({"level": "INFO", "msg": "event=test"})

    client.portal.call(push)
    with client.websocket_connect("/ws/logs") as ws:
        assert ws.receive_json() == {"level": "INFO", "msg": "event=test"}
