import asyncio

from avatar_engine.host import SessionHost
from avatar_engine.models import MicState, Phase, UserProfile

from conftest import REPLIES, Harness, settle


class HostHarness:
    def __init__(self):
        self.sent = []
        self.harness = None

        def factory(on_publish):
            self.harness = Harness(on_publish=on_publish)
            return self.harness.coordinator

        self.host = SessionHost(factory, self.sent.append)

    @property
    def coordinator(self):
        return self.harness.coordinator

    async def greet(self):
        """Drive the avatar side until the microphone is live."""
        await settle()
        self.harness.avatar.emit("stream_ready")
        await settle()
        self.harness.avatar.emit("start_talking")
        self.harness.avatar.emit("stop_talking")
        await settle()

    def sent_of(self, kind):
        return [m for m in self.sent if m["type"] == kind]


def test_start_avatar_opens_session_with_profile():
    async def scenario():
        hh = HostHarness()
        stats = {"total_games": 2, "best_score": 300}
        assert await hh.host.handle({"type": "START_AVATAR", "name": "김철수", "stats": stats})
        await hh.greet()
        profile = hh.harness.generator.of_kind("greeting")[0].profile
        assert profile.name == "김철수"
        assert profile.stats == stats
        assert hh.coordinator.mic_state is MicState.LISTENING

    asyncio.run(scenario())


def test_second_start_resets_first_session_and_greets_a_guest():
    async def scenario():
        hh = HostHarness()
        await hh.host.handle('{"type": "START_AVATAR", "name": "김철수", "stats": {"total_games": 3}}')
        await hh.greet()
        first = hh.harness.avatar
        await hh.host.handle('{"type": "START_AVATAR"}')
        await hh.greet()
        assert first.count("stop") == 1
        assert hh.harness.tokens.calls == 2
        profile = hh.harness.generator.of_kind("greeting")[-1].profile
        assert profile == UserProfile()

    asyncio.run(scenario())


def test_reset_forgets_previous_player():
    async def scenario():
        hh = HostHarness()
        stats = {"total_games": 3, "best_score": 420}
        customer = {"id": 42, "name": "김철수"}
        await hh.host.handle({"type": "START_AVATAR", "name": "김철수", "stats": stats, "customer": customer})
        await hh.greet()
        await hh.host.handle({"type": "RESET_AVATAR"})
        await hh.host.handle({"type": "START_AVATAR"})
        await hh.greet()
        assert hh.harness.generator.of_kind("greeting")[-1].profile == UserProfile()

    asyncio.run(scenario())


def test_new_name_does_not_inherit_previous_stats():
    async def scenario():
        hh = HostHarness()
        await hh.host.handle({"type": "START_AVATAR", "name": "김철수", "stats": {"total_games": 3}})
        await hh.greet()
        await hh.host.handle({"type": "START_AVATAR", "name": "이영희"})
        await hh.greet()
        profile = hh.harness.generator.of_kind("greeting")[-1].profile
        assert profile == UserProfile(name="이영희")

    asyncio.run(scenario())


def test_reset_and_stop_tear_down():
    async def scenario():
        hh = HostHarness()
        for command in ("RESET_AVATAR", "STOP_AVATAR"):
            await hh.host.handle({"type": "START_AVATAR"})
            await hh.greet()
            await hh.host.handle({"type": command})
            assert hh.coordinator.phase is Phase.IDLE
            assert hh.coordinator.history == ()

    asyncio.run(scenario())


def test_user_message_and_explain_game():
    async def scenario():
        hh = HostHarness()
        await hh.host.handle({"type": "START_AVATAR"})
        await hh.greet()
        await hh.host.handle({"type": "USER_MESSAGE", "message": "점수 알려줘"})
        await settle()
        assert hh.harness.avatar.spoken[-1] == REPLIES["chat"]
        await hh.host.handle({"type": "EXPLAIN_GAME", "game": "윷놀이"})
        await settle()
        assert hh.harness.generator.of_kind("game_explain")[0].game == "윷놀이"
        assert hh.harness.avatar.spoken[-1] == REPLIES["game_explain"]

    asyncio.run(scenario())


def test_customer_login_and_logout_update_live_profile():
    async def scenario():
        hh = HostHarness()
        await hh.host.handle({"type": "START_AVATAR", "name": "김철수"})
        await hh.greet()
        customer = {"id": 42, "name": "김철수", "phone": "010-0000-0000"}
        await hh.host.handle({"type": "CUSTOMER_LOGIN", "customer": customer})
        assert hh.coordinator.state.profile.customer == customer
        await hh.host.handle({"type": "CUSTOMER_LOGOUT"})
        assert hh.coordinator.state.profile.customer is None
        assert hh.coordinator.state.profile.name == "김철수"

    asyncio.run(scenario())


def test_toggle_mic():
    async def scenario():
        hh = HostHarness()
        await hh.host.handle({"type": "START_AVATAR"})
        await hh.greet()
        await hh.host.handle({"type": "TOGGLE_MIC"})
        assert hh.coordinator.mic_state is MicState.PAUSED
        await hh.host.handle({"type": "TOGGLE_MIC"})
        assert hh.coordinator.mic_state is MicState.LISTENING

    asyncio.run(scenario())


def test_unknown_and_malformed_messages_are_ignored():
    async def scenario():
        hh = HostHarness()
        results = [
            await hh.host.handle({"type": "SET_THEME", "theme": "dark"}),
            await hh.host.handle("{not json"),
            await hh.host.handle({"name": "no type"}),
            await hh.host.handle({"type": "EXPLAIN_GAME"}),
        ]
        assert results == [False, False, False, True]
        assert hh.coordinator.phase is Phase.IDLE
        assert hh.harness.generator.requests == []

    asyncio.run(scenario())


def test_coordinator_updates_are_published_as_typed_messages():
    async def scenario():
        hh = HostHarness()
        await hh.host.handle({"type": "START_AVATAR"})
        await hh.greet()
        hh.harness.speech.say("점수", is_final=False)
        return hh

    hh = asyncio.run(scenario())
    assert hh.sent_of("STATUS")[0] == {"type": "STATUS", "status": "connecting", "phase": "connecting"}
    assert hh.sent_of("TURN")[0] == {"type": "TURN", "role": "assistant", "content": REPLIES["greeting"]}
    assert hh.sent_of("INTERIM") == [{"type": "INTERIM", "text": "점수"}]


def test_close_destroys_coordinator():
    async def scenario():
        hh = HostHarness()
        await hh.host.handle({"type": "START_AVATAR"})
        await hh.greet()
        await hh.host.close()
        assert hh.coordinator.phase is Phase.DESTROYED
        assert hh.harness.speech.destroyed

    asyncio.run(scenario())
