"""Tests for the event dispatcher: ordering, intake, routing, backpressure."""

from __future__ import annotations

import asyncio

import pytest

from conftest import BOT_ID, BROADCASTER_ID, BROADCASTER_LOGIN, TRACK_A, TRACK_B, Harness
from core.config import PresetSpec
from core.events import (
    CapabilityStatusChanged,
    ChatArrived,
    ChatMessage,
    MessageSource,
    OperatorCommand,
    Redemption,
    RedemptionArrived,
    ReloadRequested,
    SpeechFinal,
    Tick,
    TrackCompleted,
    TrackStarted,
)
from core.history import MEMORY_USERNAME

BAN_RULE = {"action": {"type": "ban"}, "patterns": [r"viewers", r"foo\.com"]}


def _chat(text: str, *, user: str = "viewer", user_id: str = "42", mid: str = "m1") -> ChatArrived:
    return ChatArrived(ChatMessage(username=user, user_id=user_id, text=text, message_id=mid))


# ── Chat intake ────────────────────────────────────────────────────


class TestChat:
    @pytest.mark.asyncio()
    async def test_moderation_rule_bans_and_hides_message(self):
        h = Harness(rules=[BAN_RULE], llm_replies=["action: respond", "should not be sent"])
        await h.dispatcher.submit(_chat("check viewers at foo.com"))
        await h.dispatcher.run_until_idle()

        assert [b[0] for b in h.platform.bans] == ["42"]
        assert h.history.entries()[0].suppressed
        assert h.llm.calls == []
        assert h.chat.sent == []

    @pytest.mark.asyncio()
    async def test_broadcaster_exempt_from_rules(self):
        h = Harness(rules=[BAN_RULE])
        await h.dispatcher.submit(
            _chat("viewers foo.com", user=BROADCASTER_LOGIN, user_id=BROADCASTER_ID)
        )
        await h.dispatcher.run_until_idle()
        assert h.platform.bans == []
        assert h.platform.timeouts == []

    @pytest.mark.asyncio()
    async def test_intake_appends_history_before_handling(self):
        h = Harness()
        await h.dispatcher.submit(_chat("one"))
        await h.dispatcher.submit(_chat("two"))
        assert [m.text for m in h.history.messages()] == ["one", "two"]
        assert h.dispatcher.pending == 2

    @pytest.mark.asyncio()
    async def test_respond_reply_goes_out_and_marker_advances(self):
        h = Harness(llm_replies=["action: respond, reason: hi", "Hello!"])
        await h.dispatcher.submit(_chat("hi bot"))
        await h.dispatcher.run_until_idle()
        assert h.chat.sent == ["Hello!"]
        assert h.history.marker == len(h.history)

        # The reply comes back as an ordinary chat line
        await h.dispatcher.submit(_chat("Hello!", user="cohost_bot", user_id=BOT_ID))
        await h.dispatcher.run_until_idle()
        assert h.history.messages()[-1].text == "Hello!"
        assert len(h.llm.calls) == 2

    @pytest.mark.asyncio()
    async def test_own_messages_skip_rules_and_effects(self):
        h = Harness(rules=[BAN_RULE], forward_chat_to_game=True, chat_sound="icq")
        await h.dispatcher.submit(_chat("viewers foo.com", user="cohost_bot", user_id=BOT_ID))
        await h.dispatcher.run_until_idle()
        assert h.platform.bans == []
        assert h.sound.played == []
        assert h.game.lines == []
        assert not h.history.entries()[0].suppressed

    @pytest.mark.asyncio()
    async def test_live_chat_effects(self):
        h = Harness(forward_chat_to_game=True, chat_sound="icq")
        await h.dispatcher.submit(_chat("hello game"))
        await h.dispatcher.submit(_chat("!command"))
        await h.dispatcher.run_until_idle()
        assert h.sound.played == ["icq", "icq"]
        assert h.game.lines == [("viewer", "hello game")]

    @pytest.mark.asyncio()
    async def test_non_moderation_rule_runs_after_effects(self):
        rule = {"action": {"type": "voice"}, "patterns": [r"^!voice\s+(.+)"]}
        h = Harness(rules=[rule])
        await h.dispatcher.submit(_chat("!voice good evening"))
        await h.dispatcher.run_until_idle()
        assert h.tts.calls == [("good evening", "en")]
        assert not h.history.entries()[0].suppressed

    @pytest.mark.asyncio()
    async def test_handler_crash_does_not_stop_processing(self, monkeypatch):
        h = Harness()

        async def boom(message, match):
            raise RuntimeError("bug")

        monkeypatch.setattr(h.dispatcher, "_on_chat", boom)
        await h.dispatcher.submit(_chat("x"))
        await h.dispatcher.submit(TrackStarted("Song\nArtist"))
        await h.dispatcher.run_until_idle()
        assert h.dispatcher.handled == 2
        assert h.chat.actions == ["📀 Song by Artist"]


# ── Speech ─────────────────────────────────────────────────────────


class TestSpeech:
    @pytest.mark.asyncio()
    async def test_trigger_phrase_injected_as_trusted(self):
        h = Harness(rules=[{"action": {"type": "ban"}, "patterns": ["spam"]}])
        await h.dispatcher.submit(SpeechFinal("работай spam the chat", "ru", 0.9))
        await h.dispatcher.run_until_idle()

        message = h.history.messages()[-1]
        assert message.text == "spam the chat"
        assert message.username == BROADCASTER_LOGIN
        assert message.source is MessageSource.INJECTED_TRUSTED
        assert h.platform.bans == []
        assert h.llm.calls

    @pytest.mark.asyncio()
    async def test_other_phrases_ignored(self):
        h = Harness()
        await h.dispatcher.submit(SpeechFinal("just talking", "en", 0.8))
        await h.dispatcher.run_until_idle()
        assert len(h.history) == 0


# ── Redemptions / music events ─────────────────────────────────────


class TestRouting:
    @pytest.mark.asyncio()
    async def test_redemption_routed(self):
        h = Harness()
        h.add_reward("love", {"type": "love"})
        await h.dispatcher.submit(
            RedemptionArrived(Redemption("red-1", "id-love", "viewer", user_id="42"))
        )
        await h.dispatcher.run_until_idle()
        assert h.platform.fulfilled == [("id-love", "red-1", "FULFILLED")]

    @pytest.mark.asyncio()
    async def test_track_completed_plays_next(self):
        h = Harness()
        await h.music.add(TRACK_A)
        await h.music.add(TRACK_B)
        await h.dispatcher.submit(TrackCompleted(TRACK_A))
        await h.dispatcher.run_until_idle()
        assert h.music.currently_playing == TRACK_B

    @pytest.mark.asyncio()
    async def test_music_up_queries_status_and_primes_player(self):
        h = Harness()
        await h.dispatcher.submit(CapabilityStatusChanged("music", True))
        await h.dispatcher.run_until_idle()
        assert h.transport.sent[0] == ("query_status", None)
        assert h.transport.songs == [h.music.fallback_url]
        assert h.dispatcher.capability_status == {"music": True}

    @pytest.mark.asyncio()
    async def test_memory_note_visible_next_round(self):
        h = Harness(llm_replies=["action: remember", "alice likes jazz", "action: nothing"])
        await h.dispatcher.submit(_chat("I like jazz", user="alice"))
        await h.dispatcher.run_until_idle()
        assert h.history.messages()[-1].username == MEMORY_USERNAME

        await h.dispatcher.submit(_chat("anything else?"))
        await h.dispatcher.run_until_idle()
        assert "alice likes jazz" in h.llm.calls[-1][1]["content"]


# ── Operator commands / reload ─────────────────────────────────────


class TestOperator:
    @pytest.mark.asyncio()
    async def test_preset_command(self):
        h = Harness(presets={"afk": PresetSpec(title="Away", game_id="1")})
        await h.dispatcher.submit(OperatorCommand("preset", ("afk",)))
        await h.dispatcher.run_until_idle()
        assert h.platform.channel_updates[0]["title"] == "Away"
        assert h.chat.sent == ["Preset afk applied"]

    @pytest.mark.asyncio()
    async def test_skip_command(self):
        h = Harness()
        await h.music.add(TRACK_A)
        await h.dispatcher.submit(OperatorCommand("skip"))
        await h.dispatcher.run_until_idle()
        assert h.music.currently_playing == h.music.fallback_url

    @pytest.mark.asyncio()
    async def test_llm_toggle(self):
        h = Harness()
        await h.dispatcher.submit(OperatorCommand("llm", ("off",)))
        await h.dispatcher.submit(_chat("hello"))
        await h.dispatcher.run_until_idle()
        assert not h.llm_loop.enabled
        assert h.llm.calls == []

    @pytest.mark.asyncio()
    async def test_reload_requested_swaps_rules(self):
        h = Harness(rules=[BAN_RULE])
        h.store.data["chat_rules"] = [{"action": {"type": "timeout", "seconds": 5}, "patterns": ["x"]}]
        await h.dispatcher.submit(ReloadRequested("chat_rules"))
        await h.dispatcher.run_until_idle()

        await h.dispatcher.submit(_chat("x marks the spot"))
        await h.dispatcher.run_until_idle()
        assert h.platform.timeouts == [("42", 5)]

    @pytest.mark.asyncio()
    async def test_reload_without_stored_rules_keeps_current(self):
        h = Harness(rules=[BAN_RULE])
        await h.dispatcher.submit(OperatorCommand("reload"))
        await h.dispatcher.run_until_idle()
        assert len(h.rules.rules) == 1


# ── Queue behavior ─────────────────────────────────────────────────


class TestQueue:
    @pytest.mark.asyncio()
    async def test_ticks_coalesce(self):
        h = Harness()
        assert h.dispatcher.submit_tick()
        assert not h.dispatcher.submit_tick()
        await h.dispatcher.submit(Tick())
        assert h.dispatcher.pending == 1

    @pytest.mark.asyncio()
    async def test_tick_wakeup_task_is_held_until_done(self):
        h = Harness()
        h.dispatcher.submit_tick()
        assert len(h.dispatcher._wakers) == 1
        await asyncio.gather(*h.dispatcher._wakers)
        await asyncio.sleep(0)
        assert h.dispatcher._wakers == set()

    @pytest.mark.asyncio()
    async def test_full_queue_drops_tick_first(self):
        h = Harness()
        h.dispatcher.submit_tick()
        for i in range(h.dispatcher.max_pending - 1):
            await h.dispatcher.submit(TrackStarted(str(i)))
        assert h.dispatcher.pending == h.dispatcher.max_pending

        await h.dispatcher.submit(TrackStarted("last"))
        assert h.dispatcher.pending == h.dispatcher.max_pending
        assert h.dispatcher.dropped_ticks == 1

        assert not h.dispatcher.submit_tick()
        assert h.dispatcher.dropped_ticks == 2

    @pytest.mark.asyncio()
    async def test_full_queue_holds_producer_until_consumed(self):
        h = Harness()
        for i in range(h.dispatcher.max_pending):
            await h.dispatcher.submit(TrackStarted(str(i)))

        producer = asyncio.create_task(h.dispatcher.submit(TrackStarted("late")))
        await asyncio.sleep(0.01)
        assert not producer.done()

        h.dispatcher.start()
        await asyncio.wait_for(producer, timeout=1)
        for _ in range(100):
            if h.dispatcher.handled == h.dispatcher.max_pending + 1:
                break
            await asyncio.sleep(0.01)
        await h.dispatcher.stop()
        assert h.dispatcher.handled == h.dispatcher.max_pending + 1
        assert h.chat.actions[-1] == "📀 late"

    @pytest.mark.asyncio()
    async def test_events_handled_in_submission_order(self):
        h = Harness()
        h.dispatcher.start()
        assert h.dispatcher.running
        for name in ("a", "b", "c"):
            await h.dispatcher.submit(TrackStarted(name))
        for _ in range(100):
            if h.dispatcher.handled == 3:
                break
            await asyncio.sleep(0.01)
        await h.dispatcher.stop()
        assert h.chat.actions == ["📀 a", "📀 b", "📀 c"]
        assert not h.dispatcher.running
