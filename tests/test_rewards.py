"""Tests for reward reconciliation, presets and redemption routing."""

from __future__ import annotations

import pytest

from conftest import TRACK_A, TRACK_B, FakePlatform, FakeStore, Harness
from core.capabilities import RemoteReward
from core.config import PresetSpec, RewardSpec
from core.errors import Throttled, UnknownReward
from core.events import Redemption
from core.presets import CURRENT_PRESET_KEY, PresetManager
from core.rewards import (
    CANCELED,
    FULFILLED,
    REWARDS_CACHE_KEY,
    RewardRegistry,
    apply_active_rewards,
    reconcile_rewards,
)

SPECS = {
    "hate": RewardSpec(title="Hate", cost=300, cooldown_seconds=30, action={"type": "hate"}),
    "music": RewardSpec(
        title="Music",
        cost=150,
        user_input_required=True,
        action={"type": "queue_music", "url": "{input}"},
    ),
}


def _redemption(reward_id: str, user_input: str = "", rid: str = "red-1") -> Redemption:
    return Redemption(
        redemption_id=rid, reward_id=reward_id, user_name="viewer", user_input=user_input, user_id="42"
    )


# ── Reconciliation ─────────────────────────────────────────────────


class TestReconcile:
    @pytest.mark.asyncio()
    async def test_creates_missing_rewards_disabled(self):
        platform = FakePlatform()
        store = FakeStore()
        registry = await reconcile_rewards(platform, SPECS, store)

        assert len(registry) == 2
        assert all(not spec["is_enabled"] for spec in platform.created)
        hate = next(s for s in platform.created if s["title"] == "Hate")
        assert hate["is_global_cooldown_enabled"] is True
        assert hate["global_cooldown_seconds"] == 30
        assert store.data[REWARDS_CACHE_KEY] == registry.snapshot()

    @pytest.mark.asyncio()
    async def test_adopts_by_title_and_is_idempotent(self):
        platform = FakePlatform([RemoteReward("existing", "Hate", 300, is_enabled=True)])
        store = FakeStore()
        first = await reconcile_rewards(platform, SPECS, store)
        second = await reconcile_rewards(platform, SPECS, store)

        assert len(platform.created) == 1
        assert first.get_by_key("hate").reward_id == "existing"
        assert first.get_by_key("hate").enabled is True
        assert first.snapshot() == second.snapshot()

    @pytest.mark.asyncio()
    async def test_create_failure_skips_reward(self):
        platform = FakePlatform()
        platform.fail_create = True
        registry = await reconcile_rewards(platform, SPECS, FakeStore())
        assert len(registry) == 0

    @pytest.mark.asyncio()
    async def test_renamed_reward_creates_new_one(self):
        platform = FakePlatform([RemoteReward("old-id", "Old Hate", 300)])
        store = FakeStore({REWARDS_CACHE_KEY: {"old-id": "hate"}})
        registry = await reconcile_rewards(platform, {"hate": SPECS["hate"]}, store)
        assert registry.get_by_key("hate").reward_id != "old-id"
        assert registry.get("old-id") is None

    @pytest.mark.asyncio()
    async def test_apply_active_touches_only_changes(self):
        platform = FakePlatform()
        registry = await reconcile_rewards(platform, SPECS, FakeStore())
        await apply_active_rewards(platform, registry, {"music"})
        assert platform.updates == [(registry.get_by_key("music").reward_id, {"is_enabled": True})]

        await apply_active_rewards(platform, registry, {"music"})
        assert len(platform.updates) == 1


class TestRegistry:
    def test_reregister_key_replaces_old_id(self):
        harness = Harness()
        harness.add_reward("hate", {"type": "hate"}, reward_id="a")
        harness.add_reward("hate", {"type": "hate"}, reward_id="b")
        registry: RewardRegistry = harness.registry
        assert registry.get("a") is None
        assert registry.get("b").key == "hate"
        assert len(registry) == 1


# ── Presets ────────────────────────────────────────────────────────


PRESETS = {
    "gaming": PresetSpec(title="Playing", game_id="1", tags=["English"], rewards_active=["hate"]),
    "afk": PresetSpec(title="Away", game_id="2"),
}


class TestPresets:
    @pytest.mark.asyncio()
    async def test_apply_updates_channel_rewards_and_store(self):
        platform = FakePlatform()
        store = FakeStore()
        registry = await reconcile_rewards(platform, SPECS, store)
        presets = PresetManager(platform, registry, store, PRESETS)

        assert await presets.apply("gaming")
        assert platform.channel_updates == [{"title": "Playing", "game_id": "1", "tags": ["English"]}]
        assert registry.get_by_key("hate").enabled
        assert not registry.get_by_key("music").enabled
        assert store.data[CURRENT_PRESET_KEY] == "gaming"

    @pytest.mark.asyncio()
    async def test_unknown_preset(self):
        presets = PresetManager(FakePlatform(), RewardRegistry(), FakeStore(), PRESETS)
        assert not await presets.apply("nope")

    @pytest.mark.asyncio()
    async def test_channel_failure_leaves_rewards(self):
        platform = FakePlatform()
        platform.fail_channel = True
        store = FakeStore()
        registry = await reconcile_rewards(platform, SPECS, store)
        presets = PresetManager(platform, registry, store, PRESETS)
        assert not await presets.apply("gaming")
        assert platform.updates == []
        assert CURRENT_PRESET_KEY not in store.data

    @pytest.mark.asyncio()
    async def test_restore_without_preset_disables_all(self):
        platform = FakePlatform([RemoteReward("h", "Hate", 300, is_enabled=True)])
        store = FakeStore()
        registry = await reconcile_rewards(platform, SPECS, store)
        await PresetManager(platform, registry, store, PRESETS).restore_rewards()
        assert not registry.get_by_key("hate").enabled

    @pytest.mark.asyncio()
    async def test_restore_stored_preset(self):
        platform = FakePlatform()
        store = FakeStore({CURRENT_PRESET_KEY: "gaming"})
        registry = await reconcile_rewards(platform, SPECS, store)
        presets = PresetManager(platform, registry, store, PRESETS)
        await presets.restore_rewards()
        assert presets.current == "gaming"
        assert registry.get_by_key("hate").enabled


# ── Redemption routing ─────────────────────────────────────────────


class TestRouter:
    @pytest.mark.asyncio()
    async def test_music_request_queues_and_fulfills(self):
        h = Harness()
        h.add_reward("music", {"type": "queue_music", "url": "{input}"})
        await h.music.add(TRACK_B)

        status = await h.router.handle(_redemption("id-music", TRACK_A))
        assert status == FULFILLED
        assert len(h.music) == 1
        assert h.platform.fulfilled == [("id-music", "red-1", FULFILLED)]

    @pytest.mark.asyncio()
    async def test_invalid_url_whispers_and_cancels(self):
        h = Harness()
        h.add_reward("music", {"type": "queue_music", "url": "{input}"})

        status = await h.router.handle(_redemption("id-music", "not a url"))
        assert status == CANCELED
        assert h.chat.whispers and h.chat.whispers[0][0] == "viewer"
        assert h.transport.sent == []
        assert h.platform.fulfilled == [("id-music", "red-1", CANCELED)]

    @pytest.mark.asyncio()
    async def test_unknown_reward_cancels(self):
        h = Harness()
        assert await h.router.handle(_redemption("ghost")) == CANCELED
        assert h.platform.fulfilled == [("ghost", "red-1", CANCELED)]

    @pytest.mark.asyncio()
    async def test_refusals_raise_typed_errors(self):
        h = Harness()
        with pytest.raises(UnknownReward) as unknown:
            await h.router._run(_redemption("ghost"))
        assert unknown.value.reward_id == "ghost"

        h.add_reward("love", {"type": "love"}, cooldown_seconds=30)
        await h.router.handle(_redemption("id-love", rid="a"))
        h.clock.now += 10
        with pytest.raises(Throttled) as throttled:
            await h.router._run(_redemption("id-love", rid="b"))
        assert throttled.value.key == "love"
        assert throttled.value.remaining == pytest.approx(20)

    @pytest.mark.asyncio()
    async def test_cooldown_cancels_second_redemption(self):
        h = Harness()
        h.add_reward("love", {"type": "love"}, cooldown_seconds=30)
        assert await h.router.handle(_redemption("id-love", rid="a")) == FULFILLED
        assert await h.router.handle(_redemption("id-love", rid="b")) == CANCELED
        h.clock.now += 31
        assert await h.router.handle(_redemption("id-love", rid="c")) == FULFILLED
        assert [f[2] for f in h.platform.fulfilled] == [FULFILLED, CANCELED, FULFILLED]

    @pytest.mark.asyncio()
    async def test_empty_voice_text_rejected(self):
        h = Harness()
        h.add_reward("voice", {"type": "voice", "text": "{input}"})
        assert await h.router.handle(_redemption("id-voice", "   ")) == CANCELED
        assert h.chat.whispers == [("viewer", "Please write the text to read aloud.")]
        assert h.tts.calls == []

    @pytest.mark.asyncio()
    async def test_failed_action_cancels(self):
        h = Harness()
        h.add_reward("skip", {"type": "vote_skip"})
        assert await h.router.handle(_redemption("id-skip")) == CANCELED
        assert h.chat.sent == ["🎵 Nothing to skip right now"]

    @pytest.mark.asyncio()
    async def test_vote_skip_three_redemptions(self):
        h = Harness()
        h.add_reward("skip", {"type": "vote_skip"})
        await h.music.add(TRACK_A)
        await h.music.add(TRACK_B)

        for rid in ("1", "2", "3"):
            assert await h.router.handle(_redemption("id-skip", rid=rid)) == FULFILLED
        assert h.music.currently_playing == TRACK_B

        await h.music.on_track_completed()
        assert h.music.currently_playing == h.music.fallback_url
        assert len(h.platform.fulfilled) == 3

    @pytest.mark.asyncio()
    async def test_fulfill_called_once_even_when_executor_crashes(self, monkeypatch):
        h = Harness()
        h.add_reward("love", {"type": "love"})

        async def boom(action, ctx):
            raise RuntimeError("bug")

        monkeypatch.setattr(h.executor, "execute", boom)
        assert await h.router.handle(_redemption("id-love")) == CANCELED
        assert len(h.platform.fulfilled) == 1
