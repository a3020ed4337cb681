"""In-memory capabilities shared by the co-host tests."""

from __future__ import annotations

from typing import Any

import pytest

from core.capabilities import RemoteReward
from core.actions import action_from_spec
from core.config import PresetSpec
from core.dispatcher import EventDispatcher
from core.errors import NotConnected, RpcFailed
from core.executor import ActionExecutor, Capabilities, EffectSettings
from core.guards import RewardCooldowns
from core.history import HistoryBuffer
from core.llm_loop import LLMDecisionLoop, LoopSettings
from core.music import MusicQueue
from core.presets import PresetManager
from core.rewards import RedemptionRouter, Reward, RewardRegistry
from core.rules import RuleEngine
from core.throttle import ThrottleStore
from shared.deck import PersistentDeck

BROADCASTER_ID = "1000"
BROADCASTER_LOGIN = "streamer"
BOT_ID = "2000"

TRACK_A = "https://music.yandex.ru/album/1/track/2"
TRACK_B = "https://music.yandex.ru/album/3/track/4"
TRACK_C = "https://music.yandex.ru/track/5"


# ── Fakes ──────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeStore:
    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(data or {})
        self.writes: list[tuple[str, Any]] = []
        self.fail = False

    async def get(self, key: str, default: Any = None) -> Any:
        if self.fail:
            raise ConnectionError("store offline")
        return self.data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        if self.fail:
            raise ConnectionError("store offline")
        self.data[key] = value
        self.writes.append((key, value))

    async def list_prefix(self, prefix: str) -> dict[str, Any]:
        return {k: v for k, v in self.data.items() if k.startswith(prefix)}


class FakePlatform:
    def __init__(self, rewards: list[RemoteReward] | None = None) -> None:
        self.rewards: dict[str, RemoteReward] = {r.reward_id: r for r in rewards or []}
        self.bans: list[tuple[str, str]] = []
        self.timeouts: list[tuple[str, int]] = []
        self.deleted: list[str] = []
        self.created: list[dict[str, Any]] = []
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.fulfilled: list[tuple[str, str, str]] = []
        self.channel_updates: list[dict[str, Any]] = []
        self.fail_create = False
        self.fail_channel = False
        self._next_id = 1

    async def ban(self, user_id: str, reason: str) -> None:
        self.bans.append((user_id, reason))

    async def timeout(self, user_id: str, seconds: int, reason: str) -> None:
        self.timeouts.append((user_id, seconds))

    async def delete_message(self, message_id: str) -> None:
        self.deleted.append(message_id)

    async def list_rewards(self) -> list[RemoteReward]:
        return list(self.rewards.values())

    async def create_reward(self, spec: dict[str, Any]) -> RemoteReward:
        if self.fail_create:
            raise RpcFailed(400, "CREATE_CUSTOM_REWARD_DUPLICATE_REWARD")
        self.created.append(spec)
        reward = RemoteReward(
            reward_id=f"r{self._next_id}",
            title=spec["title"],
            cost=spec["cost"],
            is_enabled=spec.get("is_enabled", True),
        )
        self._next_id += 1
        self.rewards[reward.reward_id] = reward
        return reward

    async def update_reward(self, reward_id: str, fields: dict[str, Any]) -> RemoteReward:
        self.updates.append((reward_id, fields))
        reward = self.rewards[reward_id]
        reward.is_enabled = fields.get("is_enabled", reward.is_enabled)
        return reward

    async def fulfill_redemption(self, reward_id: str, redemption_id: str, status: str) -> None:
        self.fulfilled.append((reward_id, redemption_id, status))

    async def update_channel(self, *, title: str, game_id: str, tags: list[str]) -> None:
        if self.fail_channel:
            raise RpcFailed(500, "boom")
        self.channel_updates.append({"title": title, "game_id": game_id, "tags": tags})


class FakeChat:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.actions: list[str] = []
        self.whispers: list[tuple[str, str]] = []

    async def send(self, text: str) -> bool:
        self.sent.append(text)
        return True

    async def send_action(self, text: str) -> bool:
        self.actions.append(text)
        return True

    async def send_whisper(self, user: str, text: str) -> bool:
        self.whispers.append((user, text))
        return True


class FakeLLM:
    """Answers calls from a script; an exception in the script is raised."""

    def __init__(self, replies: list[Any] | None = None, *, up: bool = True) -> None:
        self.replies: list[Any] = list(replies or [])
        self.up = up
        self.calls: list[list[dict[str, str]]] = []

    async def chat(self, messages, *, max_tokens, temperature, model=None, timeout=None) -> str:
        self.calls.append(messages)
        if not self.replies:
            return "action: nothing"
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def status(self) -> bool:
        return self.up


class FakeGame:
    def __init__(self, *, up: bool = True) -> None:
        self.up = up
        self.lines: list[tuple[str, str]] = []
        self.commands: list[str] = []

    async def send_line(self, user: str, message: str, chat: bool = True) -> None:
        if not self.up:
            raise NotConnected("game")
        self.lines.append((user, message))

    async def send_command(self, command: str) -> None:
        if not self.up:
            raise NotConnected("game")
        self.commands.append(command)

    def status(self) -> bool:
        return self.up


class FakeSound:
    def __init__(self) -> None:
        self.played: list[str] = []
        self.audio: list[bytes] = []

    async def play(self, name: str) -> None:
        self.played.append(name)

    async def play_audio(self, data: bytes) -> None:
        self.audio.append(data)


class FakeTTS:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def synthesize(self, text: str, language: str, options) -> bytes:
        self.calls.append((text, language))
        return b"mp3:" + text.encode()


class FakeMusicTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, Any]] = []
        self.handlers: dict[str, Any] = {}
        self.fail = False

    async def send(self, command: str, payload: Any = None) -> None:
        if self.fail:
            raise NotConnected("music")
        self.sent.append((command, payload))

    def on_reply(self, event: str, handler) -> None:
        self.handlers[event] = handler

    def status(self) -> bool:
        return not self.fail

    @property
    def songs(self) -> list[str]:
        return [payload for command, payload in self.sent if command == "song"]


# ── Factories ──────────────────────────────────────────────────────


class Harness:
    """A fully wired dispatcher over fakes."""

    def __init__(
        self,
        *,
        rules: list[dict[str, Any]] | None = None,
        llm_replies: list[Any] | None = None,
        llm_up: bool = True,
        presets: dict[str, PresetSpec] | None = None,
        forward_chat_to_game: bool = False,
        chat_sound: str = "",
    ) -> None:
        self.clock = FakeClock(1000.0)
        self.store = FakeStore()
        self.platform = FakePlatform()
        self.chat = FakeChat()
        self.llm = FakeLLM(llm_replies, up=llm_up)
        self.game = FakeGame()
        self.sound = FakeSound()
        self.tts = FakeTTS()
        self.transport = FakeMusicTransport()
        self.deck: PersistentDeck[str] = PersistentDeck(self.store, "music_queue")
        self.music = MusicQueue(self.deck, self.transport, vote_threshold=3)
        self.throttle = ThrottleStore(
            hate_cooldown=60, love_protection=60, broadcaster=BROADCASTER_LOGIN, clock=self.clock
        )
        self.executor = ActionExecutor(
            Capabilities(
                platform=self.platform,
                chat=self.chat,
                llm=self.llm,
                tts=self.tts,
                sound=self.sound,
                game=self.game,
            ),
            self.throttle,
            self.music,
            EffectSettings(lightning_delay=0),
        )
        self.registry = RewardRegistry()
        self.router = RedemptionRouter(
            self.registry,
            self.executor,
            self.platform,
            self.chat,
            self.music,
            RewardCooldowns(clock=self.clock),
        )
        self.presets = PresetManager(self.platform, self.registry, self.store, presets or {})
        self.history = HistoryBuffer(10)
        self.rules = RuleEngine.from_specs(rules or [], BROADCASTER_ID)
        self.llm_loop = LLMDecisionLoop(
            self.history, self.llm, settings=LoopSettings(broadcaster=BROADCASTER_LOGIN)
        )
        self.dispatcher = EventDispatcher(
            history=self.history,
            rules=self.rules,
            executor=self.executor,
            router=self.router,
            music=self.music,
            llm_loop=self.llm_loop,
            chat=self.chat,
            broadcaster_login=BROADCASTER_LOGIN,
            broadcaster_id=BROADCASTER_ID,
            bot_id=BOT_ID,
            presets=self.presets,
            rule_loader=self._load_rules,
            max_pending=8,
            tick_interval=0,
            forward_chat_to_game=forward_chat_to_game,
            chat_sound=chat_sound,
        )

    async def _load_rules(self) -> list[Any] | None:
        return await self.store.get("chat_rules")

    def add_reward(
        self,
        key: str,
        action: dict[str, Any],
        *,
        reward_id: str | None = None,
        cooldown_seconds: int = 0,
    ) -> Reward:
        reward = Reward(
            reward_id=reward_id or f"id-{key}",
            key=key,
            title=key.title(),
            cost=100,
            enabled=True,
            action_template=action_from_spec(action),
            cooldown_seconds=cooldown_seconds,
        )
        self.registry.register(reward)
        return reward


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def harness() -> Harness:
    return Harness()
