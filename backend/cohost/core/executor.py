"""Action executor: one switch over every ActionDescriptor variant.

Every side effect goes through a capability; every failure is logged and
reported as ``False`` so the caller (rule, redemption, LLM) can decide
what to do with it. Core state is only touched through the throttle and
music queue helpers.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from core.actions import (
    ActionDescriptor,
    Ban,
    DeleteMessage,
    ForwardToGameBridge,
    Hate,
    Love,
    NeuroAsk,
    NowPlaying,
    QueueMusic,
    SoundEffect,
    Timeout,
    Voice,
    VoteSkip,
    action_name,
    instantiate,
)
from core.capabilities import ChatSender, GameLink, LanguageModel, Platform, SoundOutput, SpeechSynth
from core.errors import CohostError, NothingToSkip, ValidationFailed
from core.music import MusicQueue
from core.throttle import HateOutcome, ThrottleStore

LOGGER = logging.getLogger("Executor")

CHAT_LIMIT = 500

_CYRILLIC = re.compile(r"[а-яё]", re.IGNORECASE)
_LATIN = re.compile(r"[a-z]", re.IGNORECASE)
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")
_THINK_OPEN = re.compile(r"<think>[\s\S]*$")


@dataclass(frozen=True)
class ActionContext:
    """Who or what triggered an action."""

    username: str
    user_id: str = ""
    message_id: str | None = None
    origin: str = "chat"  # 'chat' | 'redemption' | 'llm' | 'operator'


@dataclass
class Capabilities:
    platform: Platform
    chat: ChatSender
    llm: LanguageModel
    tts: SpeechSynth
    sound: SoundOutput
    game: GameLink


@dataclass
class EffectSettings:
    game_player: str = "streamer"
    heal_command: str = "effect give {player} minecraft:instant_health 3 255 true"
    lightning_command: str = "execute at {player} run summon minecraft:lightning_bolt ~ ~ ~"
    lightning_delay: float = 1.0
    sound_effects: tuple[str, ...] = ("boo", "creeper", "tentacle", "woop", "ahhh", "icq")
    fallback_sound: str = "boo"
    fallback_language: str = "en"
    neuro_system_prompt: str = ""
    neuro_max_tokens: int = 256
    neuro_temperature: float = 0.7

    @classmethod
    def from_settings(cls, settings) -> EffectSettings:
        return cls(
            game_player=settings.game_player,
            heal_command=settings.heal_command,
            lightning_command=settings.lightning_command,
            lightning_delay=settings.lightning_delay,
            sound_effects=tuple(settings.sound_effects),
            fallback_sound=settings.fallback_sound,
            fallback_language=settings.tts_fallback_language,
            neuro_system_prompt=settings.llm_persona,
            neuro_max_tokens=settings.neuro_max_tokens,
            neuro_temperature=settings.neuro_temperature,
        )


def detect_language(text: str, fallback: str = "en") -> str:
    """Pick ``ru`` or ``en`` by counting Cyrillic against Latin letters."""
    cyrillic = len(_CYRILLIC.findall(text))
    latin = len(_LATIN.findall(text))
    if cyrillic == 0 and latin == 0:
        return fallback
    return "ru" if cyrillic > latin else "en"


def clean_llm_text(raw: str) -> str:
    """Drop reasoning blocks some local models emit and trim to one chat line."""
    text = _THINK_BLOCK.sub("", raw)
    text = _THINK_OPEN.sub("", text).strip()
    if len(text) > CHAT_LIMIT - 3:
        text = text[: CHAT_LIMIT - 6] + "..."
    return text


class ActionExecutor:
    def __init__(
        self,
        caps: Capabilities,
        throttle: ThrottleStore,
        music: MusicQueue,
        effects: EffectSettings | None = None,
    ) -> None:
        self.caps = caps
        self.throttle = throttle
        self.music = music
        self.effects = effects or EffectSettings()
        self._background: set[asyncio.Task] = set()

    async def execute(self, action: ActionDescriptor, ctx: ActionContext) -> bool:
        LOGGER.debug(f"Executing {action_name(action)} for {ctx.username} ({ctx.origin})")
        try:
            if isinstance(action, Ban):
                return await self._ban(ctx)
            if isinstance(action, Timeout):
                return await self._timeout(action, ctx)
            if isinstance(action, DeleteMessage):
                return await self._delete(ctx)
            if isinstance(action, Hate):
                return await self._hate(ctx)
            if isinstance(action, Love):
                return await self._love(ctx)
            if isinstance(action, QueueMusic):
                return await self._queue_music(action, ctx)
            if isinstance(action, VoteSkip):
                return await self._vote_skip()
            if isinstance(action, NowPlaying):
                return await self.caps.chat.send_action(
                    f"🎹 Now playing: {self.music.current_song_name}"
                )
            if isinstance(action, Voice):
                return await self._voice(action, ctx)
            if isinstance(action, NeuroAsk):
                return await self._neuro(action)
            if isinstance(action, SoundEffect):
                return await self._sound(action.name)
            if isinstance(action, ForwardToGameBridge):
                return await self._forward(action, ctx)
        except asyncio.CancelledError:
            raise
        except CohostError as e:
            LOGGER.warning(f"{action_name(action)} failed for {ctx.username}: {e}")
            return False
        except Exception as e:
            LOGGER.exception(f"{action_name(action)} crashed for {ctx.username}: {e}")
            return False

        LOGGER.error(f"No handler for action {action!r}")
        return False

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def _ban(self, ctx: ActionContext) -> bool:
        if not ctx.user_id:
            LOGGER.warning(f"[MOD] Cannot ban {ctx.username}: no user id")
            return False
        await self.caps.platform.ban(ctx.user_id, "Automated ban: message violated rules")
        LOGGER.info(f"[MOD] Banned {ctx.username}")
        return True

    async def _timeout(self, action: Timeout, ctx: ActionContext) -> bool:
        if not ctx.user_id:
            LOGGER.warning(f"[MOD] Cannot time out {ctx.username}: no user id")
            return False
        await self.caps.platform.timeout(
            ctx.user_id,
            action.seconds,
            f"Automated timeout ({action.seconds}s): message violated rules",
        )
        LOGGER.info(f"[MOD] Timed out {ctx.username} for {action.seconds}s")
        return True

    async def _delete(self, ctx: ActionContext) -> bool:
        if not ctx.message_id:
            LOGGER.info(f"[MOD] No message id to delete for {ctx.username}, skipping")
            return False
        await self.caps.platform.delete_message(ctx.message_id)
        LOGGER.info(f"[MOD] Deleted message {ctx.message_id} from {ctx.username}")
        return True

    # ------------------------------------------------------------------
    # Hate / love
    # ------------------------------------------------------------------

    def _game_command(self, template: str) -> str:
        return template.format(player=self.effects.game_player)

    async def _hate(self, ctx: ActionContext) -> bool:
        outcome = self.throttle.hate(ctx.username)
        if outcome is HateOutcome.THROTTLED:
            return False

        if outcome is HateOutcome.PUNISH_HATER:
            await self._best_effort(
                self.caps.game.send_line(ctx.username, "§c Beware !!! They are hating you!!")
            )
            await self._best_effort(self.caps.sound.play("ahhh"))
            await self._best_effort(
                self.caps.game.send_command(self._game_command(self.effects.heal_command))
            )
            return True

        await self._best_effort(
            self.caps.game.send_command(self._game_command(self.effects.heal_command))
        )
        self.spawn(
            self._delayed_command(
                self.effects.lightning_delay, self._game_command(self.effects.lightning_command)
            )
        )
        return True

    async def _delayed_command(self, delay: float, command: str) -> None:
        await asyncio.sleep(delay)
        await self._best_effort(self.caps.game.send_command(command))

    async def _love(self, ctx: ActionContext) -> bool:
        self.throttle.love()
        await self._best_effort(
            self.caps.game.send_line(ctx.username, "§a Dance Dance Dance! They love you!!!")
        )
        await self._best_effort(self.caps.sound.play("woop"))
        await self.caps.chat.send_action("dances with joy! 💃✨")
        return True

    # ------------------------------------------------------------------
    # Music
    # ------------------------------------------------------------------

    async def _queue_music(self, action: QueueMusic, ctx: ActionContext) -> bool:
        try:
            position = await self.music.add(action.url)
        except ValidationFailed as e:
            LOGGER.info(f"[MUSIC] Rejected {action.url!r} from {ctx.username}")
            await self.caps.chat.send_whisper(ctx.username, e.message)
            return False
        if position == 0:
            await self.caps.chat.send("🎵 Playing your request now!")
        else:
            await self.caps.chat.send(f"🎵 Song queued! Position: {position}")
        return True

    async def _vote_skip(self) -> bool:
        try:
            remaining = await self.music.vote_skip()
        except NothingToSkip:
            await self.caps.chat.send("🎵 Nothing to skip right now")
            return False
        if remaining:
            await self.caps.chat.send(f"🆘 Skip votes needed: {remaining}")
        else:
            await self.caps.chat.send("⏭️ Skipped by chat vote")
        return True

    # ------------------------------------------------------------------
    # Voice / neuro / sound / game
    # ------------------------------------------------------------------

    async def _voice(self, action: Voice, ctx: ActionContext) -> bool:
        text = action.text.strip()
        if not text:
            return False
        language = action.voice_opts.language or detect_language(
            text, self.effects.fallback_language
        )
        spoken = await self._best_effort(self._speak(text, language, action))
        forwarded = await self._best_effort(
            self.caps.game.send_line(ctx.username, f"!voice {text}")
        )
        return spoken or forwarded

    async def _speak(self, text: str, language: str, action: Voice) -> None:
        audio = await self.caps.tts.synthesize(text, language, action.voice_opts)
        await self.caps.sound.play_audio(audio)

    async def _neuro(self, action: NeuroAsk) -> bool:
        prompt = action.prompt.strip()
        if not prompt:
            await self.caps.chat.send("❌ Please provide a message for Neuro")
            return False
        if not self.caps.llm.status():
            await self.caps.chat.send("🤖 Neuro is currently offline")
            return False

        messages = [{"role": "user", "content": prompt}]
        if self.effects.neuro_system_prompt:
            messages.insert(0, {"role": "system", "content": self.effects.neuro_system_prompt})
        try:
            raw = await self.caps.llm.chat(
                messages,
                max_tokens=action.max_tokens or self.effects.neuro_max_tokens,
                temperature=(
                    action.temperature
                    if action.temperature is not None
                    else self.effects.neuro_temperature
                ),
            )
        except CohostError as e:
            LOGGER.warning(f"[NEURO] Request failed: {e}")
            await self.caps.chat.send("🤖 Neuro encountered an error")
            return False

        reply = clean_llm_text(raw)
        if not reply:
            await self.caps.chat.send("🤖 Neuro has nothing to say")
            return True
        await self.caps.chat.send_action(f"🤖 {reply}")
        return True

    async def _sound(self, name: str) -> bool:
        if name not in self.effects.sound_effects:
            LOGGER.info(f"Unknown sound effect '{name}', playing fallback")
            name = self.effects.fallback_sound
        return await self._best_effort(self.caps.sound.play(name))

    async def _forward(self, action: ForwardToGameBridge, ctx: ActionContext) -> bool:
        if not self.caps.game.status():
            LOGGER.debug(f"Game bridge down, dropping line from {ctx.username}")
            return False
        if action.command:
            await self.caps.game.send_command(action.line)
        else:
            await self.caps.game.send_line(ctx.username, action.line)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _best_effort(self, op: Coroutine[Any, Any, Any]) -> bool:
        try:
            await op
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.warning(f"Best-effort step failed: {type(e).__name__}: {e}")
            return False

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run a follow-up effect in the background, keeping a reference."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled follow-ups (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def extension_handler(executor: ActionExecutor, template: ActionDescriptor):
    """LLM extension action that runs ``template`` with the model's reason as input."""

    async def handler(ctx, username: str, reason: str) -> None:
        action = instantiate(template, user_input=reason, user_name=username)
        await executor.execute(action, ActionContext(username=username, origin="llm"))

    return handler
