"""Narrow interfaces the core consumes.

Implementations live in ``services/``; tests substitute in-memory fakes.
Every call either succeeds or raises a ``core.errors.CohostError``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from core.actions import VoiceOptions


@dataclass
class RemoteReward:
    """A custom reward as the platform reports it."""

    reward_id: str
    title: str
    cost: int
    is_enabled: bool = True
    prompt: str = ""
    is_user_input_required: bool = False
    global_cooldown_seconds: int = 0


class Capability(Protocol):
    """A connection the supervisor keeps alive."""

    name: str

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def wait_closed(self) -> None: ...

    def status(self) -> bool: ...


class Platform(Protocol):
    async def ban(self, user_id: str, reason: str) -> None: ...

    async def timeout(self, user_id: str, seconds: int, reason: str) -> None: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def list_rewards(self) -> list[RemoteReward]: ...

    async def create_reward(self, spec: dict[str, Any]) -> RemoteReward: ...

    async def update_reward(self, reward_id: str, fields: dict[str, Any]) -> RemoteReward: ...

    async def fulfill_redemption(self, reward_id: str, redemption_id: str, status: str) -> None: ...

    async def update_channel(self, *, title: str, game_id: str, tags: list[str]) -> None: ...


class ChatSender(Protocol):
    async def send(self, text: str) -> bool: ...

    async def send_action(self, text: str) -> bool: ...

    async def send_whisper(self, user: str, text: str) -> bool: ...


class LanguageModel(Protocol):
    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        model: str | None = None,
        timeout: float | None = None,
    ) -> str: ...

    def status(self) -> bool: ...


class SpeechSynth(Protocol):
    async def synthesize(self, text: str, language: str, options: VoiceOptions) -> bytes: ...


class SoundOutput(Protocol):
    async def play(self, name: str) -> None: ...

    async def play_audio(self, data: bytes) -> None: ...


class GameLink(Protocol):
    async def send_line(self, user: str, message: str, chat: bool = True) -> None: ...

    async def send_command(self, command: str) -> None: ...

    def status(self) -> bool: ...


class MusicTransport(Protocol):
    async def send(self, command: str, payload: Any = None) -> None: ...

    def on_reply(self, event: str, handler: Callable[[Any], Awaitable[None]]) -> None: ...

    def status(self) -> bool: ...
