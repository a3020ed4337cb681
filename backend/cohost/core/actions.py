"""Action descriptors: the closed set of side effects the executor performs.

Descriptors are plain frozen dataclasses. Rules, rewards and LLM extension
actions are configured as small dicts (``{"type": "timeout", "seconds": 30}``)
and turned into descriptors by ``action_from_spec``. String fields may carry
``{input}`` / ``{user}`` placeholders that ``instantiate`` fills per event.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class VoiceOptions:
    voice_type: str = "tts"
    language: str | None = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    voice_name: str | None = None


@dataclass(frozen=True)
class Ban:
    pass


@dataclass(frozen=True)
class Timeout:
    seconds: int = 30


@dataclass(frozen=True)
class DeleteMessage:
    pass


@dataclass(frozen=True)
class Hate:
    pass


@dataclass(frozen=True)
class Love:
    pass


@dataclass(frozen=True)
class QueueMusic:
    url: str = "{input}"


@dataclass(frozen=True)
class VoteSkip:
    pass


@dataclass(frozen=True)
class NowPlaying:
    pass


@dataclass(frozen=True)
class Voice:
    text: str = "{input}"
    voice_opts: VoiceOptions = field(default_factory=VoiceOptions)


@dataclass(frozen=True)
class NeuroAsk:
    prompt: str = "{input}"
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class SoundEffect:
    name: str


@dataclass(frozen=True)
class ForwardToGameBridge:
    line: str = "{input}"
    command: bool = False


ActionDescriptor = (
    Ban
    | Timeout
    | DeleteMessage
    | Hate
    | Love
    | QueueMusic
    | VoteSkip
    | NowPlaying
    | Voice
    | NeuroAsk
    | SoundEffect
    | ForwardToGameBridge
)

MODERATION_ACTIONS = (Ban, Timeout, DeleteMessage)

ACTION_TYPES: dict[str, type] = {
    "ban": Ban,
    "timeout": Timeout,
    "delete_message": DeleteMessage,
    "hate": Hate,
    "love": Love,
    "queue_music": QueueMusic,
    "vote_skip": VoteSkip,
    "now_playing": NowPlaying,
    "voice": Voice,
    "neuro_ask": NeuroAsk,
    "sound_effect": SoundEffect,
    "forward_to_game": ForwardToGameBridge,
}

# Descriptors whose free text may come from a rule's capture group
_TEXT_FIELDS: dict[type, str] = {QueueMusic: "url", Voice: "text", NeuroAsk: "prompt"}


def is_moderation(action: ActionDescriptor) -> bool:
    return isinstance(action, MODERATION_ACTIONS)


def action_from_spec(spec: dict[str, Any]) -> ActionDescriptor:
    """Build a descriptor from its config dict; raises ``ValueError`` when malformed."""
    if not isinstance(spec, dict) or "type" not in spec:
        raise ValueError(f"action spec needs a 'type': {spec!r}")
    kind = spec["type"]
    cls = ACTION_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"unknown action type '{kind}'")

    params = {k: v for k, v in spec.items() if k != "type"}
    if cls is Voice and "voice_opts" in params:
        params["voice_opts"] = VoiceOptions(**params["voice_opts"])
    try:
        return cls(**params)
    except TypeError as e:
        raise ValueError(f"bad parameters for '{kind}': {e}") from e


def action_name(action: ActionDescriptor) -> str:
    for name, cls in ACTION_TYPES.items():
        if isinstance(action, cls):
            return name
    return type(action).__name__


def instantiate(
    template: ActionDescriptor, *, user_input: str = "", user_name: str = ""
) -> ActionDescriptor:
    """Fill ``{input}`` and ``{user}`` placeholders in the template's string fields."""
    changes: dict[str, str] = {}
    for f in dataclasses.fields(template):
        value = getattr(template, f.name)
        if isinstance(value, str) and ("{input}" in value or "{user}" in value):
            changes[f.name] = value.replace("{input}", user_input).replace("{user}", user_name)
    return dataclasses.replace(template, **changes) if changes else template


def with_captured_text(action: ActionDescriptor, captured: str | None, text: str) -> ActionDescriptor:
    """Resolve a rule's descriptor against the message that matched it.

    The first capture group of the matching pattern (or the whole message)
    becomes ``{input}`` for text-bearing descriptors.
    """
    if type(action) not in _TEXT_FIELDS:
        return action
    return instantiate(action, user_input=captured if captured is not None else text)
