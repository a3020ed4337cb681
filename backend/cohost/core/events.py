"""Records flowing into the dispatcher."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class MessageSource(str, Enum):
    LIVE = "live"
    INJECTED_TRUSTED = "injected-trusted"


@dataclass(frozen=True)
class ChatMessage:
    username: str
    user_id: str
    text: str
    message_id: str | None = None
    source: MessageSource = MessageSource.LIVE
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Redemption:
    redemption_id: str
    reward_id: str
    user_name: str
    user_input: str = ""
    user_id: str = ""


@dataclass(frozen=True)
class ChatArrived:
    message: ChatMessage


@dataclass(frozen=True)
class RedemptionArrived:
    redemption: Redemption


@dataclass(frozen=True)
class SpeechFinal:
    phrase: str
    language: str = ""
    confidence: float = 0.0


@dataclass(frozen=True)
class TrackCompleted:
    url: str = ""


@dataclass(frozen=True)
class TrackStarted:
    name: str


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class CapabilityStatusChanged:
    name: str
    up: bool


@dataclass(frozen=True)
class ReloadRequested:
    """Rules or runtime config changed in the store."""

    key: str = ""


@dataclass(frozen=True)
class OperatorCommand:
    """Owner chat command routed through the dispatcher (preset, skip, module...)."""

    name: str
    args: tuple[str, ...] = ()


Event = (
    ChatArrived
    | RedemptionArrived
    | SpeechFinal
    | TrackCompleted
    | TrackStarted
    | Tick
    | CapabilityStatusChanged
    | ReloadRequested
    | OperatorCommand
)
