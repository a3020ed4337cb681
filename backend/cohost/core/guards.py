"""Shared guards: owner check for chat commands, global reward cooldowns."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

LOGGER = logging.getLogger("Guards")


def is_owner(chatter, broadcaster_id: str) -> bool:
    """Owner commands are reserved for the broadcaster account."""
    return bool(getattr(chatter, "broadcaster", False)) or chatter.id == broadcaster_id


class RewardCooldowns:
    """Global per-reward cooldown tracker (reset on restart).

    key: reward key (``hate``, ``voice``...), value: monotonic time at which
    the next redemption is allowed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._next_allowed: dict[str, float] = {}

    def remaining(self, key: str, now: float | None = None) -> float:
        now = self.clock() if now is None else now
        return max(0.0, self._next_allowed.get(key, 0.0) - now)

    def is_on_cooldown(self, key: str, now: float | None = None) -> bool:
        now = self.clock() if now is None else now
        return key in self._next_allowed and now < self._next_allowed[key]

    def record(self, key: str, cooldown_seconds: float, now: float | None = None) -> None:
        if cooldown_seconds <= 0:
            return
        now = self.clock() if now is None else now
        self._next_allowed[key] = now + cooldown_seconds
