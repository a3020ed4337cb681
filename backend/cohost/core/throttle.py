"""Hate/love throttle state.

Pure state transitions; the executor turns the returned outcome into game
commands, sounds and chat lines.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from enum import Enum

LOGGER = logging.getLogger("Throttle")


class HateOutcome(str, Enum):
    THROTTLED = "throttled"
    # Streamer is under love protection: the hater gets punished instead
    PUNISH_HATER = "punish_hater"
    STRIKE = "strike"


class ThrottleStore:
    """Per-user hate timestamps plus the process-wide love protection window."""

    def __init__(
        self,
        *,
        hate_cooldown: float = 60.0,
        love_protection: float = 60.0,
        broadcaster: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.hate_cooldown = hate_cooldown
        self.love_protection = love_protection
        self.broadcaster = broadcaster.lower()
        self.clock = clock
        self.last_hate: dict[str, float] = {}
        self.love_protection_until: float = -math.inf

    def is_protected(self, now: float | None = None) -> bool:
        now = self.clock() if now is None else now
        return now < self.love_protection_until

    def hate(self, username: str, now: float | None = None) -> HateOutcome:
        now = self.clock() if now is None else now
        user = username.lower()
        last = self.last_hate.get(user)
        if user != self.broadcaster and last is not None and now - last < self.hate_cooldown:
            LOGGER.info(
                f"[HATE] {username} throttled ({self.hate_cooldown - (now - last):.0f}s left)"
            )
            return HateOutcome.THROTTLED

        self.last_hate[user] = now
        outcome = HateOutcome.PUNISH_HATER if self.is_protected(now) else HateOutcome.STRIKE
        # A hate also opens a protection window, so back-to-back hates
        # from different users land in the punish branch.
        self.love_protection_until = now + self.love_protection
        LOGGER.info(f"[HATE] {username}: {outcome.value}")
        return outcome

    def love(self, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        self.love_protection_until = now + self.love_protection
        LOGGER.info(f"[LOVE] Protected for {self.love_protection:.0f}s")
