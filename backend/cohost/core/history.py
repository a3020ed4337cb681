"""Bounded chat history with an "already offered to the LLM" marker."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass

from core.events import ChatMessage

LOGGER = logging.getLogger("History")

NEW_MESSAGES_LINE = "-> new messages"
EMPTY_HISTORY = "No messages yet."
MEMORY_USERNAME = "[LLM_MEMORY]"


@dataclass(frozen=True)
class HistoryEntry:
    message: ChatMessage
    # Moderated messages stay for audit but are never shown to the LLM
    suppressed: bool = False


class HistoryBuffer:
    """Ring of the last ``capacity`` messages.

    ``marker`` counts the leading entries the LLM loop has already seen.
    Evicting the head shifts the marker down with it so it keeps pointing
    at the same message boundary; ``0 <= marker <= len`` always holds.
    """

    def __init__(self, capacity: int = 50) -> None:
        if capacity <= 0:
            raise ValueError("history capacity must be positive")
        self.capacity = capacity
        self._entries: deque[HistoryEntry] = deque()
        self._marker = 0
        self.total_appended = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def marker(self) -> int:
        if self._marker > len(self._entries):
            LOGGER.error(
                f"[HISTORY] marker {self._marker} beyond length {len(self._entries)}, clamping"
            )
            self._marker = len(self._entries)
        return self._marker

    def append(self, message: ChatMessage, *, suppressed: bool = False) -> None:
        self._entries.append(HistoryEntry(message, suppressed))
        self.total_appended += 1
        while len(self._entries) > self.capacity:
            self._entries.popleft()
            self._marker = max(0, self._marker - 1)

    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def messages(self) -> list[ChatMessage]:
        return [e.message for e in self._entries]

    def last_visible(self) -> ChatMessage | None:
        for entry in reversed(self._entries):
            if not entry.suppressed:
                return entry.message
        return None

    def has_pending(self) -> bool:
        """True when an unseen entry exists that the LLM is allowed to see."""
        marker = self.marker
        return any(not e.suppressed for e in list(self._entries)[marker:])

    def format_for_llm(self) -> str:
        if not self._entries:
            return EMPTY_HISTORY
        marker = self.marker
        lines: list[str] = []
        for index, entry in enumerate(self._entries):
            if not entry.suppressed:
                lines.append(format_line(entry.message))
            if index == marker - 1 and marker < len(self._entries):
                lines.append(NEW_MESSAGES_LINE)
        return "\n".join(lines) if lines else EMPTY_HISTORY

    def mark_consumed(self) -> None:
        self._marker = len(self._entries)

    def consume_through(self, seq: int) -> None:
        """Mark everything appended up to append-count ``seq`` as seen.

        Messages that arrived after ``seq`` stay unseen even if evictions
        happened in between.
        """
        newer = max(0, self.total_appended - seq)
        target = max(0, len(self._entries) - newer)
        self._marker = max(self.marker, min(target, len(self._entries)))


def format_line(message: ChatMessage) -> str:
    stamp = time.strftime("%H:%M:%S", time.localtime(message.timestamp))
    return f"[{stamp}] {message.username}: {message.text}"
