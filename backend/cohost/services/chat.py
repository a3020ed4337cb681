"""Outgoing chat on top of the Helix client."""

from __future__ import annotations

import logging

from core.errors import CohostError
from core.executor import CHAT_LIMIT

logger = logging.getLogger(__name__)


class ChatChannel:
    """``ChatSender`` for the broadcaster's channel, speaking as the bot."""

    def __init__(self, helix) -> None:
        self.helix = helix

    @staticmethod
    def _fit(text: str) -> str:
        text = text.strip()
        if len(text) > CHAT_LIMIT:
            text = text[: CHAT_LIMIT - 3] + "..."
        return text

    async def send(self, text: str) -> bool:
        text = self._fit(text)
        if not text:
            return False
        try:
            return await self.helix.send_chat_message(text)
        except CohostError as e:
            logger.warning(f"Chat send failed: {e}")
            return False

    async def send_action(self, text: str) -> bool:
        return await self.send(f"/me {text}")

    async def send_whisper(self, user: str, text: str) -> bool:
        try:
            await self.helix.send_whisper(user, self._fit(text))
            return True
        except CohostError as e:
            # Whispers need a verified bot phone number; fall back to a mention
            logger.warning(f"Whisper to {user} failed ({e}), replying in chat")
            return await self.send(f"@{user} {text}")
