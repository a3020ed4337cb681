"""Game server bridge (Minecraft via a websocket chat/command plugin)."""

from __future__ import annotations

import logging

from services.websocket import WebSocketLink

logger = logging.getLogger(__name__)


class GameBridge(WebSocketLink):
    name = "game"

    async def send_line(self, user: str, message: str, chat: bool = True) -> None:
        payload = {"message": message, "user": user}
        if chat:
            payload["chat"] = "T"
        await self.send_json(payload)
        logger.debug(f"-> game [{user}] {message[:80]}")

    async def send_command(self, command: str) -> None:
        if not command:
            return
        await self.send_json({"command": command})
        logger.debug(f"-> game command: {command}")
