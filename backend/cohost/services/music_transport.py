"""Bridge to the browser music player.

The player page (a userscript on the music site) opens a websocket to
``/music`` on the local HTTP server. Commands go out as
``{"command": <name>, "data": <payload>}``; the player answers with
``{"event": <name>, "data": <payload>}`` (``music_start``, ``music_done``,
``status_reply``).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from aiohttp import web

from core.errors import NotConnected
from core.events import CapabilityStatusChanged

logger = logging.getLogger(__name__)

COMMANDS = frozenset({"song", "pause", "resume", "next", "query_status"})

ReplyHandler = Callable[[Any], Awaitable[None]]
StatusListener = Callable[[CapabilityStatusChanged], Awaitable[None]]


class MusicTransport:
    name = "music"

    def __init__(self, on_status: StatusListener | None = None) -> None:
        self.on_status = on_status
        self._clients: set[web.WebSocketResponse] = set()
        self._handlers: dict[str, list[ReplyHandler]] = {}

    def status(self) -> bool:
        return any(not ws.closed for ws in self._clients)

    def on_reply(self, event: str, handler: ReplyHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def send(self, command: str, payload: Any = None) -> None:
        if command not in COMMANDS:
            raise ValueError(f"unknown music command '{command}'")
        clients = [ws for ws in self._clients if not ws.closed]
        if not clients:
            raise NotConnected("music player")
        message = json.dumps({"command": command, "data": payload}, ensure_ascii=False)
        sent = 0
        for ws in clients:
            try:
                await ws.send_str(message)
                sent += 1
            except (ConnectionResetError, RuntimeError) as e:
                logger.warning(f"[MUSIC] Send to player failed: {e}")
        if not sent:
            raise NotConnected("music player")
        logger.info(f"[MUSIC] -> player: {command} {payload if payload is not None else ''}")

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for ``GET /music``."""
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        was_up = self.status()
        self._clients.add(ws)
        logger.info(f"[MUSIC] Player connected from {request.remote}")
        if not was_up:
            await self._notify(True)

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._on_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"[MUSIC] Player socket error: {ws.exception()}")
        finally:
            self._clients.discard(ws)
            logger.info("[MUSIC] Player disconnected")
            if not self.status():
                await self._notify(False)
        return ws

    async def _on_message(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"[MUSIC] Unparsable player message: {data[:100]}")
            return
        event = message.get("event")
        handlers = self._handlers.get(event or "", [])
        if not handlers:
            logger.debug(f"[MUSIC] Unhandled player event: {event}")
            return
        for handler in handlers:
            try:
                await handler(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[MUSIC] Reply handler for {event} failed: {e}")

    async def _notify(self, up: bool) -> None:
        if self.on_status is None:
            return
        try:
            await self.on_status(CapabilityStatusChanged(self.name, up))
        except Exception as e:
            logger.warning(f"[MUSIC] Status listener failed: {e}")

    async def close(self) -> None:
        for ws in list(self._clients):
            await ws.close()
        self._clients.clear()
