"""Shared plumbing for the websocket capabilities (game bridge, speech)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from core.errors import NotConnected

logger = logging.getLogger(__name__)


class WebSocketLink:
    """One aiohttp client websocket with a reader task.

    ``connect`` raises ``NotConnected`` when the peer is unreachable;
    ``wait_closed`` returns once the reader sees the socket close. Reconnects
    are the supervisor's job.
    """

    name = "websocket"

    def __init__(self, url: str, *, connect_timeout: float = 10.0, heartbeat: float = 30.0) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self.heartbeat = heartbeat
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None

    def status(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self.status():
            return
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=self.heartbeat),
                timeout=self.connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise NotConnected(f"{self.name} ({self.url}): {e}") from e
        logger.info(f"Connected to {self.name} at {self.url}")
        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    await self.on_text(msg.data)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"{self.name}: failed to handle message: {e}")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"{self.name}: websocket error {ws.exception()}")
                break
        logger.info(f"{self.name}: connection closed (code={ws.close_code})")

    async def on_text(self, data: str) -> None:
        logger.debug(f"{self.name}: {data[:200]}")

    async def wait_closed(self) -> None:
        if self._reader is not None:
            await asyncio.shield(self._reader)

    async def disconnect(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._ws = None
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send_json(self, payload: dict[str, Any]) -> None:
        if not self.status():
            raise NotConnected(self.name)
        try:
            await self._ws.send_str(json.dumps(payload, ensure_ascii=False))  # type: ignore[union-attr]
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise NotConnected(f"{self.name}: {e}") from e
