"""HTTP health check server, also hosting the music player websocket"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import TYPE_CHECKING, Any

from aiohttp import web

if TYPE_CHECKING:
    from core.dispatcher import EventDispatcher
    from core.supervisor import Supervisor
    from services.music_transport import MusicTransport

logger = logging.getLogger("Cohost.Health")


class HealthCheckServer:
    """HTTP health check server"""

    def __init__(
        self,
        dispatcher: EventDispatcher | None = None,
        supervisor: Supervisor | None = None,
        music_transport: MusicTransport | None = None,
        host: str = "0.0.0.0",
        port: int | None = None,
        heartbeat_interval: float = 300.0,
    ):
        self.dispatcher: Any = dispatcher
        self.supervisor: Any = supervisor
        self.music_transport = music_transport
        self.host = host
        self.port = port or int(os.getenv("PORT", "4344"))
        self.heartbeat_interval = heartbeat_interval
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self._start_time: float = time.time()
        self._heartbeat_task: asyncio.Task | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Configure HTTP routes"""
        self.app.router.add_get("/", self.handle_root)
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/status", self.handle_status)
        self.app.router.add_get("/ping", self.handle_ping)
        if self.music_transport is not None:
            self.app.router.add_get("/music", self.music_transport.handle_ws)

    @property
    def ready(self) -> bool:
        return self.dispatcher is not None and self.dispatcher.running

    async def handle_root(self, request: web.Request) -> web.Response:
        """Root endpoint - minimal service info"""
        return web.json_response({"service": "cohost", "status": "running"})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Liveness: always 200, ``ready`` once the dispatcher is consuming"""
        return web.json_response(
            {"status": "healthy" if self.ready else "starting", "ready": self.ready},
        )

    async def handle_status(self, request: web.Request) -> web.Response:
        """Capability states and queue depths"""
        d = self.dispatcher
        return web.json_response(
            {
                "service": "cohost",
                "uptime_seconds": int(time.time() - self._start_time),
                "capabilities": self.supervisor.status() if self.supervisor else {},
                "music": {
                    "player_connected": bool(
                        self.music_transport and self.music_transport.status()
                    ),
                    "queue_length": len(d.music) if d else 0,
                    "now_playing": d.music.current_song_name if d else None,
                },
                "history_size": len(d.history) if d else 0,
                "pending_events": d.pending if d else 0,
                "handled_events": d.handled if d else 0,
                "llm_loop_enabled": d.llm_loop.enabled if d else False,
            }
        )

    async def handle_ping(self, request: web.Request) -> web.Response:
        """Ping endpoint"""
        return web.Response(text="pong")

    async def _heartbeat(self) -> None:
        """Periodic heartbeat: log uptime and dispatcher state"""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            uptime = int(time.time() - self._start_time)
            pending = self.dispatcher.pending if self.dispatcher else 0
            logger.info(f"Heartbeat: uptime={uptime}s, ready={self.ready}, pending={pending}")

    async def start(self) -> None:
        """Start health check server"""
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            site = web.TCPSite(self.runner, self.host, self.port)
            await site.start()

            self._heartbeat_task = asyncio.create_task(self._heartbeat())

            logger.info(f"Health server started on {self.host}:{self.port}")
            logger.info(f"  GET http://{self.host}:{self.port}/health - Health check")
            logger.info(f"  GET http://{self.host}:{self.port}/status - Detailed status")
            if self.music_transport is not None:
                logger.info(f"  WS  ws://{self.host}:{self.port}/music - Music player")

        except Exception as e:
            logger.exception(f"Failed to start health server: {e}")
            raise

    async def stop(self) -> None:
        """Stop health check server"""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        if self.music_transport is not None:
            await self.music_transport.close()
        if self.runner:
            try:
                await self.runner.cleanup()
                logger.info("Health server stopped")
            except Exception as e:
                logger.exception(f"Error stopping health server: {e}")
