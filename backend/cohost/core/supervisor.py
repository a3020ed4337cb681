"""Keeps capability connections alive.

One watch task per enabled capability: connect, wait until the connection
closes, report the transition, sleep ``reconnect_delay``, repeat. Stopping
a capability explicitly (``disconnect`` or disabling it) cancels its watch
task, so nothing reconnects behind the operator's back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from core.capabilities import Capability
from core.events import CapabilityStatusChanged

LOGGER = logging.getLogger("Supervisor")

StatusListener = Callable[[CapabilityStatusChanged], Awaitable[None]]


def enabled_key(name: str) -> str:
    return f"module_enabled.{name}"


class Supervisor:
    def __init__(
        self,
        store: Any,
        on_status: StatusListener | None = None,
        *,
        reconnect_delay: float = 5.0,
    ) -> None:
        self.store = store
        self.on_status = on_status
        self.reconnect_delay = reconnect_delay
        self._caps: dict[str, Capability] = {}
        self._enabled: dict[str, bool] = {}
        self._up: dict[str, bool] = {}
        self._watches: dict[str, asyncio.Task] = {}

    def register(self, cap: Capability, *, enabled: bool = True) -> None:
        self._caps[cap.name] = cap
        self._enabled[cap.name] = enabled
        self._up[cap.name] = False

    def names(self) -> list[str]:
        return list(self._caps)

    def is_enabled(self, name: str) -> bool:
        return self._enabled.get(name, False)

    def status(self) -> dict[str, dict[str, bool]]:
        return {
            name: {"enabled": self._enabled[name], "up": self._up[name]} for name in self._caps
        }

    async def start(self) -> None:
        """Load persisted enabled flags and start watching enabled capabilities."""
        for name in self._caps:
            try:
                stored = await self.store.get(enabled_key(name))
            except Exception as e:
                LOGGER.warning(f"[SUPERVISOR] Could not read flag for {name}: {e}")
                stored = None
            if stored is not None:
                self._enabled[name] = bool(stored)
            if self._enabled[name]:
                self._start_watch(name)
            else:
                LOGGER.info(f"[SUPERVISOR] {name} is disabled, not connecting")

    async def stop(self) -> None:
        for name in list(self._watches):
            await self.disconnect(name)

    async def set_enabled(self, name: str, enabled: bool) -> bool:
        if name not in self._caps:
            LOGGER.warning(f"[SUPERVISOR] Unknown capability '{name}'")
            return False
        self._enabled[name] = enabled
        try:
            await self.store.set(enabled_key(name), enabled)
        except Exception as e:
            LOGGER.warning(f"[SUPERVISOR] Could not persist flag for {name}: {e}")
        if enabled:
            self._start_watch(name)
        else:
            await self.disconnect(name)
        LOGGER.info(f"[SUPERVISOR] {name} {'enabled' if enabled else 'disabled'}")
        return True

    async def connect(self, name: str) -> None:
        if name in self._caps and self._enabled[name]:
            self._start_watch(name)

    async def disconnect(self, name: str) -> None:
        """Explicit stop: cancel the watch (no reconnect) and close the capability."""
        task = self._watches.pop(name, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        cap = self._caps.get(name)
        if cap is None:
            return
        try:
            await cap.disconnect()
        except Exception as e:
            LOGGER.warning(f"[SUPERVISOR] Error disconnecting {name}: {e}")
        await self._set_up(name, False)

    def _start_watch(self, name: str) -> None:
        task = self._watches.get(name)
        if task is not None and not task.done():
            return
        self._watches[name] = asyncio.create_task(self._watch(self._caps[name]))

    async def _watch(self, cap: Capability) -> None:
        while True:
            try:
                await cap.connect()
                await self._set_up(cap.name, True)
                await cap.wait_closed()
                LOGGER.warning(f"[SUPERVISOR] {cap.name} connection closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                LOGGER.warning(f"[SUPERVISOR] {cap.name} failed: {type(e).__name__}: {e}")
            await self._set_up(cap.name, False)
            LOGGER.info(f"[SUPERVISOR] Reconnecting {cap.name} in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def _set_up(self, name: str, up: bool) -> None:
        if self._up.get(name) == up:
            return
        self._up[name] = up
        if self.on_status is None:
            return
        try:
            await self.on_status(CapabilityStatusChanged(name, up))
        except Exception as e:
            LOGGER.warning(f"[SUPERVISOR] Status listener failed for {name}: {e}")
