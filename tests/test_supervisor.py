"""Tests for the capability reconnect supervisor."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeStore
from core.events import CapabilityStatusChanged
from core.supervisor import Supervisor, enabled_key


class FlakyLink:
    """Connects after ``failures`` attempts; each connection lasts until ``drop()``."""

    def __init__(self, name: str = "game", failures: int = 0) -> None:
        self.name = name
        self.failures = failures
        self.attempts = 0
        self.disconnects = 0
        self._closed: asyncio.Event = asyncio.Event()
        self._up = False

    async def connect(self) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionRefusedError("not yet")
        self._closed = asyncio.Event()
        self._up = True

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def disconnect(self) -> None:
        self.disconnects += 1
        self._up = False
        self._closed.set()

    def drop(self) -> None:
        self._up = False
        self._closed.set()

    def status(self) -> bool:
        return self._up


async def _until(predicate, timeout: float = 1.0) -> None:
    for _ in range(int(timeout / 0.005)):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


def _make_supervisor(store: FakeStore | None = None) -> tuple[Supervisor, list[CapabilityStatusChanged]]:
    events: list[CapabilityStatusChanged] = []

    async def on_status(event: CapabilityStatusChanged) -> None:
        events.append(event)

    return Supervisor(store or FakeStore(), on_status, reconnect_delay=0.01), events


class TestSupervisor:
    @pytest.mark.asyncio()
    async def test_retries_until_connected(self):
        supervisor, events = _make_supervisor()
        link = FlakyLink(failures=2)
        supervisor.register(link)
        await supervisor.start()

        await _until(lambda: supervisor.status()["game"]["up"])
        assert link.attempts == 3
        assert events == [CapabilityStatusChanged("game", True)]
        await supervisor.stop()

    @pytest.mark.asyncio()
    async def test_reconnects_after_drop(self):
        supervisor, events = _make_supervisor()
        link = FlakyLink()
        supervisor.register(link)
        await supervisor.start()
        await _until(lambda: link.attempts == 1 and supervisor.status()["game"]["up"])

        link.drop()
        await _until(lambda: link.attempts == 2 and supervisor.status()["game"]["up"])
        assert [e.up for e in events] == [True, False, True]
        await supervisor.stop()

    @pytest.mark.asyncio()
    async def test_disable_stops_reconnecting_and_persists(self):
        store = FakeStore()
        supervisor, events = _make_supervisor(store)
        link = FlakyLink()
        supervisor.register(link)
        await supervisor.start()
        await _until(lambda: supervisor.status()["game"]["up"])

        assert await supervisor.set_enabled("game", False)
        attempts = link.attempts
        await asyncio.sleep(0.05)
        assert link.attempts == attempts
        assert store.data[enabled_key("game")] is False
        assert supervisor.status()["game"] == {"enabled": False, "up": False}
        assert events[-1] == CapabilityStatusChanged("game", False)

    @pytest.mark.asyncio()
    async def test_stored_flag_keeps_capability_off(self):
        store = FakeStore({enabled_key("speech"): False})
        supervisor, _ = _make_supervisor(store)
        link = FlakyLink("speech")
        supervisor.register(link)
        await supervisor.start()
        await asyncio.sleep(0.02)
        assert link.attempts == 0
        assert not supervisor.is_enabled("speech")

        await supervisor.set_enabled("speech", True)
        await _until(lambda: supervisor.status()["speech"]["up"])
        await supervisor.stop()

    @pytest.mark.asyncio()
    async def test_unknown_capability(self):
        supervisor, _ = _make_supervisor()
        assert not await supervisor.set_enabled("nope", True)

    @pytest.mark.asyncio()
    async def test_listener_failure_does_not_stop_watch(self):
        async def broken(event):
            raise RuntimeError("listener bug")

        supervisor = Supervisor(FakeStore(), broken, reconnect_delay=0.01)
        link = FlakyLink()
        supervisor.register(link)
        await supervisor.start()
        await _until(lambda: supervisor.status()["game"]["up"])
        await supervisor.stop()
        assert link.disconnects == 1
