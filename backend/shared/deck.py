"""Double-ended list persisted to the key/value store.

Mutations are in-memory and mark the deck dirty; a background task writes
the whole list back at most once per ``flush_interval``. ``close()`` forces
a final write so nothing is lost on a clean shutdown.

"Top" is the tail (``push``/``pop``), "bottom" the head (``unshift``/``shift``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Generic, Protocol, TypeVar

LOGGER = logging.getLogger("PersistentDeck")

T = TypeVar("T")


class ValueStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...


class PersistentDeck(Generic[T]):
    def __init__(self, store: ValueStore, key: str, *, flush_interval: float = 1.0) -> None:
        self.store = store
        self.key = key
        self.flush_interval = flush_interval
        self._items: list[T] = []
        self._dirty = False
        self._task: asyncio.Task | None = None

    async def load(self) -> None:
        """Replace in-memory contents with the stored list."""
        try:
            stored = await self.store.get(self.key, [])
        except Exception as e:
            LOGGER.warning(f"Failed to load deck '{self.key}': {e}, starting empty")
            stored = []
        if not isinstance(stored, list):
            LOGGER.warning(f"Deck '{self.key}' holds {type(stored).__name__}, expected list")
            stored = []
        self._items = list(stored)
        self._dirty = False
        LOGGER.info(f"Deck '{self.key}' loaded with {len(self._items)} item(s)")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())

    async def close(self) -> None:
        """Stop the flush loop and write any pending changes."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            if not self._dirty:
                continue
            try:
                await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                LOGGER.warning(f"Deck '{self.key}' flush failed: {e}, will retry")

    async def flush(self) -> None:
        if not self._dirty:
            return
        snapshot = list(self._items)
        self._dirty = False
        try:
            await self.store.set(self.key, snapshot)
        except Exception:
            self._dirty = True
            raise

    def _touch(self) -> None:
        self._dirty = True

    def push(self, item: T) -> None:
        self._items.append(item)
        self._touch()

    def pop(self) -> T | None:
        if not self._items:
            return None
        self._touch()
        return self._items.pop()

    def unshift(self, item: T) -> None:
        self._items.insert(0, item)
        self._touch()

    def shift(self) -> T | None:
        if not self._items:
            return None
        self._touch()
        return self._items.pop(0)

    def peek_top(self) -> T | None:
        return self._items[-1] if self._items else None

    def peek_bottom(self) -> T | None:
        return self._items[0] if self._items else None

    def clear(self) -> None:
        if self._items:
            self._items.clear()
            self._touch()

    def all(self) -> list[T]:
        return list(self._items)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def __len__(self) -> int:
        return len(self._items)

    def size(self) -> int:
        return len(self._items)
