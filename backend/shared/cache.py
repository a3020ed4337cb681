"""In-process TTL cache with stale fallback for cohost state reads.

The key/value store sits in PostgreSQL; reads go through a short-lived
cachetools.TTLCache so the dispatcher never waits on the database for
values it saw a moment ago. If the database drops out, readers are served
the last value seen (the "stale" tier) instead of an exception.
"""

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, TypeVar

from cachetools import TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

# Distinguishes "no entry" from a cached None
MISSING = object()

F = TypeVar("F", bound=Callable[..., Any])


class AsyncTTLCache:
    """Fresh TTL tier plus a bounded LRU of last-known-good values."""

    def __init__(self, maxsize: int = 128, ttl: float = 60.0):
        self._maxsize = maxsize
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._stale: OrderedDict[str, Any] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            if len(self._locks) > self._maxsize * 2:
                live = set(self._stale) | set(self._fresh)
                for k in [k for k in self._locks if k not in live and k != key]:
                    del self._locks[k]
        return lock

    def get(self, key: str) -> Any:
        return self._fresh.get(key, MISSING)

    def set(self, key: str, value: Any) -> None:
        self._fresh[key] = value
        self._stale[key] = value
        self._stale.move_to_end(key)
        while len(self._stale) > self._maxsize:
            self._stale.popitem(last=False)

    def invalidate(self, key: str) -> None:
        """Drop the fresh entry; the stale tier keeps it for outages."""
        self._fresh.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._fresh if k.startswith(prefix)]:
            self._fresh.pop(key, None)

    def clear(self) -> None:
        self._fresh.clear()

    def get_stale(self, key: str) -> Any:
        value = self._stale.get(key, MISSING)
        if value is not MISSING:
            self._stale.move_to_end(key)
        return value

    @property
    def size(self) -> int:
        return len(self._fresh)


def cached(
    cache: AsyncTTLCache,
    key_func: Callable[..., str],
    *,
    retry: int = 2,
):
    """Cache an async loader, falling back to stale data when it keeps failing.

    ``key_func`` receives the same arguments as the wrapped coroutine.
    After ``retry`` failed attempts the stale tier is consulted; with nothing
    there the last exception propagates.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = key_func(*args, **kwargs)

            hit = cache.get(key)
            if hit is not MISSING:
                return hit

            async with cache.lock_for(key):
                hit = cache.get(key)
                if hit is not MISSING:
                    return hit

                last_exc: BaseException | None = None
                for attempt in range(1, retry + 1):
                    try:
                        value = await func(*args, **kwargs)
                        cache.set(key, value)
                        return value
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        last_exc = exc
                        if attempt < retry:
                            delay = 0.5 * attempt
                            logger.warning(
                                "Store read %d/%d failed for %s: %s, retrying in %.1fs",
                                attempt,
                                retry,
                                key,
                                type(exc).__name__,
                                delay,
                            )
                            await asyncio.sleep(delay)

                stale = cache.get_stale(key)
                if stale is not MISSING:
                    logger.warning("Serving stale value for %s (%s)", key, type(last_exc).__name__)
                    return stale

                raise last_exc  # type: ignore[misc]

        wrapper.cache = cache  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
