"""Repository for the kv_store table (small durable JSON values)."""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

from shared.cache import AsyncTTLCache, cached

logger = logging.getLogger(__name__)

# Freshness comes from kv_change notifications; TTL is only a backstop.
_value_cache = AsyncTTLCache(maxsize=256, ttl=600)


class KeyValueRepository:
    """JSON values keyed by dotted names (``music_queue``, ``config.llm_model``...)."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @cached(cache=_value_cache, key_func=lambda self, key: f"kv:{key}")
    async def _load(self, key: str) -> Any:
        async with self.pool.acquire() as conn:
            raw = await conn.fetchval("SELECT value FROM kv_store WHERE key = $1", key)
            return None if raw is None else json.loads(raw)

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self._load(key)
        return default if value is None else value

    async def set(self, key: str, value: Any) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (key) DO UPDATE SET
                    value      = EXCLUDED.value,
                    updated_at = NOW()
                """,
                key,
                json.dumps(value, ensure_ascii=False),
            )
        _value_cache.set(f"kv:{key}", value)

    async def delete(self, key: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("DELETE FROM kv_store WHERE key = $1", key)
        _value_cache.invalidate(f"kv:{key}")

    async def list_prefix(self, prefix: str) -> dict[str, Any]:
        """Return every value whose key starts with ``prefix`` (uncached)."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT key, value FROM kv_store WHERE key LIKE $1 || '%' ORDER BY key",
                prefix,
            )
        return {row["key"]: json.loads(row["value"]) for row in rows}

    @staticmethod
    def invalidate(key: str) -> None:
        """Forget the cached value after an external write (kv_change notify)."""
        _value_cache.invalidate(f"kv:{key}")
