"""Repository for the tokens table."""

from __future__ import annotations

import asyncpg

from shared.cache import AsyncTTLCache, cached
from shared.models.token import Token

_token_cache = AsyncTTLCache(maxsize=8, ttl=3600)

_COLUMNS = "user_id, token, refresh, created_at, updated_at"


class TokenRepository:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @cached(cache=_token_cache, key_func=lambda self, user_id: f"token:{user_id}")
    async def get_token(self, user_id: str) -> Token | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM tokens WHERE user_id = $1", user_id)
            return Token(**dict(row)) if row else None

    async def list_tokens(self) -> list[Token]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT {_COLUMNS} FROM tokens")
            return [Token(**dict(r)) for r in rows]

    async def upsert_token(self, user_id: str, token: str, refresh: str) -> None:
        """Insert or rotate a user's OAuth token pair."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO tokens (user_id, token, refresh)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id) DO UPDATE SET
                    token      = EXCLUDED.token,
                    refresh    = EXCLUDED.refresh,
                    updated_at = NOW()
                """,
                user_id,
                token,
                refresh,
            )
        _token_cache.invalidate(f"token:{user_id}")
