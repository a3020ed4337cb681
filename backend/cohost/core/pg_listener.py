"""PostgreSQL LISTEN helper with auto-reconnect."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

import asyncpg

LOGGER = logging.getLogger("PgListener")


async def _release(pool: asyncpg.Pool, connection: asyncpg.Connection, channel: str, handler) -> None:
    try:
        await connection.remove_listener(channel, handler)
    except Exception as e:
        LOGGER.debug(f"remove_listener('{channel}') failed: {e}")
    try:
        await pool.release(connection)
    except Exception:
        connection.terminate()


async def pg_listen(
    pool: asyncpg.Pool,
    channel: str,
    handler: Callable[..., Coroutine[Any, Any, None]],
    *,
    keepalive_interval: int = 30,
    reconnect_delay: int = 10,
) -> None:
    """Listen on a NOTIFY channel until cancelled.

    ``handler(connection, pid, channel, payload)`` is called per notification.
    The LISTEN connection is pinged every ``keepalive_interval`` seconds; on
    any error it is dropped and re-acquired after ``reconnect_delay``.
    """
    while True:
        connection: asyncpg.Connection | None = None
        try:
            connection = await pool.acquire()
            await connection.add_listener(channel, handler)
            LOGGER.info(f"PostgreSQL LISTEN active on '{channel}'")
            while True:
                await asyncio.sleep(keepalive_interval)
                await connection.execute("SELECT 1")
        except asyncio.CancelledError:
            LOGGER.info(f"PostgreSQL LISTEN '{channel}' shutting down")
            if connection is not None:
                await _release(pool, connection, channel, handler)
            break
        except Exception as e:
            LOGGER.error(f"Error in pg_listen('{channel}'): {e}")
            if connection is not None:
                await _release(pool, connection, channel, handler)
            LOGGER.warning(f"Reconnecting LISTEN '{channel}' in {reconnect_delay}s...")
            try:
                await asyncio.sleep(reconnect_delay)
            except asyncio.CancelledError:
                break
