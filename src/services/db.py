"""asyncpg connection pool for the Waypoint store.

Usage::

    await init_pool(settings)
    async with get_connection() as conn:
        rows = await conn.fetch("SELECT id FROM activities WHERE user_id = $1", user_id)
    await close_pool()

Connections handed out by ``get_connection`` are inside a transaction that
commits when the block exits normally and rolls back on an exception.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("waypoint.db")

# Module-level connection pool, initialized once at startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.db_pool_min_size,
        s.db_pool_max_size,
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection wrapped in a transaction."""
    source = pool or get_pool()
    async with source.acquire() as conn:
        async with conn.transaction():
            yield conn


async def fetch(query: str, *args: Any, pool: asyncpg.Pool | None = None) -> list[asyncpg.Record]:
    async with get_connection(pool) as conn:
        return await conn.fetch(query, *args)


async def fetchrow(
    query: str, *args: Any, pool: asyncpg.Pool | None = None
) -> asyncpg.Record | None:
    async with get_connection(pool) as conn:
        return await conn.fetchrow(query, *args)


async def execute(query: str, *args: Any, pool: asyncpg.Pool | None = None) -> str:
    async with get_connection(pool) as conn:
        return await conn.execute(query, *args)
