"""Shared asyncpg pool for the ledger and subscription tables."""

import asyncio
import logging
from typing import Optional

import asyncpg

from membran.config import AppConfig, get_config

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0

_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Pin every session to UTC so expiry arithmetic never sees local time."""
    await conn.execute("SET TIME ZONE 'UTC'")


async def _open(config: AppConfig) -> asyncpg.Pool:
    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
                init=_init_connection,
            ),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"No database connection within {CONNECT_TIMEOUT_SECONDS:.0f}s; "
            "is PostgreSQL reachable at the configured DSN?"
        )
    if pool is None:
        raise RuntimeError("asyncpg returned no pool")
    return pool


async def _verify(pool: asyncpg.Pool) -> None:
    """Round-trip one query; the pool is closed if the database misbehaves."""
    try:
        async with pool.acquire() as conn:
            answer = await conn.fetchval("SELECT 1")
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database unreachable after connect: {e}") from e
    if answer != 1:
        await pool.close()
        raise RuntimeError(f"Unexpected answer to SELECT 1: {answer!r}")


async def get_pool() -> asyncpg.Pool:
    """
    Return the process-wide connection pool, opening it on first use.

    Webhook handlers may all reach here at once on a cold start; only one
    of them opens the pool and the rest wait for it.

    Raises:
        asyncio.TimeoutError: Database did not accept connections in time
        RuntimeError: Database answered the connect but failed the check query
    """
    global _pool

    if _pool is not None:
        return _pool

    async with _pool_lock:
        if _pool is None:
            config = get_config()
            pool = await _open(config)
            await _verify(pool)
            _pool = pool
            logger.info(
                f"Database pool ready (min={config.db_pool_min}, max={config.db_pool_max})"
            )
    return _pool


async def close_pool() -> None:
    """
    Close the pool if one is open.

    A close that hangs past the connect timeout (usually a connection still
    held by a stuck webhook handler) is forced with terminate().
    """
    global _pool
    pool, _pool = _pool, None
    if pool is None:
        return

    try:
        await asyncio.wait_for(pool.close(), timeout=CONNECT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"Pool still busy after {CONNECT_TIMEOUT_SECONDS:.0f}s; terminating connections")
        pool.terminate()
