"""PostgreSQL connection pool for the analytics marts.

Async pool built on psycopg 3. The pool is small (traffic is low), bounds
the connect wait, and evicts idle connections so short-lived deployments do
not leak them.

Usage:
    from portfolio_agent.db.pool import init_pg_pool, pg_connection

    # In application startup (FastAPI lifespan):
    await init_pg_pool(settings.DATABASE_URL)

    # In any coroutine that needs DB access:
    async with pg_connection() as conn:
        async with conn.cursor() as cur:
            await cur.execute("SELECT ...")
            rows = await cur.fetchall()
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from portfolio_agent.core.config import Settings, get_settings
from portfolio_agent.core.logging import get_logger

logger = get_logger(__name__)

_PG_POOL: AsyncConnectionPool | None = None


async def init_pg_pool(database_url: str | None = None, settings: Settings | None = None) -> AsyncConnectionPool | None:
    """Initialize the module-level connection pool. Idempotent; None when no DSN is configured."""
    global _PG_POOL
    if _PG_POOL is not None:
        return _PG_POOL

    settings = settings or get_settings()
    dsn = database_url or settings.DATABASE_URL
    if not dsn:
        logger.warning("DATABASE_URL not set; answers will use fallback evidence only")
        return None

    logger.info("Initializing PostgreSQL connection pool...")
    pool = AsyncConnectionPool(
        conninfo=dsn,
        min_size=settings.DB_POOL_MIN_SIZE,
        max_size=settings.DB_POOL_MAX_SIZE,
        timeout=settings.DB_CONNECT_TIMEOUT,
        max_idle=settings.DB_MAX_IDLE,
        open=False,
        kwargs={
            "row_factory": dict_row,
            "connect_timeout": int(settings.DB_CONNECT_TIMEOUT),
        },
    )
    # Do not block startup on the store; connections are made on demand
    await pool.open(wait=False)
    _PG_POOL = pool
    logger.info("PostgreSQL connection pool created.")
    return _PG_POOL


def get_pg_pool() -> AsyncConnectionPool:
    """Get the connection pool. Raises RuntimeError if not initialized."""
    if _PG_POOL is None:
        raise RuntimeError("PostgreSQL pool not initialized. Call init_pg_pool() first.")
    return _PG_POOL


async def close_pg_pool() -> None:
    """Close the connection pool. Safe to call multiple times."""
    global _PG_POOL
    if _PG_POOL is not None:
        logger.info("Closing PostgreSQL connection pool...")
        await _PG_POOL.close()
        _PG_POOL = None


@asynccontextmanager
async def pg_connection() -> AsyncIterator[psycopg.AsyncConnection]:
    """Checkout a pooled connection; the pool rolls back on error."""
    pool = get_pg_pool()
    async with pool.connection() as conn:
        yield conn

