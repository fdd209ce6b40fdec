"""
Database connection pool and store lifecycle.

The server owns exactly one ReviewStore, created at startup and kept on
app.state. Route handlers receive it through get_store(); nothing in the
ratings kernel reads module state.
"""

from __future__ import annotations

import logging

import asyncpg
from fastapi import Request, WebSocket

from ratings.postgres_store import PostgresStore
from ratings.store import MemoryStore, ReviewStore
from server.config import settings

logger = logging.getLogger(__name__)

pool: asyncpg.Pool | None = None


async def init_pool() -> asyncpg.Pool:
    """
    Initialize the connection pool.
    Called once at application startup.
    """
    global pool
    pool = await asyncpg.create_pool(
        dsn=settings.DATABASE_URL,
        min_size=settings.DATABASE_POOL_MIN,
        max_size=settings.DATABASE_POOL_MAX,
        command_timeout=60,
    )
    return pool


async def close_pool() -> None:
    """
    Close the connection pool.
    Called at application shutdown.
    """
    global pool
    if pool is not None:
        await pool.close()
        pool = None


async def open_store() -> ReviewStore:
    """Create the configured store and start its change listener."""
    if settings.STORE_BACKEND == "postgres":
        store = PostgresStore(await init_pool(), max_attempts=settings.TRANSACTION_MAX_ATTEMPTS)
        await store.start()
    else:
        store = MemoryStore()
    logger.info("db: %s store ready", settings.STORE_BACKEND)
    return store


async def close_store(store: ReviewStore) -> None:
    await store.close()
    await close_pool()
    logger.info("db: store closed")


def get_store(request: Request) -> ReviewStore:
    """FastAPI dependency: the application's store."""
    return request.app.state.store


def get_ws_store(websocket: WebSocket) -> ReviewStore:
    return websocket.app.state.store
