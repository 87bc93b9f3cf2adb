from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlparse

import asyncpg

from novai_jobs.config import settings

logger = logging.getLogger("novai_jobs.db")

# one pool per process, shared by the API repos or by the worker's claim loops
_POOL: asyncpg.Pool | None = None
_LOCK = asyncio.Lock()


def dsn_safe(dsn: str) -> str:
    """DSN with credentials masked, for logs."""
    try:
        u = urlparse(dsn)
        host = u.hostname or ""
        port = u.port or ""
        db = (u.path or "").lstrip("/")
        return f"{u.scheme}://***@{host}:{port}/{db}"
    except ValueError:
        return "<invalid-dsn>"


async def init_pool(role: str = "api") -> asyncpg.Pool:
    """
    `role` ends up in pg_stat_activity.application_name so API and worker
    connections can be told apart on the server.
    """
    global _POOL
    dsn = (settings.DATABASE_URL or "").strip()
    if not dsn:
        raise RuntimeError("DATABASE_URL is required")

    if _POOL is not None:
        return _POOL

    async with _LOCK:
        if _POOL is not None:
            return _POOL

        logger.info(
            "db_pool_init",
            extra={
                "dsn": dsn_safe(dsn),
                "role": role,
                "min_size": settings.DB_POOL_MIN,
                "max_size": settings.DB_POOL_MAX,
            },
        )
        _POOL = await asyncpg.create_pool(
            dsn=dsn,
            min_size=settings.DB_POOL_MIN,
            max_size=settings.DB_POOL_MAX,
            command_timeout=settings.DB_COMMAND_TIMEOUT,
            server_settings={"application_name": f"{settings.SERVICE_NAME}-{role}"},
        )
        return _POOL


async def get_pool(role: str = "api") -> asyncpg.Pool:
    return await init_pool(role)


async def close_pool() -> None:
    global _POOL
    if _POOL is not None:
        await _POOL.close()
        _POOL = None
        logger.info("db_pool_closed")
