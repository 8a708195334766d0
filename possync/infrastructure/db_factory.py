"""
Database connection factory utilities for the local Postgres store.

Pools are created explicitly and handed to the store that owns them; there is
no process-wide pool registry. Pool opening retries transient failures using
tenacity, since a terminal often boots before its local database does.
"""

from __future__ import annotations

from typing import Optional

import psycopg
from psycopg_pool import AsyncConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from possync.config import Settings, get_settings
from possync.utils.logging import get_logger

log = get_logger(__name__)


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    return (settings or get_settings()).dsn


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, OSError)),
    reraise=True,
)
async def open_async_pool(
    dsn: Optional[str] = None,
    min_size: int = 1,
    max_size: int = 5,
    timeout: float = 10.0,
) -> AsyncConnectionPool:
    """
    Open an asynchronous connection pool and wait until it can hand out connections.

    Parameters
    ----------
    dsn : str, optional
        Connection string; defaults to the configured local store.
    min_size : int
        Minimum number of idle connections to keep.
    max_size : int
        Maximum total connections in the pool.
    timeout : float
        Seconds to wait for the first ``min_size`` connections.
    """
    pool = AsyncConnectionPool(
        conninfo=dsn or build_dsn(),
        min_size=min_size,
        max_size=max_size,
        open=False,
    )
    try:
        await pool.open(wait=True, timeout=timeout)
    except Exception:
        await pool.close()
        raise
    log.info("[STORE] connection pool open", extra={"min_size": min_size, "max_size": max_size})
    return pool


__all__ = ["build_dsn", "open_async_pool"]
