"""
Postgres Connection Pool Manager

Manages async connection pooling for Postgres with retry on transient
connection failures. Pools are created per (database, pool id) by PoolRegistry.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import asyncpg
from asyncpg import Pool
from asyncpg.exceptions import (
    CannotConnectNowError,
    TooManyConnectionsError,
)

from qrun.config import settings

logger = logging.getLogger(__name__)

DEFAULT_POOL_ID = "default"


class PostgresConnectionPool:
    """
    Async connection pool for Postgres with retry logic.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_size: int = 1,
        max_size: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        command_timeout: float = 300.0,
        pool_name: str = DEFAULT_POOL_ID,
    ):
        """
        Initialize Postgres connection pool.

        Args:
            host: Database host
            port: Database port
            database: Database name
            user: Username
            password: Password
            min_size: Minimum pool size
            max_size: Maximum pool size
            max_retries: Max attempts for transient connection failures
            retry_delay: Base delay between attempts in seconds
            command_timeout: Default command timeout in seconds
            pool_name: Pool id used in logs and stats
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_size = min_size
        self.max_size = max_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.command_timeout = command_timeout
        self.pool_name = pool_name

        self._pool: Optional[Pool] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

        logger.debug(
            "[%s] Postgres pool configured: %s@%s:%s/%s, size=%s-%s",
            pool_name, user, host, port, database, min_size, max_size,
        )

    async def initialize(self) -> None:
        """Create the underlying asyncpg pool."""
        async with self._init_lock:
            if self._initialized:
                return

            logger.info("[%s] Creating Postgres connection pool for %s...", self.pool_name, self.database)

            for attempt in range(self.max_retries):
                try:
                    self._pool = await asyncpg.create_pool(
                        host=self.host,
                        port=self.port,
                        database=self.database,
                        user=self.user,
                        password=self.password,
                        min_size=self.min_size,
                        max_size=self.max_size,
                        command_timeout=self.command_timeout,
                    )
                    self._initialized = True
                    logger.info(
                        "[%s] Postgres pool ready (size: %s-%s)",
                        self.pool_name, self.min_size, self.max_size,
                    )
                    return

                except (CannotConnectNowError, TooManyConnectionsError) as e:
                    if attempt < self.max_retries - 1:
                        logger.warning(
                            "Pool creation attempt %d failed, retrying: %s", attempt + 1, e
                        )
                        await asyncio.sleep(self.retry_delay * (attempt + 1))
                    else:
                        logger.error("Failed to create pool after %d attempts", self.max_retries)
                        raise

    @asynccontextmanager
    async def get_connection(self):
        """
        Get a connection from the pool (async context manager).

        Usage:
            async with pool.get_connection() as conn:
                rows = await conn.fetch("SELECT 1")
        """
        if not self._initialized:
            await self.initialize()

        if self._pool is None:
            raise RuntimeError("Pool not initialized")

        async with self._pool.acquire() as conn:
            yield conn

    async def acquire(self) -> asyncpg.Connection:
        """Acquire a connection to hold across requests (same-session mode)."""
        if not self._initialized:
            await self.initialize()
        if self._pool is None:
            raise RuntimeError("Pool not initialized")
        return await self._pool.acquire()

    async def release(self, conn: asyncpg.Connection) -> None:
        if self._pool is not None:
            await self._pool.release(conn)

    async def is_healthy(self) -> bool:
        """
        Check if the connection pool is healthy.

        Returns:
            bool: True if pool answers SELECT 1
        """
        if not self._initialized or self._pool is None:
            return False

        try:
            async with self.get_connection() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            logger.error("Health check failed: %s", e)
            return False

    def get_pool_stats(self) -> Dict[str, Any]:
        """
        Get connection pool statistics.

        Returns:
            Dict with pool statistics
        """
        if not self._initialized or self._pool is None:
            return {
                "pool": self.pool_name,
                "database": self.database,
                "initialized": False,
                "size": 0,
                "free": 0,
            }

        return {
            "pool": self.pool_name,
            "database": self.database,
            "initialized": True,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "size": self._pool.get_size(),
            "free": self._pool.get_idle_size(),
            "in_use": self._pool.get_size() - self._pool.get_idle_size(),
        }

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            logger.info("[%s] Closing Postgres connection pool for %s...", self.pool_name, self.database)
            await self._pool.close()
            self._pool = None
            self._initialized = False


class PoolRegistry:
    """
    Lazily created pools keyed by (database, pool id).

    Owned by one runner; ``close_all`` releases everything it created.
    """

    def __init__(
        self,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        default_database: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ) -> None:
        self.host = host or settings.POSTGRES_HOST
        self.port = port or settings.POSTGRES_PORT
        self.default_database = default_database or settings.POSTGRES_DATABASE
        self.user = user or settings.POSTGRES_USER
        self.password = password if password is not None else settings.POSTGRES_PASSWORD
        self.min_size = min_size if min_size is not None else settings.POSTGRES_POOL_MIN_SIZE
        self.max_size = max_size or settings.POSTGRES_POOL_MAX_SIZE
        self._pools: Dict[tuple[str, str], PostgresConnectionPool] = {}

    def get(self, database: str = "", pool_id: str = "") -> PostgresConnectionPool:
        """
        Pool for ``database`` (runner default when empty) and ``pool_id``
        (``default`` when empty).
        """
        key = (database or self.default_database, pool_id or DEFAULT_POOL_ID)
        pool = self._pools.get(key)
        if pool is None:
            pool = PostgresConnectionPool(
                host=self.host,
                port=self.port,
                database=key[0],
                user=self.user,
                password=self.password,
                min_size=self.min_size,
                max_size=self.max_size,
                max_retries=settings.POSTGRES_CONNECT_RETRIES,
                command_timeout=settings.POSTGRES_COMMAND_TIMEOUT,
                pool_name=key[1],
            )
            self._pools[key] = pool
        return pool

    def stats(self) -> list[Dict[str, Any]]:
        return [pool.get_pool_stats() for pool in self._pools.values()]

    async def close_all(self) -> None:
        """Close every pool created by this registry."""
        for (database, pool_id), pool in list(self._pools.items()):
            logger.debug("Closing pool %s/%s...", pool_id, database)
            await pool.close()
        self._pools = {}
