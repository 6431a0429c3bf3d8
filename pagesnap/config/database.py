"""
Database Configuration
=====================

PostgreSQL and Redis connection management for cache metadata.
Selects the cache backend named by ``settings.cache_backend``.
"""

from typing import Optional, Dict, Any, AsyncGenerator
from contextlib import asynccontextmanager
import redis.asyncio as redis  # type: ignore[import-untyped]
from redis.asyncio import ConnectionPool  # type: ignore[import-untyped]
import asyncpg  # type: ignore[import-untyped]

from .settings import Settings, get_settings
from .logging import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    """Connection manager for the configured cache persistence."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self._redis_pool: Optional[ConnectionPool] = None  # type: ignore[type-arg]
        self._postgres_pool: Optional[asyncpg.Pool] = None  # type: ignore[type-arg]

    async def initialize(self) -> None:
        """Open the connections the configured backend needs."""
        if self.settings.cache_backend == "postgres":
            await self._setup_postgres()
        elif self.settings.cache_backend == "redis":
            await self._setup_redis()
        logger.info("Database connections initialized", backend=self.settings.cache_backend)

    async def close(self) -> None:
        """Close database connections."""
        if self._redis_pool is not None:
            await self._redis_pool.disconnect()  # type: ignore[attr-defined]
            self._redis_pool = None
            logger.info("Redis connection closed")

        if self._postgres_pool is not None:
            await self._postgres_pool.close()  # type: ignore[attr-defined]
            self._postgres_pool = None
            logger.info("PostgreSQL connection closed")

    async def _setup_redis(self) -> None:
        """Setup Redis connection pool."""
        try:
            self._redis_pool = ConnectionPool.from_url(  # type: ignore[attr-defined]
                self.settings.redis_url,
                max_connections=self.settings.redis_max_connections,
                retry_on_timeout=True,
                decode_responses=True,
            )

            async with redis.Redis(connection_pool=self._redis_pool) as client:  # type: ignore[attr-defined]
                await client.ping()  # type: ignore[attr-defined]

            logger.info("Redis connection established", url=self.settings.redis_url)
        except Exception as e:
            logger.error("Failed to connect to Redis", error=str(e))
            raise

    async def _setup_postgres(self) -> None:
        """Setup PostgreSQL connection pool."""
        if not self.settings.database_url:
            raise RuntimeError("PAGESNAP_DATABASE_URL is required for the postgres cache backend")
        try:
            self._postgres_pool = await asyncpg.create_pool(  # type: ignore[attr-defined]
                self.settings.database_url, min_size=1, max_size=10, command_timeout=60
            )
            logger.info("PostgreSQL connection established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", error=str(e))
            raise

    def get_redis_client(self) -> redis.Redis:  # type: ignore[type-arg]
        """Get Redis client instance."""
        if not self._redis_pool:
            raise RuntimeError("Redis not initialized")
        return redis.Redis(connection_pool=self._redis_pool)  # type: ignore[attr-defined]

    def get_postgres_pool(self) -> Any:
        if not self._postgres_pool:
            raise RuntimeError("PostgreSQL not initialized")
        return self._postgres_pool

    @asynccontextmanager
    async def get_postgres_connection(self) -> AsyncGenerator[Any, None]:  # type: ignore[misc]
        """Get PostgreSQL connection context manager."""
        async with self.get_postgres_pool().acquire() as connection:  # type: ignore[attr-defined]
            yield connection


async def create_cache_backend(manager: DatabaseManager) -> Any:
    """
    Build and initialize the cache backend selected in settings.

    Args:
        manager: Initialized database manager

    Returns:
        A ``CacheBackend`` ready for use
    """
    from pagesnap.core.cache.store import (
        MemoryCacheBackend,
        PostgresCacheBackend,
        RedisCacheBackend,
    )

    settings = manager.settings
    if settings.cache_backend == "postgres":
        backend = PostgresCacheBackend(manager.get_postgres_pool(), table=settings.cache_table_name)
    elif settings.cache_backend == "redis":
        backend = RedisCacheBackend(manager.get_redis_client(), prefix=settings.cache_redis_prefix)
    else:
        backend = MemoryCacheBackend()

    await backend.initialize()
    logger.info("Cache backend ready", backend=backend.name)
    return backend


async def check_database_health(manager: DatabaseManager) -> Dict[str, bool]:
    """Check the connections the configured backend uses."""
    health: Dict[str, bool] = {}
    if manager._redis_pool is not None:
        try:
            async with redis.Redis(connection_pool=manager._redis_pool) as client:  # type: ignore[attr-defined]
                await client.ping()
            health["redis"] = True
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            health["redis"] = False
    if manager._postgres_pool is not None:
        try:
            async with manager.get_postgres_connection() as conn:
                await conn.execute("SELECT 1")
            health["postgres"] = True
        except Exception as e:
            logger.error("PostgreSQL health check failed", error=str(e))
            health["postgres"] = False
    return health
