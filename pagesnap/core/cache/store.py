"""
Cache Store
===========

Maps cache keys to remote references with a fixed time-to-live.

Expiry is computed on read and never triggers deletion: an expired entry is
still returned so callers can tell "stale" from "gone". Backends persist the
raw rows; every backend failure surfaces as ``CacheIOError``.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import asyncio
import re

from pagesnap.config.logging import get_logger
from pagesnap.config.settings import Settings, get_settings
from pagesnap.models.schemas import CacheEntry, utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class CacheIOError(Exception):
    """Raised when cache metadata cannot be read or written."""

    pass


class CacheBackend(ABC):
    """Persistence for cache rows."""

    name = "abstract"

    async def initialize(self) -> None:
        """Prepare the backend (create tables, connect)."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def get(self, cache_key: str) -> Optional[CacheEntry]: ...

    @abstractmethod
    async def upsert(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def delete(self, cache_key: str) -> int: ...

    @abstractmethod
    async def delete_all(self) -> int: ...

    @abstractmethod
    async def list_all(self) -> List[CacheEntry]:
        """All rows, newest first."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int: ...

    async def ping(self) -> bool:
        return True


class MemoryCacheBackend(CacheBackend):
    """Process-local cache rows."""

    name = "memory"

    def __init__(self) -> None:
        self._rows: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        return self._rows.get(cache_key)

    async def upsert(self, entry: CacheEntry) -> None:
        async with self._lock:
            self._rows[entry.cache_key] = entry

    async def delete(self, cache_key: str) -> int:
        async with self._lock:
            return 1 if self._rows.pop(cache_key, None) is not None else 0

    async def delete_all(self) -> int:
        async with self._lock:
            count = len(self._rows)
            self._rows.clear()
            return count

    async def list_all(self) -> List[CacheEntry]:
        return sorted(self._rows.values(), key=lambda row: row.created_at, reverse=True)

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [key for key, row in self._rows.items() if row.created_at < cutoff]
            for key in stale:
                del self._rows[key]
            return len(stale)


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PostgresCacheBackend(CacheBackend):
    """Cache rows in a PostgreSQL table through an asyncpg pool."""

    name = "postgres"

    def __init__(self, pool: Any, table: str = "channel_cache"):
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self._pool = pool
        self._table = table

    async def initialize(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    cache_key TEXT PRIMARY KEY,
                    remote_locator_id BIGINT NOT NULL DEFAULT 0,
                    remote_entry_id TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self._table}_created_at_idx "
                f"ON {self._table} (created_at)"
            )

    @staticmethod
    def _row_to_entry(row: Any) -> CacheEntry:
        return CacheEntry(
            cache_key=row["cache_key"],
            remote_locator_id=row["remote_locator_id"],
            remote_entry_id=row["remote_entry_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "DELETE 3"
        try:
            return int(status.split()[-1])
        except (AttributeError, IndexError, ValueError):
            return 0

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT cache_key, remote_locator_id, remote_entry_id, created_at "
                f"FROM {self._table} WHERE cache_key = $1",
                cache_key,
            )
        return self._row_to_entry(row) if row else None

    async def upsert(self, entry: CacheEntry) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {self._table} (cache_key, remote_locator_id, remote_entry_id, created_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (cache_key) DO UPDATE SET
                    remote_locator_id = EXCLUDED.remote_locator_id,
                    remote_entry_id = EXCLUDED.remote_entry_id,
                    created_at = EXCLUDED.created_at
                """,
                entry.cache_key,
                entry.remote_locator_id,
                entry.remote_entry_id,
                entry.created_at,
            )

    async def delete(self, cache_key: str) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                f"DELETE FROM {self._table} WHERE cache_key = $1", cache_key
            )
        return self._affected(status)

    async def delete_all(self) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(f"DELETE FROM {self._table}")
        return self._affected(status)

    async def list_all(self) -> List[CacheEntry]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT cache_key, remote_locator_id, remote_entry_id, created_at "
                f"FROM {self._table} ORDER BY created_at DESC"
            )
        return [self._row_to_entry(row) for row in rows]

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                f"DELETE FROM {self._table} WHERE created_at < $1", cutoff
            )
        return self._affected(status)

    async def ping(self) -> bool:
        async with self._pool.acquire() as conn:
            await conn.execute("SELECT 1")
        return True


class RedisCacheBackend(CacheBackend):
    """Cache rows as Redis hashes plus a sorted set index scored by creation time."""

    name = "redis"

    def __init__(self, client: Any, prefix: str = "pagesnap:cache"):
        self._client = client
        self._prefix = prefix
        self._index = f"{prefix}:index"

    def _key(self, cache_key: str) -> str:
        return f"{self._prefix}:entry:{cache_key}"

    @staticmethod
    def _decode(value: Any) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def _hash_to_entry(self, cache_key: str, data: Dict[Any, Any]) -> CacheEntry:
        fields = {self._decode(k): self._decode(v) for k, v in data.items()}
        return CacheEntry(
            cache_key=cache_key,
            remote_locator_id=int(fields.get("remote_locator_id", 0)),
            remote_entry_id=fields["remote_entry_id"],
            created_at=datetime.fromtimestamp(float(fields["created_at"]), tz=timezone.utc),
        )

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        data = await self._client.hgetall(self._key(cache_key))
        if not data:
            return None
        return self._hash_to_entry(cache_key, data)

    async def upsert(self, entry: CacheEntry) -> None:
        score = entry.created_at.timestamp()
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._key(entry.cache_key),
                mapping={
                    "remote_locator_id": entry.remote_locator_id,
                    "remote_entry_id": entry.remote_entry_id,
                    "created_at": score,
                },
            )
            pipe.zadd(self._index, {entry.cache_key: score})
            await pipe.execute()

    async def delete(self, cache_key: str) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(cache_key))
            pipe.zrem(self._index, cache_key)
            deleted, _ = await pipe.execute()
        return int(deleted)

    async def _delete_keys(self, cache_keys: List[str]) -> int:
        if not cache_keys:
            return 0
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(*[self._key(key) for key in cache_keys])
            pipe.zrem(self._index, *cache_keys)
            deleted, _ = await pipe.execute()
        return int(deleted)

    async def delete_all(self) -> int:
        keys = [self._decode(key) for key in await self._client.zrange(self._index, 0, -1)]
        return await self._delete_keys(keys)

    async def list_all(self) -> List[CacheEntry]:
        keys = [self._decode(key) for key in await self._client.zrevrange(self._index, 0, -1)]
        entries = []
        for key in keys:
            entry = await self.get(key)
            if entry is not None:
                entries.append(entry)
        return entries

    async def delete_older_than(self, cutoff: datetime) -> int:
        stale = await self._client.zrangebyscore(self._index, "-inf", f"({cutoff.timestamp()}")
        return await self._delete_keys([self._decode(key) for key in stale])

    async def ping(self) -> bool:
        return bool(await self._client.ping())


class CacheStore:
    """TTL view over a cache backend."""

    def __init__(
        self,
        backend: CacheBackend,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.backend = backend
        self.settings = settings or get_settings()
        self.ttl = timedelta(seconds=self.settings.cache_ttl_seconds)
        self._clock = clock
        self.logger: Any = logger.bind(component="cache_store", backend=backend.name)  # structlog.BoundLoggerBase

    def is_expired(self, entry: CacheEntry, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return now - entry.created_at > self.ttl

    def _with_expiry(self, entry: CacheEntry, now: datetime) -> CacheEntry:
        return entry.model_copy(update={"is_expired": self.is_expired(entry, now)})

    async def lookup(self, cache_key: str) -> Optional[CacheEntry]:
        """Entry for ``cache_key`` with ``is_expired`` set, or None when absent."""
        try:
            entry = await self.backend.get(cache_key)
        except Exception as e:
            raise CacheIOError(f"Cache lookup failed for {cache_key!r}: {e}") from e
        if entry is None:
            return None
        return self._with_expiry(entry, self._clock())

    async def upsert(self, cache_key: str, remote_locator_id: int, remote_entry_id: str) -> CacheEntry:
        """Insert or replace the entry, refreshing ``created_at`` to now."""
        entry = CacheEntry(
            cache_key=cache_key,
            remote_locator_id=remote_locator_id,
            remote_entry_id=remote_entry_id,
            created_at=self._clock(),
        )
        try:
            await self.backend.upsert(entry)
        except Exception as e:
            raise CacheIOError(f"Cache write failed for {cache_key!r}: {e}") from e
        self.logger.debug("Cache entry saved", cache_key=cache_key, locator_id=remote_locator_id)
        return entry

    async def delete_one(self, cache_key: str) -> bool:
        try:
            return await self.backend.delete(cache_key) > 0
        except Exception as e:
            raise CacheIOError(f"Cache delete failed for {cache_key!r}: {e}") from e

    async def delete_all(self) -> int:
        try:
            count = await self.backend.delete_all()
        except Exception as e:
            raise CacheIOError(f"Cache clear failed: {e}") from e
        self.logger.info("Cache cleared", deleted=count)
        return count

    async def list_all(self) -> List[CacheEntry]:
        """All entries, newest first, each with ``is_expired`` set."""
        try:
            entries = await self.backend.list_all()
        except Exception as e:
            raise CacheIOError(f"Cache listing failed: {e}") from e
        now = self._clock()
        return [self._with_expiry(entry, now) for entry in entries]

    async def purge_expired(self) -> int:
        """Delete every row older than the TTL."""
        cutoff = self._clock() - self.ttl
        try:
            count = await self.backend.delete_older_than(cutoff)
        except Exception as e:
            raise CacheIOError(f"Cache purge failed: {e}") from e
        if count:
            self.logger.info("Cleaned expired cache entries", deleted=count)
        return count

    async def ping(self) -> bool:
        try:
            return await self.backend.ping()
        except Exception as e:
            self.logger.error("Cache backend health check failed", error=str(e))
            return False
