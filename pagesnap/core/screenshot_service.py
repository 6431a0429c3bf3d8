"""
Screenshot Service
==================

Cache-aside orchestration in front of the capture engine.

A request first consults the cache store. A live hit returns the remote
reference without touching the browser; a miss, an expired hit or an
unreadable cache captures a fresh file. ``publish`` completes the round trip
by uploading the file, recording the reference and deleting the local copy.

Requests for the same cache key are serialized so that concurrent callers
never race on one page; requests for different keys run concurrently.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional
import asyncio

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagesnap.config.logging import get_logger
from pagesnap.core.cache.store import CacheIOError, CacheStore
from pagesnap.core.rendering.capture_engine import CaptureEngine, CaptureFailed, NavigationTimeout
from pagesnap.core.rendering.session_pool import EngineUnavailable
from pagesnap.core.storage.remote_store import RemoteStore, RemoteStoreError, default_caption
from pagesnap.models.schemas import CacheEntry, RenderRequest, ScreenshotResult

logger = get_logger(__name__)

SLOW_SERVER_MESSAGE = "⚠️ Server is responding slowly. Please wait a moment and try again."
ENGINE_DOWN_MESSAGE = "❌ Server issue. Please notify the administrator."
GENERIC_FAILURE_MESSAGE = "❌ Could not render the page. Please try again later."


def describe_failure(error: BaseException) -> str:
    """User-facing text for a failed screenshot request."""
    cause = error.last_error if isinstance(error, CaptureFailed) else error
    if isinstance(cause, (NavigationTimeout, PlaywrightTimeoutError)):
        return SLOW_SERVER_MESSAGE
    if isinstance(cause, EngineUnavailable):
        return ENGINE_DOWN_MESSAGE
    return GENERIC_FAILURE_MESSAGE


class ScreenshotService:
    """Serves images for cache keys, rendering only on miss, expiry or force."""

    def __init__(
        self,
        capture_engine: CaptureEngine,
        cache_store: CacheStore,
        remote_store: Optional[RemoteStore] = None,
    ):
        self.capture_engine = capture_engine
        self.cache_store = cache_store
        self.remote_store = remote_store
        self.logger: Any = logger.bind(component="screenshot_service")  # structlog.BoundLoggerBase
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._key_waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def _key_lock(self, cache_key: str) -> AsyncGenerator[None, None]:
        lock = self._key_locks.setdefault(cache_key, asyncio.Lock())
        self._key_waiters[cache_key] = self._key_waiters.get(cache_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_waiters[cache_key] -= 1
            if self._key_waiters[cache_key] == 0:
                del self._key_waiters[cache_key]
                del self._key_locks[cache_key]

    async def get_screenshot(self, request: RenderRequest) -> ScreenshotResult:
        """
        Return a cached remote reference or a freshly captured local file.

        Raises:
            CaptureFailed: If a fresh capture was needed and every attempt failed
        """
        async with self._key_lock(request.cache_key):
            return await self._get_screenshot(request)

    async def publish(self, request: RenderRequest, caption: Optional[str] = None) -> ScreenshotResult:
        """
        Cache-aside round trip: lookup, capture, upload, record, delete local file.

        Upload and cache write failures are logged and degrade the result to a
        local file without a remote reference.
        """
        async with self._key_lock(request.cache_key):
            result = await self._get_screenshot(request)
            if result.from_cache or result.file_path is None:
                return result

            if self.remote_store is None:
                self.logger.debug("No remote store configured, returning local file", cache_key=request.cache_key)
                return result

            try:
                reference = await self.remote_store.upload(
                    result.file_path, caption or default_caption(request.cache_key)
                )
            except RemoteStoreError as e:
                self.logger.error(
                    "Failed to cache to channel", cache_key=request.cache_key, error=str(e)
                )
                return result

            await self.save_to_cache(request.cache_key, reference.locator_id, reference.entry_id)
            await self.delete_local_file(result.file_path)
            return result.model_copy(
                update={
                    "remote_entry_id": reference.entry_id,
                    "remote_locator_id": reference.locator_id,
                    "file_path": None,
                    "uploaded": True,
                }
            )

    async def _get_screenshot(self, request: RenderRequest) -> ScreenshotResult:
        if not request.force_refresh:
            cached = await self._lookup(request.cache_key)
            if cached is not None and not cached.is_expired:
                self.logger.info("📦 Cache hit", cache_key=request.cache_key, age=cached.format_age())
                return ScreenshotResult(
                    cache_key=request.cache_key,
                    remote_entry_id=cached.remote_entry_id,
                    remote_locator_id=cached.remote_locator_id,
                    from_cache=True,
                )
            if cached is not None:
                self.logger.info("⏰ Cache expired, taking new screenshot", cache_key=request.cache_key)

        self.logger.info("📸 Creating new screenshot", cache_key=request.cache_key, url=request.url)
        file_path = await self.capture_engine.capture(request.url, request.cache_key)
        return ScreenshotResult(cache_key=request.cache_key, file_path=file_path)

    async def _lookup(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            return await self.cache_store.lookup(cache_key)
        except CacheIOError as e:
            self.logger.error("Error getting cached screenshot", cache_key=cache_key, error=str(e))
            return None

    async def save_to_cache(self, cache_key: str, locator_id: int, entry_id: str) -> Optional[CacheEntry]:
        """Record the remote reference; a failed write is logged, not raised."""
        try:
            return await self.cache_store.upsert(cache_key, locator_id, entry_id)
        except CacheIOError as e:
            self.logger.error("Error saving screenshot cache", cache_key=cache_key, error=str(e))
            return None

    async def delete_local_file(self, file_path: Path) -> bool:
        try:
            await asyncio.to_thread(file_path.unlink)
            self.logger.debug("🗑️ Deleted local file", path=str(file_path))
            return True
        except OSError as e:
            self.logger.warning("Could not delete file", path=str(file_path), error=str(e))
            return False

    async def list_cached(self) -> List[CacheEntry]:
        return await self.cache_store.list_all()

    async def clear_cache(self) -> int:
        return await self.cache_store.delete_all()

    async def evict(self, cache_key: str) -> bool:
        return await self.cache_store.delete_one(cache_key)
