"""
Service Container
=================

Builds the render-and-cache components once per process and hands them to
routes through ``app.state``.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from pagesnap.config.database import DatabaseManager, create_cache_backend
from pagesnap.config.logging import get_logger
from pagesnap.config.settings import Settings
from pagesnap.core.cache.store import CacheStore
from pagesnap.core.housekeeping.scheduler import HousekeepingScheduler
from pagesnap.core.rendering.capture_engine import CaptureEngine
from pagesnap.core.rendering.session_pool import RenderSessionPool
from pagesnap.core.screenshot_service import ScreenshotService
from pagesnap.core.storage.remote_store import RemoteStore, TelegramChannelStore

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    database: DatabaseManager
    pool: RenderSessionPool
    cache_store: CacheStore
    remote_store: Optional[RemoteStore]
    screenshots: ScreenshotService
    housekeeping: HousekeepingScheduler

    async def close(self) -> None:
        await self.housekeeping.stop()
        await self.pool.close()
        if self.remote_store is not None:
            await self.remote_store.close()
        await self.cache_store.backend.close()
        await self.database.close()


async def build_services(settings: Settings) -> Services:
    """Connect persistence, create the pool and wire the services together."""
    database = DatabaseManager(settings)
    await database.initialize()
    cache_store = CacheStore(await create_cache_backend(database), settings)

    remote_store: Optional[RemoteStore] = None
    if settings.remote_store_enabled:
        remote_store = TelegramChannelStore.from_settings(settings)
    else:
        logger.warning("Cache channel not configured, captures will not be uploaded")

    pool = RenderSessionPool(settings)
    screenshots = ScreenshotService(CaptureEngine(pool, settings), cache_store, remote_store)
    housekeeping = HousekeepingScheduler(cache_store, settings)

    return Services(
        settings=settings,
        database=database,
        pool=pool,
        cache_store=cache_store,
        remote_store=remote_store,
        screenshots=screenshots,
        housekeeping=housekeeping,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the process services."""
    return request.app.state.services
