"""
Celery Tasks
============

Celery application whose beat schedule fires housekeeping every hour, for
deployments that schedule maintenance outside the API process.
"""

from typing import Any, Dict
import asyncio

from celery import Celery  # type: ignore

from pagesnap.config.settings import get_settings
from pagesnap.config.logging import get_logger
from pagesnap.config.database import DatabaseManager, create_cache_backend
from pagesnap.core.cache.store import CacheStore
from pagesnap.core.housekeeping.scheduler import HousekeepingScheduler

logger = get_logger(__name__)

HOUSEKEEPING_TASK = "pagesnap.housekeeping"

settings = get_settings()
celery_app = Celery(  # type: ignore[misc]
    "pagesnap_tasks",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["pagesnap.core.queue.tasks"],
)

celery_app.conf.update(  # type: ignore[attr-defined]
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "housekeeping-hourly": {
            "task": HOUSEKEEPING_TASK,
            "schedule": settings.housekeeping_interval_seconds,
        },
    },
)


async def run_housekeeping_once() -> Dict[str, Any]:
    """Connect to the configured cache backend and run one housekeeping pass."""
    settings = get_settings()
    if settings.cache_backend == "memory":
        logger.warning("Memory cache backend is process-local, only local files will be swept")

    database = DatabaseManager(settings)
    await database.initialize()
    try:
        backend = await create_cache_backend(database)
        scheduler = HousekeepingScheduler(CacheStore(backend, settings), settings)
        report = await scheduler.run_once()
        return report.model_dump(mode="json")
    finally:
        await database.close()


@celery_app.task(name=HOUSEKEEPING_TASK)  # type: ignore[misc]
def housekeeping_task() -> Dict[str, Any]:
    """Celery entry point for the hourly housekeeping run."""
    report = asyncio.run(run_housekeeping_once())
    logger.info("Housekeeping task finished", **report)
    return report
