"""
Housekeeping Scheduler
======================

Hourly purge of expired cache rows and of local capture files older than a
day. The file sweep is a backstop for captures that were never uploaded or
deleted by their caller; it ignores cache state entirely.
"""

from pathlib import Path
from typing import Any, Optional
import asyncio
import time

from pagesnap.config.logging import get_logger
from pagesnap.config.settings import Settings, get_settings
from pagesnap.core.cache.store import CacheIOError, CacheStore
from pagesnap.core.rendering.filenames import is_capture_file
from pagesnap.models.schemas import HousekeepingReport, utcnow

logger = get_logger(__name__)


def sweep_stale_files(directory: Path, max_age_seconds: float, now: Optional[float] = None) -> int:
    """Delete capture files in ``directory`` whose mtime is older than ``max_age_seconds``."""
    if not directory.is_dir():
        return 0

    now = time.time() if now is None else now
    deleted = 0
    for path in directory.iterdir():
        if not path.is_file() or not is_capture_file(path):
            continue
        try:
            if now - path.stat().st_mtime > max_age_seconds:
                path.unlink()
                deleted += 1
        except FileNotFoundError:
            # Removed by its owner between listing and unlinking
            continue
    return deleted


class HousekeepingScheduler:
    """Runs housekeeping on a fixed cadence, one run at a time."""

    def __init__(self, cache_store: CacheStore, settings: Optional[Settings] = None):
        self.cache_store = cache_store
        self.settings = settings or get_settings()
        self.output_dir = self.settings.screenshot_dir
        self.interval = self.settings.housekeeping_interval_seconds
        self.max_file_age_seconds = self.settings.housekeeping_max_file_age_hours * 3600
        self.logger: Any = logger.bind(component="housekeeping")  # structlog.BoundLoggerBase
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> HousekeepingReport:
        """Manual trigger. A call made while a run is in flight is a no-op."""
        if self._running:
            self.logger.debug("Housekeeping already running, skipping tick")
            return HousekeepingReport(skipped=True, finished_at=utcnow())

        self._running = True
        report = HousekeepingReport()
        try:
            try:
                report.expired_entries = await self.cache_store.purge_expired()
            except CacheIOError as e:
                report.errors.append(str(e))
                self.logger.error("Failed to purge expired cache entries", error=str(e))

            try:
                report.deleted_files = await asyncio.to_thread(
                    sweep_stale_files, self.output_dir, self.max_file_age_seconds
                )
            except OSError as e:
                report.errors.append(str(e))
                self.logger.error("Failed to cleanup screenshots", error=str(e))
        finally:
            self._running = False
            report.finished_at = utcnow()

        if report.expired_entries or report.deleted_files:
            self.logger.info(
                "Housekeeping completed",
                expired_entries=report.expired_entries,
                deleted_files=report.deleted_files,
            )
        return report

    def start(self) -> None:
        """Start the periodic loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="pagesnap-housekeeping")
        self.logger.info("Housekeeping scheduled", interval_seconds=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as e:
                self.logger.error("Housekeeping run crashed", error=str(e))
