"""
Test Configuration
==================

Pytest configuration with fixtures for all test types.
Provides isolated settings, fake Playwright objects and wired services.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Settings are read when pagesnap.config.logging is imported
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="pagesnap_test_"))
os.environ.setdefault("PAGESNAP_ENVIRONMENT", "testing")
os.environ.setdefault("PAGESNAP_STORAGE_PATH", str(_SESSION_DIR / "storage"))
os.environ.setdefault("PAGESNAP_SCREENSHOT_DIR", str(_SESSION_DIR / "screenshots"))
os.environ.setdefault("PAGESNAP_HOUSEKEEPING_ENABLED", "false")

import pytest

from pagesnap.config.settings import Settings
from pagesnap.core.cache.store import CacheStore, MemoryCacheBackend
from pagesnap.core.rendering.capture_engine import CaptureEngine
from pagesnap.core.rendering.session_pool import RenderSessionPool
from pagesnap.core.screenshot_service import ScreenshotService

from tests.utils.mocks import FakeChromium, FakePlaywright, MutableClock, RecordingRemoteStore


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temporary directory with instant restarts."""
    return Settings(
        environment="testing",
        storage_path=tmp_path / "storage",
        screenshot_dir=tmp_path / "screenshots",
        cache_backend="memory",
        browser_restart_delay_seconds=0,
        settle_delay_seconds=0,
        housekeeping_enabled=False,
    )


@pytest.fixture
def fake_chromium() -> FakeChromium:
    return FakeChromium()


@pytest.fixture
def fake_playwright(fake_chromium: FakeChromium) -> FakePlaywright:
    return FakePlaywright(fake_chromium)


@pytest.fixture
def pool(test_settings: Settings, fake_playwright: FakePlaywright) -> RenderSessionPool:
    """Pool whose browser launches go through ``fake_chromium``."""
    render_pool = RenderSessionPool(test_settings)
    render_pool._playwright = fake_playwright  # type: ignore[assignment]
    return render_pool


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def cache_store(test_settings: Settings, clock: MutableClock) -> CacheStore:
    return CacheStore(MemoryCacheBackend(), test_settings, clock=clock)


@pytest.fixture
def capture_engine(pool: RenderSessionPool, test_settings: Settings) -> CaptureEngine:
    return CaptureEngine(pool, test_settings)


@pytest.fixture
def remote_store() -> RecordingRemoteStore:
    return RecordingRemoteStore()


@pytest.fixture
def screenshot_service(
    capture_engine: CaptureEngine, cache_store: CacheStore, remote_store: RecordingRemoteStore
) -> ScreenshotService:
    return ScreenshotService(capture_engine, cache_store, remote_store)
