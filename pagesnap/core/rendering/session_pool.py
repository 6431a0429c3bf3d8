"""
Render Session Pool
===================

One Playwright Chromium instance shared by a bounded set of keyed pages.
Handles page hardening, oldest-first eviction, liveness probing and
rate-limited restarts with launch-variant fallback.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
import asyncio
import os
import time

from playwright.async_api import async_playwright, Browser, Page, Playwright, Route

from pagesnap.config.logging import get_logger
from pagesnap.config.settings import Settings, get_settings
from pagesnap.models.schemas import EngineStatus, PageState, PoolStatus, utcnow

logger = get_logger(__name__)

BLOCKED_RESOURCE_TYPES = frozenset({"font", "media", "websocket"})
PROBE_TIMEOUT_SECONDS = 10.0


class EngineUnavailable(Exception):
    """Raised when no working browser instance exists."""

    pass


@dataclass(frozen=True)
class LaunchVariant:
    """Named set of Chromium command line arguments."""

    name: str
    args: Sequence[str]


STANDARD_LAUNCH = LaunchVariant(
    name="standard",
    args=(
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-accelerated-2d-canvas",
        "--disable-gpu",
        "--disable-features=IsolateOrigins,site-per-process",
        "--disable-web-security",
        "--window-size=1920,1080",
    ),
)

MINIMAL_LAUNCH = LaunchVariant(
    name="minimal",
    args=(
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
    ),
)

DEFAULT_LAUNCH_VARIANTS = (STANDARD_LAUNCH, MINIMAL_LAUNCH)


def should_block_request(resource_type: str) -> bool:
    """Decide whether a request of the given resource type is aborted."""
    return resource_type in BLOCKED_RESOURCE_TYPES


def resolve_executable_path(settings: Settings) -> Optional[str]:
    """Configured Chromium binary, ``CHROME_BIN``, or None for the bundled build."""
    return settings.browser_executable_path or os.environ.get("CHROME_BIN") or None


@dataclass
class PageHandle:
    """A page registered under a cache key."""

    key: str
    page: Page
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    state: PageState = PageState.IDLE
    crash_listener: Optional[Callable[..., None]] = None

    @property
    def is_live(self) -> bool:
        return self.state != PageState.CLOSED and not self.page.is_closed()


@dataclass
class EngineState:
    """Process-wide browser bookkeeping owned by the pool."""

    browser: Optional[Browser] = None
    status: EngineStatus = EngineStatus.UNINITIALIZED
    screenshots_since_restart: int = 0
    last_restart_at: Optional[float] = None  # time.monotonic()
    last_restart_time: Optional[datetime] = None
    restarting: bool = False
    restarts_total: int = 0


class RenderSessionPool:
    """Keyed pages over a single restartable browser.

    Page bookkeeping is guarded by a short-lived lock held only around
    registration and removal. Engine lifecycle operations (start, restart)
    are serialized by a separate lock, and page acquisition waits while a
    restart is in progress.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        launch_variants: Sequence[LaunchVariant] = DEFAULT_LAUNCH_VARIANTS,
    ):
        self.settings = settings or get_settings()
        self.launch_variants = tuple(launch_variants)
        self.logger: Any = logger.bind(component="render_session_pool")  # structlog.BoundLoggerBase
        self._playwright: Optional[Playwright] = None
        self._state = EngineState()
        self._pages: Dict[str, PageHandle] = {}
        self._registry_lock = asyncio.Lock()
        self._engine_lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._ready.set()

    # Engine lifecycle

    @property
    def status(self) -> EngineStatus:
        return self._state.status

    @property
    def screenshots_since_restart(self) -> int:
        return self._state.screenshots_since_restart

    @property
    def page_keys(self) -> List[str]:
        return list(self._pages.keys())

    async def start(self) -> EngineStatus:
        """Launch the browser if it has never been launched."""
        async with self._engine_lock:
            if self._state.status != EngineStatus.UNINITIALIZED:
                return self._state.status
            try:
                await self._launch()
                self._state.status = EngineStatus.HEALTHY
            except EngineUnavailable as e:
                self._state.status = EngineStatus.UNAVAILABLE
                self.logger.critical(
                    "💥 All browser launch variants failed, screenshots will not work",
                    error=str(e),
                    hint="install Chromium (apt-get install chromium) or run `playwright install chromium`",
                )
            return self._state.status

    async def close(self) -> None:
        """Close every page, the browser and Playwright itself."""
        async with self._engine_lock:
            await self._close_all_pages()
            await self._close_browser()
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as e:
                    self.logger.warning("Error stopping Playwright", error=str(e))
                self._playwright = None
            self._state.status = EngineStatus.UNINITIALIZED
        self.logger.info("Render session pool closed")

    async def restart(self, reason: str = "manual") -> EngineStatus:
        """Close everything and relaunch. Never raises on launch failure."""
        async with self._engine_lock:
            return await self._restart_locked(reason)

    async def ensure_healthy(self) -> None:
        """Restart when the screenshot budget is spent or the probe fails.

        Restarts are suppressed while one is already running, when the engine
        is unavailable (only an explicit restart recovers it) and within the
        minimum interval after the previous restart.
        """
        if self._state.restarting or self._state.status in (
            EngineStatus.UNINITIALIZED,
            EngineStatus.UNAVAILABLE,
        ):
            return

        restarts_seen = self._state.restarts_total
        reason: Optional[str] = None
        if self._state.screenshots_since_restart >= self.settings.browser_restart_after_screenshots:
            reason = "screenshot_threshold"
        elif not await self.is_alive():
            reason = "liveness_probe_failed"
        if reason is None:
            return

        async with self._engine_lock:
            # A restart, close or failure may have landed while the probe ran
            if self._state.restarts_total != restarts_seen or self._state.status not in (
                EngineStatus.HEALTHY,
                EngineStatus.DEGRADED,
            ):
                return
            self._state.status = EngineStatus.DEGRADED
            if self._in_restart_cooldown():
                self.logger.warning(
                    "Browser restart suppressed, previous restart too recent",
                    reason=reason,
                    min_interval_seconds=self.settings.browser_restart_min_interval_seconds,
                )
                return
            await self._restart_locked(reason)

    async def is_alive(self) -> bool:
        """Lightweight liveness probe querying browser metadata over CDP."""
        browser = self._state.browser
        if browser is None or not browser.is_connected():
            return False
        try:
            session = await asyncio.wait_for(
                browser.new_browser_cdp_session(), timeout=PROBE_TIMEOUT_SECONDS
            )
            try:
                await asyncio.wait_for(
                    session.send("Browser.getVersion"), timeout=PROBE_TIMEOUT_SECONDS
                )
            finally:
                await session.detach()
            return True
        except Exception as e:
            self.logger.warning("Browser health check failed", error=str(e))
            return False

    def increment_screenshot_count(self) -> None:
        self._state.screenshots_since_restart += 1

    # Pages

    async def acquire_page(self, key: str) -> PageHandle:
        """Return the live page for ``key``, creating and hardening one if needed."""
        await self._ready.wait()
        if self._state.status == EngineStatus.UNINITIALIZED:
            await self.start()
        await self.ensure_healthy()
        await self._ready.wait()

        browser = self._state.browser
        if self._state.status == EngineStatus.UNAVAILABLE or browser is None:
            raise EngineUnavailable(
                "Browser not initialized - Chromium may not be installed on the server"
            )

        async with self._registry_lock:
            handle = self._pages.get(key)
            if handle is not None:
                if handle.is_live:
                    return self._mark_in_use(handle)
                del self._pages[key]

        page = await self._open_page(key, browser)

        async with self._registry_lock:
            existing = self._pages.get(key)
            if existing is not None and existing.is_live:
                duplicate: Optional[PageHandle] = PageHandle(key=key, page=page)
                handle = existing
            else:
                duplicate = None
                handle = PageHandle(key=key, page=page)
                handle.crash_listener = self._crash_listener(key, page)
                page.on("crash", handle.crash_listener)
                self._pages[key] = handle
            self._mark_in_use(handle)
            over_cap = len(self._pages) > self.settings.browser_max_pages

        if duplicate is not None:
            await self._close_handle(duplicate)
        if over_cap:
            await self.evict_idle(self.settings.browser_max_pages)
        return handle

    async def release_page(self, key: str) -> None:
        """Close and forget the page for ``key``. Safe to call repeatedly."""
        async with self._registry_lock:
            handle = self._pages.pop(key, None)
        if handle is not None:
            await self._close_handle(handle)

    async def evict_idle(self, max_pages: int) -> List[str]:
        """Close the oldest-created pages until at most ``max_pages`` remain."""
        async with self._registry_lock:
            excess = len(self._pages) - max(max_pages, 0)
            if excess <= 0:
                return []
            victims = [self._pages.pop(key) for key in list(self._pages)[:excess]]

        for handle in victims:
            await self._close_handle(handle)

        evicted = [handle.key for handle in victims]
        self.logger.debug("Evicted oldest pages", keys=evicted, max_pages=max_pages)
        return evicted

    def describe(self) -> PoolStatus:
        browser = self._state.browser
        version: Optional[str] = None
        if browser is not None:
            try:
                version = browser.version
            except Exception:
                version = None
        return PoolStatus(
            engine_status=self._state.status,
            live_pages=len(self._pages),
            page_keys=self.page_keys,
            screenshots_since_restart=self._state.screenshots_since_restart,
            last_restart_at=self._state.last_restart_time,
            browser_version=version,
        )

    # Internals

    def _in_restart_cooldown(self) -> bool:
        last = self._state.last_restart_at
        if last is None:
            return False
        return time.monotonic() - last < self.settings.browser_restart_min_interval_seconds

    async def _restart_locked(self, reason: str) -> EngineStatus:
        self.logger.warning(
            "Restarting browser",
            reason=reason,
            screenshot_count=self._state.screenshots_since_restart,
        )
        self._state.restarting = True
        self._state.status = EngineStatus.RESTARTING
        self._ready.clear()
        try:
            await self._close_all_pages()
            await self._close_browser()
            await asyncio.sleep(self.settings.browser_restart_delay_seconds)
            try:
                await self._launch()
                self._state.status = EngineStatus.HEALTHY
                self.logger.info("Browser restarted successfully", reason=reason)
            except EngineUnavailable as e:
                self._state.status = EngineStatus.UNAVAILABLE
                self.logger.error("Failed to restart browser", reason=reason, error=str(e))
        finally:
            self._state.screenshots_since_restart = 0
            self._state.last_restart_at = time.monotonic()
            self._state.last_restart_time = utcnow()
            self._state.restarts_total += 1
            self._state.restarting = False
            self._ready.set()
        return self._state.status

    async def _launch(self) -> Browser:
        if self._playwright is None:
            try:
                self._playwright = await async_playwright().start()
            except Exception as e:
                raise EngineUnavailable(f"Playwright failed to start: {e}") from e

        executable_path = resolve_executable_path(self.settings)
        failures: List[str] = []
        for variant in self.launch_variants:
            browser: Optional[Browser] = None
            try:
                browser = await self._playwright.chromium.launch(
                    headless=self.settings.browser_headless,
                    executable_path=executable_path,
                    args=list(variant.args),
                    timeout=self.settings.browser_launch_timeout_ms,
                    handle_sigint=False,
                    handle_sigterm=False,
                    handle_sighup=False,
                    ignore_default_args=["--disable-extensions"],
                )
                version = browser.version
                browser.on("disconnected", self._on_browser_disconnected)
                self._state.browser = browser
                self.logger.info(
                    "✅ Browser launched", variant=variant.name, version=version
                )
                return browser
            except Exception as e:
                failures.append(f"{variant.name}: {e}")
                self.logger.warning("Browser launch variant failed", variant=variant.name, error=str(e))
                if browser is not None:
                    try:
                        await browser.close()
                    except Exception as close_error:
                        self.logger.debug("Error closing failed browser", error=str(close_error))

        raise EngineUnavailable("All browser launch variants failed: " + "; ".join(failures))

    async def _open_page(self, key: str, browser: Browser) -> Page:
        try:
            page = await browser.new_page(
                viewport={
                    "width": self.settings.browser_viewport_width,
                    "height": self.settings.browser_viewport_height,
                }
            )
        except Exception:
            if not browser.is_connected():
                self._state.status = EngineStatus.DEGRADED
            raise

        page.set_default_timeout(self.settings.browser_default_timeout_ms)
        page.set_default_navigation_timeout(self.settings.browser_default_timeout_ms)
        page.on("pageerror", lambda error: self.logger.debug("Page script error", key=key, error=str(error)))
        await page.route("**/*", self._route_request)
        return page

    async def _route_request(self, route: Route) -> None:
        try:
            if should_block_request(route.request.resource_type):
                await route.abort()
            else:
                await route.continue_()
        except Exception as e:
            # Page closed while the request was in flight
            self.logger.debug("Request routing failed", url=route.request.url, error=str(e))

    def _crash_listener(self, key: str, page: Page) -> Callable[..., None]:
        def on_crash(*_: Any) -> None:
            handle = self._pages.get(key)
            if handle is not None and handle.page is page:
                handle.state = PageState.CLOSED
                del self._pages[key]
                self.logger.error("Page crashed, handle removed", key=key)

        return on_crash

    def _on_browser_disconnected(self, browser: Browser) -> None:
        if browser is self._state.browser and not self._state.restarting:
            self._state.status = EngineStatus.DEGRADED
            self.logger.error("Browser disconnected unexpectedly")

    @staticmethod
    def _mark_in_use(handle: PageHandle) -> PageHandle:
        handle.state = PageState.IN_USE
        handle.last_used_at = utcnow()
        return handle

    async def _close_handle(self, handle: PageHandle) -> None:
        handle.state = PageState.CLOSED
        try:
            if handle.crash_listener is not None:
                handle.page.remove_listener("crash", handle.crash_listener)
            if not handle.page.is_closed():
                await handle.page.close()
        except Exception as e:
            self.logger.debug("Error closing page", key=handle.key, error=str(e))

    async def _close_all_pages(self) -> None:
        async with self._registry_lock:
            handles = list(self._pages.values())
            self._pages.clear()
        for handle in handles:
            await self._close_handle(handle)

    async def _close_browser(self) -> None:
        browser = self._state.browser
        self._state.browser = None
        if browser is None:
            return
        try:
            await browser.close()
        except Exception as e:
            self.logger.warning("Error closing old browser", error=str(e))
