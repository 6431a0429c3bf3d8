"""
Capture Engine
==============

Drives one page through navigation, content-readiness waits, chrome hiding
and JPEG capture, retrying the whole sequence with a fixed backoff.
"""

from pathlib import Path
from typing import Any, Optional
import asyncio

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError
from PIL import Image, UnidentifiedImageError

from pagesnap.config.logging import get_logger
from pagesnap.config.settings import Settings, get_settings
from pagesnap.core.rendering.filenames import build_capture_path
from pagesnap.core.rendering.session_pool import RenderSessionPool

logger = get_logger(__name__)

# Navigation bars, headers, footers and contact blocks hidden before capture
CHROME_SELECTORS = (
    "header",
    ".header",
    '[class*="header"]',
    '[id*="header"]',
    "nav",
    ".nav",
    ".navbar",
    "footer",
    ".footer",
    '[class*="footer"]',
    '[id*="footer"]',
    '[class*="contact"]',
    '[class*="bottom"]',
)

HIDE_CHROME_SCRIPT = """
(selectors) => {
    let hidden = 0;
    for (const selector of selectors) {
        document.querySelectorAll(selector).forEach((el) => {
            el.style.display = "none";
            hidden += 1;
        });
    }
    return hidden;
}
"""

CONTENT_HEIGHT_SCRIPT = """
(minHeight) => !!document.body && document.body.scrollHeight > minHeight
"""


class NavigationTimeout(Exception):
    """Raised when a page does not finish navigating within its ceiling."""

    def __init__(self, url: str, timeout_ms: int):
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(f"Navigation timeout of {timeout_ms} ms exceeded: {url}")


class InvalidCapture(Exception):
    """Raised when a written capture file is missing, empty or unreadable."""

    pass


class CaptureFailed(Exception):
    """Raised after every capture attempt failed. Wraps the last error."""

    def __init__(self, cache_key: str, attempts: int, last_error: Optional[BaseException]):
        self.cache_key = cache_key
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Screenshot for {cache_key!r} failed after {attempts} attempts: {last_error}"
        )

    @property
    def is_timeout(self) -> bool:
        return isinstance(self.last_error, (NavigationTimeout, PlaywrightTimeoutError))


class CaptureEngine:
    """Renders a URL to a JPEG file using pages from a session pool."""

    def __init__(self, pool: RenderSessionPool, settings: Optional[Settings] = None):
        self.pool = pool
        self.settings = settings or get_settings()
        self.logger: Any = logger.bind(component="capture_engine")  # structlog.BoundLoggerBase

    async def capture(self, url: str, cache_key: str) -> Path:
        """
        Capture ``url`` into a new file named after ``cache_key``.

        Args:
            url: Page to render
            cache_key: Key the page is bound to in the pool

        Returns:
            Path of the written JPEG file

        Raises:
            CaptureFailed: If every attempt failed
        """
        output_path = build_capture_path(self.settings.screenshot_dir, cache_key)
        max_attempts = max(self.settings.capture_max_attempts, 1)
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                await self.pool.evict_idle(self.settings.capture_idle_page_limit)
                handle = await self.pool.acquire_page(cache_key)
                await self._render(handle.page, url, output_path)

                await self.pool.release_page(cache_key)
                self.pool.increment_screenshot_count()
                self.logger.info(
                    "💾 Screenshot saved",
                    cache_key=cache_key,
                    path=str(output_path),
                    attempt=attempt,
                )
                return output_path

            except Exception as e:
                last_error = e
                self.logger.error(
                    f"⚠️ Screenshot failed ({attempt}/{max_attempts})",
                    cache_key=cache_key,
                    url=url,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self.pool.release_page(cache_key)
                if attempt < max_attempts:
                    await asyncio.sleep(self.settings.capture_retry_backoff_seconds)

        # The caller never sees a failed capture file
        await asyncio.to_thread(output_path.unlink, missing_ok=True)
        raise CaptureFailed(cache_key, max_attempts, last_error) from last_error

    async def _render(self, page: Page, url: str, output_path: Path) -> None:
        await self.navigate(page, url)
        await self.wait_for_content(page)
        await self.hide_chrome(page)
        await self.take_screenshot(page, output_path)
        await asyncio.to_thread(self.validate_capture, output_path)

    async def navigate(self, page: Page, url: str) -> None:
        timeout_ms = self.settings.navigation_timeout_ms
        self.logger.debug("🌐 Navigating", url=url)
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(url, timeout_ms) from e

    async def wait_for_content(self, page: Page) -> None:
        """Layered readiness wait: content selector, body, page height, settle delay.

        Only the body wait is fatal. The height check is allowed to time out
        since some pages never grow past the threshold.
        """
        try:
            await page.wait_for_selector(
                self.settings.content_selector,
                timeout=self.settings.content_selector_timeout_ms,
            )
        except PlaywrightTimeoutError:
            self.logger.warning("Content selector not found, waiting for body")
            await page.wait_for_selector("body", timeout=self.settings.body_selector_timeout_ms)

        try:
            await page.wait_for_function(
                CONTENT_HEIGHT_SCRIPT,
                arg=self.settings.min_content_height_px,
                timeout=self.settings.content_height_timeout_ms,
            )
        except PlaywrightTimeoutError:
            self.logger.warning("Content height check timed out")

        await asyncio.sleep(self.settings.settle_delay_seconds)

    async def hide_chrome(self, page: Page) -> int:
        hidden = await page.evaluate(HIDE_CHROME_SCRIPT, list(CHROME_SELECTORS))
        return int(hidden or 0)

    async def take_screenshot(self, page: Page, output_path: Path) -> None:
        """Capture the content element when present, otherwise the full page."""
        options = {
            "path": str(output_path),
            "type": "jpeg",
            "quality": self.settings.screenshot_jpeg_quality,
            "timeout": self.settings.screenshot_timeout_ms,
        }

        element = None
        if self.settings.capture_element_selector:
            element = await page.query_selector(self.settings.capture_element_selector)

        if element is not None:
            await element.screenshot(**options)
        else:
            await page.screenshot(full_page=True, **options)

    def validate_capture(self, output_path: Path) -> None:
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise InvalidCapture(f"Screenshot file missing or empty: {output_path}")
        try:
            with Image.open(output_path) as image:
                image.verify()
                width, height = image.size
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise InvalidCapture(f"Screenshot file is not a readable image: {e}") from e
        if width == 0 or height == 0:
            raise InvalidCapture(f"Screenshot has no area: {width}x{height}")
