"""
Unit Tests for Render Session Pool
==================================

Launch fallback, page hardening, eviction order, health checks and restarts.
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pagesnap.core.rendering.session_pool import (
    EngineUnavailable,
    MINIMAL_LAUNCH,
    STANDARD_LAUNCH,
    PageHandle,
    RenderSessionPool,
    resolve_executable_path,
    should_block_request,
)
from pagesnap.models.schemas import EngineStatus, PageState

from tests.utils.mocks import FakeBrowser, FakeChromium, FakePlaywright, FakeRoute


class TestRequestBlocking:
    """Test the resource-type decision function."""

    @pytest.mark.parametrize("resource_type", ["font", "media", "websocket"])
    def test_blocks_heavy_resources(self, resource_type):
        assert should_block_request(resource_type) is True

    @pytest.mark.parametrize("resource_type", ["document", "script", "stylesheet", "xhr", "image"])
    def test_allows_content_resources(self, resource_type):
        assert should_block_request(resource_type) is False

    @pytest.mark.asyncio
    async def test_route_handler_aborts_blocked_requests(self, pool):
        blocked = FakeRoute("font")
        allowed = FakeRoute("document")

        await pool._route_request(blocked)
        await pool._route_request(allowed)

        assert blocked.aborted and not blocked.continued
        assert allowed.continued and not allowed.aborted


class TestExecutablePath:
    def test_settings_value_wins(self, test_settings, monkeypatch):
        monkeypatch.setenv("CHROME_BIN", "/usr/bin/chromium")
        test_settings.browser_executable_path = "/opt/chrome/chrome"
        assert resolve_executable_path(test_settings) == "/opt/chrome/chrome"

    def test_falls_back_to_chrome_bin(self, test_settings, monkeypatch):
        monkeypatch.setenv("CHROME_BIN", "/usr/bin/chromium")
        assert resolve_executable_path(test_settings) == "/usr/bin/chromium"

    def test_bundled_browser_by_default(self, test_settings, monkeypatch):
        monkeypatch.delenv("CHROME_BIN", raising=False)
        assert resolve_executable_path(test_settings) is None


class TestEngineStartup:
    """Test launch variants and the unavailable state."""

    def test_pool_initial_state(self, pool):
        assert pool.status == EngineStatus.UNINITIALIZED
        assert pool.page_keys == []
        assert pool.screenshots_since_restart == 0

    @pytest.mark.asyncio
    async def test_start_uses_standard_variant(self, pool, fake_chromium):
        status = await pool.start()

        assert status == EngineStatus.HEALTHY
        assert len(fake_chromium.launch_calls) == 1
        assert fake_chromium.launch_calls[0]["args"] == list(STANDARD_LAUNCH.args)
        assert fake_chromium.launch_calls[0]["headless"] is True

    @pytest.mark.asyncio
    async def test_start_falls_back_to_minimal_variant(self, pool, fake_chromium):
        fake_chromium.outcomes = [RuntimeError("crashpad failed"), FakeBrowser()]

        status = await pool.start()

        assert status == EngineStatus.HEALTHY
        assert [call["args"] for call in fake_chromium.launch_calls] == [
            list(STANDARD_LAUNCH.args),
            list(MINIMAL_LAUNCH.args),
        ]

    @pytest.mark.asyncio
    async def test_all_variants_failing_leaves_pool_unavailable(self, pool, fake_chromium):
        fake_chromium.outcomes = [RuntimeError("no chrome"), RuntimeError("no chrome")]

        status = await pool.start()

        assert status == EngineStatus.UNAVAILABLE
        with pytest.raises(EngineUnavailable):
            await pool.acquire_page("key")

    @pytest.mark.asyncio
    async def test_unavailable_pool_is_not_restarted_automatically(self, pool, fake_chromium):
        fake_chromium.outcomes = [RuntimeError("no chrome"), RuntimeError("no chrome")]
        await pool.start()

        for _ in range(3):
            with pytest.raises(EngineUnavailable):
                await pool.acquire_page("key")

        assert len(fake_chromium.launch_calls) == 2

    @pytest.mark.asyncio
    async def test_playwright_start_failure_is_unavailable(self, test_settings):
        starter = MagicMock()
        starter.start = AsyncMock(side_effect=RuntimeError("driver missing"))
        render_pool = RenderSessionPool(test_settings)

        with patch("pagesnap.core.rendering.session_pool.async_playwright", return_value=starter):
            status = await render_pool.start()

        assert status == EngineStatus.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_acquire_starts_uninitialized_pool(self, pool, fake_chromium):
        handle = await pool.acquire_page("key")

        assert pool.status == EngineStatus.HEALTHY
        assert handle.page is fake_chromium.launched[0].pages[0]

    @pytest.mark.asyncio
    async def test_close_stops_everything(self, pool, fake_playwright, fake_chromium):
        await pool.acquire_page("a")
        browser = fake_chromium.launched[0]

        await pool.close()

        assert browser.closed
        assert browser.pages[0].closed
        assert fake_playwright.stopped
        assert pool.status == EngineStatus.UNINITIALIZED


class TestPageAcquisition:
    """Test keyed page creation and reuse."""

    @pytest.mark.asyncio
    async def test_new_page_is_hardened(self, pool, fake_chromium, test_settings):
        handle = await pool.acquire_page("bakalavr_1-kurs_101-21")
        browser = fake_chromium.launched[0]
        page = handle.page

        assert isinstance(handle, PageHandle)
        assert handle.state == PageState.IN_USE
        assert browser.new_page_kwargs[0]["viewport"] == {"width": 3840, "height": 2160}
        assert page.default_timeout == test_settings.browser_default_timeout_ms
        assert page.default_navigation_timeout == test_settings.browser_default_timeout_ms
        assert page.routes[0][0] == "**/*"
        assert "crash" in page.listeners

    @pytest.mark.asyncio
    async def test_existing_live_page_is_reused(self, pool, fake_chromium):
        first = await pool.acquire_page("key")
        second = await pool.acquire_page("key")

        assert first is second
        assert len(fake_chromium.launched[0].pages) == 1

    @pytest.mark.asyncio
    async def test_closed_page_is_replaced(self, pool, fake_chromium):
        first = await pool.acquire_page("key")
        first.page.closed = True

        second = await pool.acquire_page("key")

        assert second is not first
        assert pool.page_keys == ["key"]
        assert len(fake_chromium.launched[0].pages) == 2

    @pytest.mark.asyncio
    async def test_one_live_handle_per_key_under_concurrency(self, pool, fake_chromium):
        await pool.start()

        handles = await asyncio.gather(*(pool.acquire_page("same") for _ in range(5)))

        assert len({id(handle) for handle in handles}) == 1
        assert pool.page_keys == ["same"]
        live_pages = [page for page in fake_chromium.launched[0].pages if not page.closed]
        assert live_pages == [handles[0].page]

    @pytest.mark.asyncio
    async def test_hard_page_cap_evicts_oldest(self, pool, test_settings):
        test_settings.browser_max_pages = 2

        for key in ("a", "b", "c"):
            await pool.acquire_page(key)

        assert pool.page_keys == ["b", "c"]

    @pytest.mark.asyncio
    async def test_page_crash_deregisters_handle(self, pool):
        handle = await pool.acquire_page("key")

        handle.page.emit("crash", handle.page)

        assert pool.page_keys == []
        assert handle.state == PageState.CLOSED

    @pytest.mark.asyncio
    async def test_new_page_failure_on_dead_browser_degrades_engine(self, pool, fake_chromium):
        await pool.start()
        browser = fake_chromium.launched[0]
        browser.new_page_error = RuntimeError("Target closed")
        browser.connected = False
        pool._state.last_restart_at = time.monotonic()

        with pytest.raises(RuntimeError, match="Target closed"):
            await pool.acquire_page("key")

        assert pool.status == EngineStatus.DEGRADED


class TestReleaseAndEviction:
    """Test release idempotency and oldest-first eviction."""

    @pytest.mark.asyncio
    async def test_release_closes_and_removes(self, pool):
        handle = await pool.acquire_page("key")

        await pool.release_page("key")

        assert handle.page.closed
        assert handle.state == PageState.CLOSED
        assert pool.page_keys == []

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, pool):
        await pool.acquire_page("key")

        await pool.release_page("key")
        await pool.release_page("key")
        await pool.release_page("never-registered")

        assert pool.page_keys == []

    @pytest.mark.asyncio
    async def test_release_removes_handle_when_close_fails(self, pool):
        handle = await pool.acquire_page("key")
        handle.page.close_error = RuntimeError("Target page, context or browser has been closed")

        await pool.release_page("key")

        assert pool.page_keys == []

    @pytest.mark.asyncio
    async def test_evict_idle_closes_oldest_first(self, pool):
        handles = {key: await pool.acquire_page(key) for key in ("A", "B", "C", "D", "E")}

        evicted = await pool.evict_idle(3)

        assert evicted == ["A", "B"]
        assert pool.page_keys == ["C", "D", "E"]
        assert handles["A"].page.closed and handles["B"].page.closed
        assert not any(handles[key].page.closed for key in ("C", "D", "E"))

    @pytest.mark.asyncio
    async def test_evict_idle_below_limit_is_noop(self, pool):
        await pool.acquire_page("A")

        assert await pool.evict_idle(5) == []
        assert pool.page_keys == ["A"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 1, 2, 4])
    async def test_evict_idle_never_leaves_more_than_limit(self, pool, limit):
        keys = ["A", "B", "C", "D", "E"]
        for key in keys:
            await pool.acquire_page(key)

        await pool.evict_idle(limit)

        assert len(pool.page_keys) <= limit
        assert pool.page_keys == keys[len(keys) - limit:]

    @pytest.mark.asyncio
    async def test_reacquiring_does_not_change_eviction_order(self, pool):
        for key in ("A", "B", "C"):
            await pool.acquire_page(key)
        await pool.acquire_page("A")

        assert await pool.evict_idle(2) == ["A"]


class TestHealthAndRestart:
    """Test liveness probing, restart triggers and cooldown."""

    @pytest.mark.asyncio
    async def test_is_alive_when_probe_succeeds(self, pool):
        await pool.start()
        assert await pool.is_alive() is True

    @pytest.mark.asyncio
    async def test_is_alive_false_when_disconnected(self, pool, fake_chromium):
        await pool.start()
        fake_chromium.launched[0].connected = False
        assert await pool.is_alive() is False

    @pytest.mark.asyncio
    async def test_is_alive_false_when_probe_fails(self, pool, fake_chromium):
        await pool.start()
        fake_chromium.launched[0].probe_error = RuntimeError("Protocol error")
        assert await pool.is_alive() is False

    @pytest.mark.asyncio
    async def test_restart_resets_counter_and_allows_acquire(self, pool, fake_chromium):
        old_handles = [await pool.acquire_page(key) for key in ("A", "B", "C")]
        for _ in range(7):
            pool.increment_screenshot_count()
        old_browser = fake_chromium.launched[0]

        status = await pool.restart()

        assert status == EngineStatus.HEALTHY
        assert pool.screenshots_since_restart == 0
        assert pool.page_keys == []
        assert old_browser.closed
        assert all(handle.page.closed for handle in old_handles)

        handle = await pool.acquire_page("A")
        assert handle.page in fake_chromium.launched[1].pages

    @pytest.mark.asyncio
    async def test_restart_ignores_page_close_errors(self, pool):
        handle = await pool.acquire_page("A")
        handle.page.close_error = RuntimeError("already gone")

        status = await pool.restart()

        assert status == EngineStatus.HEALTHY
        assert pool.page_keys == []

    @pytest.mark.asyncio
    async def test_failed_restart_is_unavailable_until_next_restart(self, pool, fake_chromium):
        await pool.start()
        fake_chromium.outcomes = [RuntimeError("oom"), RuntimeError("oom")]

        assert await pool.restart() == EngineStatus.UNAVAILABLE
        assert pool.screenshots_since_restart == 0
        with pytest.raises(EngineUnavailable):
            await pool.acquire_page("key")

        assert await pool.restart() == EngineStatus.HEALTHY
        handle = await pool.acquire_page("key")
        assert handle.page is fake_chromium.launched[-1].pages[0]

    @pytest.mark.asyncio
    async def test_failed_restart_during_health_probe_stays_unavailable(
        self, pool, fake_chromium, test_settings
    ):
        await pool.start()
        probe_started = asyncio.Event()
        release_probe = asyncio.Event()

        async def stalled_cdp_session():
            probe_started.set()
            await release_probe.wait()
            raise RuntimeError("Target closed")

        fake_chromium.launched[0].new_browser_cdp_session = stalled_cdp_session

        health_check = asyncio.create_task(pool.ensure_healthy())
        await probe_started.wait()
        fake_chromium.outcomes = [RuntimeError("oom"), RuntimeError("oom")]
        assert await pool.restart() == EngineStatus.UNAVAILABLE
        release_probe.set()
        await health_check

        assert pool.status == EngineStatus.UNAVAILABLE

        pool._state.last_restart_at = time.monotonic() - test_settings.browser_restart_min_interval_seconds - 1
        with pytest.raises(EngineUnavailable):
            await pool.acquire_page("k")
        assert len(fake_chromium.launch_calls) == 3

    @pytest.mark.asyncio
    async def test_screenshot_threshold_triggers_restart(self, pool, fake_chromium, test_settings):
        await pool.start()
        for _ in range(test_settings.browser_restart_after_screenshots):
            pool.increment_screenshot_count()

        await pool.ensure_healthy()

        assert len(fake_chromium.launched) == 2
        assert pool.screenshots_since_restart == 0
        assert pool.status == EngineStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_below_threshold_healthy_browser_is_left_alone(self, pool, fake_chromium):
        await pool.start()
        for _ in range(49):
            pool.increment_screenshot_count()

        await pool.ensure_healthy()

        assert len(fake_chromium.launched) == 1
        assert pool.screenshots_since_restart == 49

    @pytest.mark.asyncio
    async def test_probe_failure_triggers_restart(self, pool, fake_chromium):
        await pool.start()
        fake_chromium.launched[0].probe_error = RuntimeError("Protocol error")

        await pool.ensure_healthy()

        assert len(fake_chromium.launched) == 2
        assert pool.status == EngineStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_restart_suppressed_within_min_interval(self, pool, fake_chromium):
        await pool.start()
        await pool.restart()
        fake_chromium.launched[-1].probe_error = RuntimeError("Protocol error")

        await pool.ensure_healthy()

        assert len(fake_chromium.launched) == 2
        assert pool.status == EngineStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_restart_allowed_after_min_interval(self, pool, fake_chromium, test_settings):
        await pool.start()
        await pool.restart()
        fake_chromium.launched[-1].probe_error = RuntimeError("Protocol error")
        pool._state.last_restart_at = time.monotonic() - test_settings.browser_restart_min_interval_seconds - 1

        await pool.ensure_healthy()

        assert len(fake_chromium.launched) == 3
        assert pool.status == EngineStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_concurrent_health_checks_restart_once(self, pool, fake_chromium):
        await pool.start()
        fake_chromium.launched[0].probe_error = RuntimeError("Protocol error")

        await asyncio.gather(*(pool.ensure_healthy() for _ in range(4)))

        assert len(fake_chromium.launched) == 2

    @pytest.mark.asyncio
    async def test_acquire_waits_for_restart_in_progress(self, test_settings):
        test_settings.browser_restart_delay_seconds = 0.05
        chromium = FakeChromium()
        render_pool = RenderSessionPool(test_settings)
        render_pool._playwright = FakePlaywright(chromium)  # type: ignore[assignment]
        await render_pool.start()

        restart = asyncio.create_task(render_pool.restart())
        await asyncio.sleep(0)
        assert render_pool.status == EngineStatus.RESTARTING

        handle = await render_pool.acquire_page("key")
        await restart

        assert handle.page in chromium.launched[1].pages
        assert chromium.launched[0].closed

    @pytest.mark.asyncio
    async def test_unexpected_disconnect_degrades_engine(self, pool, fake_chromium):
        await pool.start()
        browser = fake_chromium.launched[0]

        for callback in browser.listeners["disconnected"]:
            callback(browser)

        assert pool.status == EngineStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_describe_reports_state(self, pool):
        await pool.acquire_page("A")
        pool.increment_screenshot_count()

        status = pool.describe()

        assert status.engine_status == EngineStatus.HEALTHY
        assert status.live_pages == 1
        assert status.page_keys == ["A"]
        assert status.screenshots_since_restart == 1
        assert status.browser_version == "120.0.6099.28"
