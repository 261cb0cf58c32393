import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from utils.error_handling import NavigationError, ScrapeTimeoutError
from utils.logger import get_logger

COOKIE_CONSENT_SELECTORS = [
    "#onetrust-accept-btn-handler",
    'button[id*="accept"]',
    'button[class*="accept"]',
    '[data-testid*="accept"]',
    'button:has-text("Accept all")',
    'button:has-text("Accept All Cookies")',
]

POPUP_CLOSE_SELECTORS = [
    '[class*="modal-close"]',
    '[class*="popup-close"]',
    '[aria-label="Close"]',
    '[class*="close-button"]',
    'button[class*="dismiss"]',
    '[class*="newsletter"] button[class*="close"]',
    '[id*="popup"] button[class*="close"]',
]

LOAD_MORE_SELECTORS = [
    'button[class*="load-more"]',
    'button[class*="loadMore"]',
    '[class*="load-more"]',
    'button:has-text("Load More")',
    'button:has-text("Show More")',
    'a[class*="load-more"]',
]

SCROLL_STEP_SCRIPT = "() => window.scrollBy(0, window.innerHeight)"

SCROLL_INFINITE = "infinite"
SCROLL_LOAD_MORE = "load_more"


class PlaywrightSession:
    """Render session over one Playwright page."""

    def __init__(
        self,
        page: Page,
        config: Optional[Dict[str, Any]] = None,
        hints: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        config = config or {}
        hints = hints or {}
        self.page = page
        self.logger = logger or get_logger(__name__)
        self.navigation_timeout_ms = config.get("navigation_timeout_ms", 60_000)
        self.screenshot_timeout_ms = config.get("screenshot_timeout_ms", 15_000)
        self.evaluate_timeout_seconds = config.get("evaluate_timeout_seconds", 30)
        self.wait_until = config.get("wait_until", "domcontentloaded")
        self.screenshot_quality = config.get("screenshot_quality", 80)
        self.settle_ms = hints.get("wait_time_ms", config.get("settle_ms", 2_000))
        self.scroll_count = hints.get("scroll_count", config.get("scroll_count", 3))
        self.scroll_pause_ms = config.get("scroll_pause_ms", 800)
        self.scroll_behavior = hints.get("scroll_behavior") or config.get("scroll_behavior", SCROLL_INFINITE)
        self.max_load_more_clicks = hints.get("max_clicks", config.get("max_load_more_clicks", 3))
        self.load_more_pause_ms = config.get("load_more_pause_ms", 2_000)
        self.cookie_selectors: List[str] = config.get("cookie_consent_selectors", COOKIE_CONSENT_SELECTORS)
        self.popup_selectors: List[str] = config.get("popup_close_selectors", POPUP_CLOSE_SELECTORS)
        self.load_more_selectors: List[str] = config.get("load_more_selectors", LOAD_MORE_SELECTORS)

    async def goto_and_settle(self, url: str) -> None:
        try:
            await self.page.goto(url, wait_until=self.wait_until, timeout=self.navigation_timeout_ms)
            await self.page.wait_for_timeout(self.settle_ms)
            await self.dismiss_cookie_consent()
            await self.close_popups()
            if self.scroll_behavior == SCROLL_LOAD_MORE:
                await self.click_load_more()
            else:
                for _ in range(self.scroll_count):
                    await self.page.evaluate(SCROLL_STEP_SCRIPT)
                    await self.page.wait_for_timeout(self.scroll_pause_ms)
            await self.page.evaluate("() => window.scrollTo(0, 0)")
        except PlaywrightTimeoutError as exc:
            raise NavigationError(f"Navigation timed out: {url}", {"url": url, "error_type": "timeout"}) from exc
        except PlaywrightError as exc:
            raise NavigationError(f"Navigation failed: {exc}", {"url": url, "error_type": str(exc)[:80]}) from exc

    async def dismiss_cookie_consent(self) -> bool:
        for selector in self.cookie_selectors:
            try:
                button = await self.page.query_selector(selector)
                if button and await button.is_visible():
                    await button.click(timeout=2_000)
                    self.logger.debug(f"Dismissed cookie consent via {selector}")
                    return True
            except PlaywrightError:
                continue
        return False

    async def close_popups(self) -> int:
        """Click every visible modal/newsletter close control; returns how many were closed."""
        closed = 0
        for selector in self.popup_selectors:
            try:
                button = await self.page.query_selector(selector)
                if button and await button.is_visible():
                    await button.click(timeout=2_000)
                    closed += 1
                    self.logger.debug(f"Closed popup via {selector}")
                    await self.page.wait_for_timeout(500)
            except PlaywrightError:
                continue
        return closed

    async def click_load_more(self) -> int:
        """Press the catalog's "load more" control until it disappears or the click budget runs out."""
        clicks = 0
        while clicks < self.max_load_more_clicks:
            button = await self._visible_load_more_button()
            if button is None:
                break
            try:
                await button.click(timeout=5_000)
            except PlaywrightError as exc:
                self.logger.debug(f"Load more click failed: {exc}")
                break
            clicks += 1
            await self.page.wait_for_timeout(self.load_more_pause_ms)
        if clicks:
            self.logger.info(f"Clicked load more {clicks} time(s)")
        return clicks

    async def _visible_load_more_button(self) -> Optional[Any]:
        for selector in self.load_more_selectors:
            try:
                button = await self.page.query_selector(selector)
                if button and await button.is_visible():
                    return button
            except PlaywrightError:
                continue
        return None

    async def screenshot(self) -> bytes:
        return await self.page.screenshot(
            type="jpeg", quality=self.screenshot_quality, timeout=self.screenshot_timeout_ms
        )

    async def evaluate(self, script: str, *args: Any) -> Any:
        if not args:
            call = self.page.evaluate(script)
        else:
            call = self.page.evaluate(script, args[0] if len(args) == 1 else list(args))
        try:
            return await asyncio.wait_for(call, timeout=self.evaluate_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ScrapeTimeoutError("Page script timed out", {"url": self.page.url}) from exc
        except PlaywrightError as exc:
            # e.g. "Execution context was destroyed" after a client-side redirect
            raise NavigationError(
                f"Page script failed: {exc}", {"url": self.page.url, "error_type": str(exc)[:80]}
            ) from exc

    async def title(self) -> str:
        try:
            return await self.page.title()
        except PlaywrightError as exc:
            raise NavigationError(
                f"Page title unavailable: {exc}", {"url": self.page.url, "error_type": str(exc)[:80]}
            ) from exc

    def current_url(self) -> str:
        return self.page.url


class BrowserManager:
    """Owns the Playwright browser and a small fixed pool of pages."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or {}
        self.logger = logger or get_logger(__name__)
        self.max_pages = self.config.get("max_pages", 2)
        self.headless = self.config.get("headless", True)
        self.browser_type = self.config.get("browser_type", "chromium")

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self._lock = asyncio.Lock()
        self._page_slots = asyncio.Semaphore(self.max_pages)
        self.metrics: Dict[str, Any] = {"pages_opened": 0}

    async def start(self) -> None:
        if self.browser:
            return
        async with self._lock:
            if self.browser:
                return
            self.logger.info(f"Launching {self.browser_type} (headless={self.headless})")
            self.playwright = await async_playwright().start()
            self.browser = await getattr(self.playwright, self.browser_type).launch(
                headless=self.headless, args=self.config.get("launch_args", [])
            )
            self.context = await self.browser.new_context(**self._build_context_options())
            await self.context.add_init_script(
                "() => { Object.defineProperty(navigator, 'webdriver', { get: () => undefined }); }"
            )

    async def stop(self) -> None:
        if self.context:
            await self._safe_close(self.context, "context")
            self.context = None
        if self.browser:
            await self._safe_close(self.browser, "browser")
            self.browser = None
        if self.playwright:
            await self.playwright.stop()
            self.playwright = None
        self.logger.info("Browser closed")

    async def __aenter__(self) -> "BrowserManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @asynccontextmanager
    async def page(self, hints: Optional[Dict[str, Any]] = None) -> AsyncIterator[PlaywrightSession]:
        """Borrow a fresh page for one site; closed on exit."""
        try:
            await self.start()
        except PlaywrightError as exc:
            raise NavigationError(f"Browser launch failed: {exc}", {"error_type": "launch"}) from exc
        async with self._page_slots:
            try:
                page = await self.context.new_page()
            except PlaywrightError as exc:
                raise NavigationError(f"Could not open a page: {exc}", {"error_type": "new_page"}) from exc
            self.metrics["pages_opened"] += 1
            try:
                yield PlaywrightSession(page, self.config, hints, self.logger)
            finally:
                await self._safe_close(page, "page")

    def _build_context_options(self) -> Dict[str, Any]:
        options = dict(self.config.get("context_options", {}))
        options.setdefault("viewport", self.config.get("viewport", {"width": 1366, "height": 900}))
        if self.config.get("user_agent"):
            options["user_agent"] = self.config["user_agent"]
        if self.config.get("locale"):
            options["locale"] = self.config["locale"]
        return options

    async def _safe_close(self, resource: Any, label: str) -> None:
        try:
            await resource.close()
        except Exception:
            self.logger.debug(f"Failed to close Playwright {label}", exc_info=True)
