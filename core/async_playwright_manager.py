import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from core.types import RenderResult
from utils.error_handling import FetchError

BOT_DETECTION_TIMEOUT_MESSAGE = "Page load timeout - possible bot detection"
DEFAULT_BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class AsyncPlaywrightManager:
    """Headless Chromium behind the ``PageRenderer`` interface.

    Browser contexts are reused across renders with the same user agent. At
    most ``max_contexts`` are in use at once and at most ``max_contexts`` more
    sit idle; the least recently used idle context is closed beyond that. The
    browser is launched lazily on the first render.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or {}
        self.logger = logger or logging.getLogger(__name__)

        self.max_contexts = self.config.get("max_contexts", 2)
        self.navigation_timeout_ms = self.config.get("navigation_timeout_ms", 30_000)
        self.wait_for_selector_timeout_ms = self.config.get(
            "wait_for_selector_timeout_ms", 10_000
        )
        self.default_wait_strategy = self.config.get(
            "default_wait_strategy", "networkidle"
        )
        self.headless = self.config.get("headless", True)
        self.locale = self.config.get("locale", "es-ES")
        self.timezone_id = self.config.get("timezone_id", "Europe/Madrid")

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.idle_contexts: List[Tuple[str, BrowserContext]] = []
        self._playwright_lock = asyncio.Lock()
        self._context_semaphore = asyncio.Semaphore(self.max_contexts)

    async def start(self) -> None:
        if self.browser:
            return
        async with self._playwright_lock:
            if self.browser:
                return
            self.logger.info("Initializing Playwright browser...")
            try:
                self.playwright = await async_playwright().start()
                self.browser = await self.playwright.chromium.launch(
                    **self._build_launch_options()
                )
            except Exception:
                self.logger.error(
                    "Failed to initialize Playwright. "
                    "Run 'playwright install chromium' to install browsers."
                )
                raise
            self.logger.info("Playwright browser initialized successfully")

    async def stop(self) -> None:
        idle, self.idle_contexts = self.idle_contexts, []
        for _, context in idle:
            await self._safe_close_context(context)

        if self.browser:
            try:
                await self.browser.close()
            except Exception:
                self.logger.debug("Failed to close Playwright browser", exc_info=True)
            self.browser = None

        if self.playwright:
            await self.playwright.stop()
            self.playwright = None

    async def __aenter__(self) -> "AsyncPlaywrightManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @asynccontextmanager
    async def page_context(self, user_agent: Optional[str] = None) -> AsyncIterator[Page]:
        await self.start()
        key = user_agent or DEFAULT_BROWSER_USER_AGENT
        async with self._context_semaphore:
            context = self._take_idle_context(key)
            if context is None:
                context = await self._create_browser_context(key)
            page = await context.new_page()
            try:
                yield page
            finally:
                try:
                    await page.close()
                except Exception:
                    self.logger.debug("Failed to close Playwright page", exc_info=True)
                await self._return_context(key, context)

    async def render(
        self,
        url: str,
        *,
        user_agent: Optional[str] = None,
        wait_for_selector: Optional[str] = None,
        state_expression: Optional[str] = None,
    ) -> RenderResult:
        """Navigate to ``url`` and return the rendered document.

        A missing ``wait_for_selector`` marker is reported through
        ``signals["marker_found"]`` and is not an error.

        Raises:
            FetchError: If navigation times out or the browser fails
        """
        async with self.page_context(user_agent) as page:
            try:
                response = await page.goto(
                    url,
                    wait_until=self.default_wait_strategy,
                    timeout=self.navigation_timeout_ms,
                )
            except PlaywrightTimeoutError as e:
                raise FetchError(BOT_DETECTION_TIMEOUT_MESSAGE, context={"url": url}) from e
            except Exception as e:
                raise FetchError(f"Navigation failed: {e}", context={"url": url}) from e

            status_code = response.status if response is not None else None
            signals: Dict[str, Any] = {"final_url": page.url}

            if response is not None and not response.ok:
                return RenderResult(
                    html="", status_code=status_code, signals=signals
                )

            if wait_for_selector:
                try:
                    await page.wait_for_selector(
                        wait_for_selector, timeout=self.wait_for_selector_timeout_ms
                    )
                    signals["marker_found"] = True
                except PlaywrightTimeoutError:
                    self.logger.debug(
                        f"Product detail marker not found on {url}", extra={"url": url}
                    )
                    signals["marker_found"] = False

            page_state = None
            if state_expression:
                try:
                    page_state = await page.evaluate(state_expression)
                except Exception as e:
                    self.logger.debug(
                        f"Could not read page state on {url}: {e}", extra={"url": url}
                    )

            return RenderResult(
                html=await page.content(),
                status_code=status_code,
                title=await page.title(),
                page_state=page_state if isinstance(page_state, str) else None,
                signals=signals,
            )

    def _take_idle_context(self, user_agent: str) -> Optional[BrowserContext]:
        for index in range(len(self.idle_contexts) - 1, -1, -1):
            if self.idle_contexts[index][0] == user_agent:
                return self.idle_contexts.pop(index)[1]
        return None

    async def _return_context(self, user_agent: str, context: BrowserContext) -> None:
        self.idle_contexts.append((user_agent, context))
        while len(self.idle_contexts) > self.max_contexts:
            _, stale = self.idle_contexts.pop(0)
            await self._safe_close_context(stale)

    async def _create_browser_context(self, user_agent: str) -> BrowserContext:
        assert self.browser is not None
        self.logger.debug("Created new browser context")
        return await self.browser.new_context(**self._build_context_options(user_agent))

    async def _safe_close_context(self, context: BrowserContext) -> None:
        try:
            await context.close()
        except Exception:
            self.logger.debug("Failed to close Playwright context", exc_info=True)

    def _build_launch_options(self) -> Dict[str, Any]:
        return {
            "headless": self.headless,
            "args": [
                "--disable-dev-shm-usage",
                "--disable-gpu",
                "--no-sandbox",
                "--disable-setuid-sandbox",
            ],
        }

    def _build_context_options(self, user_agent: str) -> Dict[str, Any]:
        return {
            "user_agent": user_agent,
            "viewport": {"width": 1920, "height": 1080},
            "locale": self.locale,
            "timezone_id": self.timezone_id,
            "java_script_enabled": True,
        }
