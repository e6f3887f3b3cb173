"""Playwright helpers for the headless browser shared by queue workers."""

from __future__ import annotations

import logging
from typing import Any, List

from .config import BrowserConfig

LOGGER = logging.getLogger(__name__)

_STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
window.chrome = { runtime: {} };
"""


class BrowserLaunchError(RuntimeError):
    """Raised when Playwright cannot be started or the browser fails to launch."""


class BrowserSession:
    """A launched Chromium instance plus the Playwright driver that owns it."""

    def __init__(self, playwright: Any, browser: Any, config: BrowserConfig) -> None:
        self._playwright = playwright
        self._browser = browser
        self._config = config

    @property
    def browser(self) -> Any:
        return self._browser

    async def new_page(
        self,
        *,
        viewport: tuple[int, int] | None = None,
        user_agent: str | None = None,
    ) -> Any:
        width, height = viewport or self._config.viewport
        context = await self._browser.new_context(
            viewport={"width": width, "height": height},
            user_agent=user_agent or self._config.user_agent,
        )
        context.set_default_navigation_timeout(self._config.timeout_ms)
        if self._config.stealth:
            await context.add_init_script(_STEALTH_SCRIPT)
        return await context.new_page()

    def pages(self) -> List[Any]:
        return [page for context in self._browser.contexts for page in context.pages]

    async def close_page(self, page: Any) -> None:
        context = page.context
        await page.close()
        if not context.pages:
            await context.close()

    async def close(self) -> None:
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()


async def launch_browser(config: BrowserConfig) -> BrowserSession:
    """Start Playwright and launch Chromium with ``config``."""

    try:
        from playwright.async_api import Error as PlaywrightError, async_playwright
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise BrowserLaunchError(
            "Playwright is not installed. Install it with `pip install playwright` and run `playwright install`."
        ) from exc

    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(
            headless=config.headless,
            args=config.launch_args(),
            timeout=config.timeout_ms,
        )
    except PlaywrightError as exc:
        await playwright.stop()
        raise BrowserLaunchError(f"Failed to launch browser: {exc}") from exc

    LOGGER.debug("Launched Chromium (headless=%s, stealth=%s)", config.headless, config.stealth)
    return BrowserSession(playwright, browser, config)
