"""Playwright browser session owned by a single agent."""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
    TimeoutError as PlaywrightTimeout,
)

from exceptions import BrowserNotStartedError, NavigationError, ScreenshotError

BrowserType = Literal["chromium", "firefox", "webkit"]


class BrowserSession:
    """One browser, one context, one page; the unit of isolation for an agent."""

    def __init__(
        self,
        browser_type: BrowserType = "chromium",
        headless: bool = True,
        viewport_width: int = 1920,
        viewport_height: int = 1080,
        ignore_https_errors: bool = True,
        navigation_timeout: float = 30000,
        logger: Optional[logging.Logger] = None,
    ):
        self.browser_type = browser_type
        self.headless = headless
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.ignore_https_errors = ignore_https_errors
        self.navigation_timeout = navigation_timeout
        self.logger = logger or logging.getLogger("swarm.browser")

        self._playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @classmethod
    def from_config(cls, config: Any, logger: Optional[logging.Logger] = None) -> "BrowserSession":
        return cls(
            browser_type=config.browser,
            headless=config.headless,
            viewport_width=config.viewport_width,
            viewport_height=config.viewport_height,
            ignore_https_errors=config.ignore_https_errors,
            navigation_timeout=config.navigation_timeout,
            logger=logger,
        )

    @property
    def started(self) -> bool:
        return self._page is not None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise BrowserNotStartedError()
        return self._page

    def describe(self) -> dict[str, Any]:
        """Session descriptor recorded on the agent identity."""
        return {
            "browser_type": self.browser_type,
            "headless": self.headless,
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
        }

    async def start(self) -> None:
        """Launch the browser with the configured engine."""
        self._playwright = await async_playwright().start()
        browser_launcher = getattr(self._playwright, self.browser_type)
        self.browser = await browser_launcher.launch(headless=self.headless)
        self.context = await self.browser.new_context(
            viewport={"width": self.viewport_width, "height": self.viewport_height},
            ignore_https_errors=self.ignore_https_errors,
        )
        self._page = await self.context.new_page()
        self._page.set_default_navigation_timeout(self.navigation_timeout)
        self.logger.info(f"Browser started: {self.browser_type} (headless={self.headless})")

    async def close(self) -> None:
        """Close the browser and clean up resources."""
        if self._page:
            await self._page.close()
        if self.context:
            await self.context.close()
        if self.browser:
            await self.browser.close()
        if self._playwright:
            await self._playwright.stop()
        self._page = None
        self.context = None
        self.browser = None
        self._playwright = None
        self.logger.info("Browser closed")

    async def goto(
        self,
        url: str,
        wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "load",
    ) -> None:
        """Navigate to a URL, wrapping driver failures."""
        try:
            await self.page.goto(url, wait_until=wait_until, timeout=self.navigation_timeout)
        except PlaywrightTimeout as e:
            raise NavigationError(f"Navigation timed out: {url}", url=url, timeout=self.navigation_timeout) from e
        except BrowserNotStartedError:
            raise
        except Exception as e:
            raise NavigationError(f"Navigation failed: {e}", url=url) from e

    async def screenshot(self, quality: int = 80, full_page: bool = False) -> bytes:
        """Capture the current viewport as JPEG."""
        try:
            return await self.page.screenshot(type="jpeg", quality=quality, full_page=full_page)
        except BrowserNotStartedError:
            raise
        except Exception as e:
            raise ScreenshotError(f"Screenshot failed: {e}") from e

    def get_url(self) -> str:
        """Get current page URL."""
        return self.page.url if self._page else ""

    async def get_title(self) -> str:
        """Get current page title."""
        if not self._page:
            return ""
        try:
            return await self._page.title()
        except Exception:
            return ""

    async def page_info(self) -> dict[str, str]:
        return {"url": self.get_url(), "title": await self.get_title()}
