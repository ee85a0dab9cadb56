"""Unit tests for the browser session wrapper (no real browser is launched)."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeout

from browser import BrowserSession
from config import BrowserConfig
from exceptions import BrowserNotStartedError, NavigationError, ScreenshotError


def _session_with(page) -> BrowserSession:
    session = BrowserSession()
    session._page = page
    return session


class TestBrowserSession:
    def test_from_config(self):
        session = BrowserSession.from_config(BrowserConfig(browser="firefox", headless=False))
        assert session.describe() == {
            "browser_type": "firefox",
            "headless": False,
            "viewport": {"width": 1920, "height": 1080},
        }
        assert not session.started

    def test_page_requires_start(self):
        with pytest.raises(BrowserNotStartedError):
            BrowserSession().page

    def test_page_info_before_start_is_blank(self):
        assert asyncio.run(BrowserSession().page_info()) == {"url": "", "title": ""}

    def test_page_info(self, mock_page):
        mock_page.title = AsyncMock(return_value="Example Domain")
        info = asyncio.run(_session_with(mock_page).page_info())
        assert info == {"url": "https://example.com/", "title": "Example Domain"}

    def test_goto_timeout_is_navigation_error(self, mock_page):
        mock_page.goto.side_effect = PlaywrightTimeout("Timeout 30000ms exceeded")
        with pytest.raises(NavigationError) as exc_info:
            asyncio.run(_session_with(mock_page).goto("https://slow.test"))
        assert exc_info.value.url == "https://slow.test"
        assert exc_info.value.timeout == 30000

    def test_screenshot_is_jpeg_at_quality(self, mock_page):
        asyncio.run(_session_with(mock_page).screenshot(quality=60))
        mock_page.screenshot.assert_awaited_once_with(type="jpeg", quality=60, full_page=False)

    def test_screenshot_failure(self, mock_page):
        mock_page.screenshot.side_effect = RuntimeError("target closed")
        with pytest.raises(ScreenshotError):
            asyncio.run(_session_with(mock_page).screenshot())
