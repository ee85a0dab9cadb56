"""Pytest fixtures for swarm tests."""
from __future__ import annotations

import io
import tempfile
from pathlib import Path
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from config import SwarmConfig
from job_store import JobStoreClient, SQLiteJobStore

SWARM_ENV_VARS = [
    "SWARM_CONFIG",
    "SWARM_DB_PATH",
    "SWARM_MODEL",
    "SWARM_MODEL_BASE_URL",
    "SWARM_MODEL_API_KEY",
    "OPENAI_API_KEY",
    "SWARM_AGENTS",
    "SWARM_HEADLESS",
    "SWARM_LIVE_STREAM",
    "SWARM_LIVE_STREAM_URL",
    "SWARM_BROWSER",
]


class FakeClock:
    """Settable epoch clock for the job store."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer environment variables out of config-dependent tests."""
    for name in SWARM_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def jpeg_bytes() -> bytes:
    """A small real JPEG so image decoding works."""
    buf = io.BytesIO()
    Image.new("RGB", (64, 48), color=(200, 30, 30)).save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(temp_dir: Path, clock: FakeClock) -> SQLiteJobStore:
    return SQLiteJobStore(temp_dir / "swarm.db", busy_timeout=5.0, clock=clock)


@pytest.fixture
def store_client(store: SQLiteJobStore) -> JobStoreClient:
    return JobStoreClient(store)


@pytest.fixture
def swarm_config(temp_dir: Path) -> SwarmConfig:
    """Config with every loop delay set to zero."""
    return SwarmConfig.model_validate(
        {
            "store": {"database_path": str(temp_dir / "swarm.db")},
            "agent": {
                "poll_interval": 0,
                "error_backoff": 0,
                "heartbeat_interval": 60,
                "settle_delay": 0,
                "parse_error_delay": 0,
                "default_max_steps": 50,
            },
            "model": {"api_key": "test-key"},
            "storage": {"root": str(temp_dir / "screenshots")},
        }
    )


@pytest.fixture
def mock_page() -> MagicMock:
    """Create a mock Playwright page for testing."""
    page = MagicMock()
    page.url = "https://example.com/"
    page.goto = AsyncMock()
    page.click = AsyncMock()
    page.fill = AsyncMock()
    page.hover = AsyncMock()
    page.select_option = AsyncMock(return_value=["NZ"])
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.evaluate = AsyncMock()
    page.screenshot = AsyncMock(return_value=b"\x89PNG fake")
    page.keyboard.press = AsyncMock()
    page.keyboard.type = AsyncMock()
    page.mouse.wheel = AsyncMock()

    locator = MagicMock()
    locator.press = AsyncMock()
    locator.scroll_into_view_if_needed = AsyncMock()
    locator.text_content = AsyncMock(return_value="Example Domain")
    locator.input_value = AsyncMock(return_value="")
    locator.is_visible = AsyncMock(return_value=True)
    locator.count = AsyncMock(return_value=1)
    locator.get_attribute = AsyncMock(return_value=None)
    page.locator = MagicMock(return_value=locator)
    return page


@pytest.fixture
def mock_browser(mock_page: MagicMock, jpeg_bytes: bytes) -> MagicMock:
    """Create a mock browser session for testing."""
    browser = MagicMock()
    browser.started = True
    browser.page = mock_page
    browser.start = AsyncMock()
    browser.close = AsyncMock()
    browser.goto = AsyncMock()
    browser.screenshot = AsyncMock(return_value=jpeg_bytes)
    browser.page_info = AsyncMock(return_value={"url": "https://example.com/", "title": "Example Domain"})
    browser.describe = MagicMock(return_value={"browser_type": "chromium", "headless": True})
    return browser


@pytest.fixture
def sample_task_yaml() -> str:
    """Sample YAML scripted test definition."""
    return """
name: Example navigation
description: Simple navigation test to example.com
url: https://example.com
actions:
  - type: navigate
    target: https://example.com
  - type: wait
    selector: h1
    timeout: 5000
  - type: assert
    selector: h1
    expected: Example Domain
tags:
  - smoke
priority: 2
max_retries: 1
"""


@pytest.fixture
def sample_task_json() -> Dict[str, Any]:
    """Sample JSON AI-mode test definition."""
    return {
        "name": "Signup via AI",
        "url": "https://example.com/signup",
        "ai_instruction": "Create an account and confirm the dashboard appears",
        "max_steps": 12,
        "tags": ["ai", "signup"],
    }
