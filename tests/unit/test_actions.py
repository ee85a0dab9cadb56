"""Unit tests for action parsing and the action executor."""
from __future__ import annotations

import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeout

from actions import (
    ActionExecutor,
    AssertAction,
    ClickAction,
    CompleteAction,
    FillAction,
    KeypressAction,
    NavigateAction,
    TypeTextAction,
    WaitAction,
    is_terminal,
    parse_action,
)
from exceptions import ActionValidationError, AssertionFailedError, ElementNotFoundError, UnknownActionError


class TestParseAction:
    def test_navigate_accepts_target_alias(self):
        action = parse_action({"type": "navigate", "target": "https://example.com"})
        assert isinstance(action, NavigateAction)
        assert action.url == "https://example.com"
        assert action.wait_until == "load"

    def test_click_camel_case_fields(self):
        action = parse_action({"type": "click", "selector": "#go", "clickCount": 2})
        assert isinstance(action, ClickAction)
        assert action.click_count == 2

    def test_press_is_keypress(self):
        action = parse_action({"type": "press", "key": "Enter"})
        assert isinstance(action, KeypressAction)
        assert action.key == "Enter"

    def test_keyboard_text_is_type_text(self):
        action = parse_action({"type": "keyboard", "text": "HELLO"})
        assert isinstance(action, TypeTextAction)
        assert action.text == "HELLO"

    def test_type_with_selector_is_fill(self):
        action = parse_action({"type": "type", "selector": "#q", "value": "hi"})
        assert isinstance(action, FillAction)

    def test_assert_defaults_to_text(self):
        action = parse_action({"type": "assert", "selector": "h1", "expected": "Example"})
        assert isinstance(action, AssertAction)
        assert action.assert_type == "text"

    def test_complete_is_terminal(self):
        action = parse_action({"type": "complete", "success": True, "reason": "done"})
        assert isinstance(action, CompleteAction)
        assert is_terminal(action)
        assert not is_terminal(parse_action({"type": "wait", "timeout": 10}))

    def test_missing_type(self):
        with pytest.raises(ActionValidationError):
            parse_action({"selector": "#go"})

    def test_unknown_type(self):
        with pytest.raises(UnknownActionError):
            parse_action({"type": "teleport"})

    def test_missing_required_field(self):
        with pytest.raises(ActionValidationError):
            parse_action({"type": "fill", "selector": "#q"})

    def test_non_mapping(self):
        with pytest.raises(ActionValidationError):
            parse_action(["click"])

    def test_non_string_type(self):
        with pytest.raises(ActionValidationError):
            parse_action({"type": ["click"], "selector": "#go"})

    def test_assert_requires_expected(self):
        for assert_type in ("text", "value", "attribute", "count"):
            with pytest.raises(ActionValidationError):
                parse_action({"type": "assert", "selector": "h1", "assertType": assert_type, "attribute": "href"})
        with pytest.raises(ActionValidationError):
            parse_action({"type": "assert", "selector": "h1", "expected": None})
        with pytest.raises(ActionValidationError):
            parse_action({"type": "assert", "selector": "a", "expected": {"attribute": "href"}})

    def test_visible_assert_defaults_to_true(self):
        action = parse_action({"type": "assert", "selector": "h1", "assertType": "visible"})
        assert action.expected is None

    def test_descriptor_round_trip_uses_wire_names(self):
        descriptor = parse_action({"type": "click", "selector": "#go", "clickCount": 2}).to_descriptor()
        assert descriptor["clickCount"] == 2
        assert descriptor["type"] == "click"


class TestActionExecutor:
    def test_navigate(self, mock_page):
        result = asyncio.run(ActionExecutor(mock_page).execute(parse_action({"type": "navigate", "url": "https://a.test"})))
        mock_page.goto.assert_awaited_once_with("https://a.test", wait_until="load")
        assert result == {"success": True, "url": mock_page.url}

    def test_click(self, mock_page):
        asyncio.run(ActionExecutor(mock_page).execute(parse_action({"type": "click", "selector": "#go"})))
        mock_page.click.assert_awaited_once_with("#go", button="left", click_count=1, delay=0)

    def test_fill_preview_is_truncated(self, mock_page):
        value = "x" * 80
        result = asyncio.run(ActionExecutor(mock_page).execute(FillAction(selector="#q", value=value)))
        mock_page.fill.assert_awaited_once_with("#q", value)
        assert result["value"].endswith("...")

    def test_keypress_with_and_without_selector(self, mock_page):
        executor = ActionExecutor(mock_page)
        asyncio.run(executor.execute(parse_action({"type": "keypress", "key": "Enter"})))
        mock_page.keyboard.press.assert_awaited_once_with("Enter")

        asyncio.run(executor.execute(parse_action({"type": "keypress", "key": "Tab", "selector": "#q"})))
        mock_page.locator.assert_called_with("#q")
        mock_page.locator.return_value.press.assert_awaited_once_with("Tab")

    def test_wait_for_selector_or_timeout(self, mock_page):
        executor = ActionExecutor(mock_page)
        asyncio.run(executor.execute(WaitAction(selector="h1", timeout=500)))
        mock_page.wait_for_selector.assert_awaited_once_with("h1", timeout=500, state="visible")

        asyncio.run(executor.execute(WaitAction(timeout=250)))
        mock_page.wait_for_timeout.assert_awaited_once_with(250)

    def test_scroll_variants(self, mock_page):
        executor = ActionExecutor(mock_page)
        result = asyncio.run(executor.execute(parse_action({"type": "scroll"})))
        assert result["scrolled"] == "to bottom"
        mock_page.evaluate.assert_awaited_once()

        asyncio.run(executor.execute(parse_action({"type": "scroll", "direction": "up", "pixels": 100})))
        mock_page.mouse.wheel.assert_awaited_once_with(0, -100)

    def test_assert_text_contains(self, mock_page):
        result = asyncio.run(
            ActionExecutor(mock_page).execute(parse_action({"type": "assert", "selector": "h1", "expected": "Example"}))
        )
        assert result["success"] is True
        assert result["actual"] == "Example Domain"

    def test_assert_text_mismatch(self, mock_page):
        with pytest.raises(AssertionFailedError) as exc_info:
            asyncio.run(
                ActionExecutor(mock_page).execute(
                    parse_action({"type": "assert", "selector": "h1", "expected": "Welcome"})
                )
            )
        assert exc_info.value.expected == "Welcome"
        assert exc_info.value.actual == "Example Domain"

    def test_assert_visible_and_count_are_strict(self, mock_page):
        executor = ActionExecutor(mock_page)
        result = asyncio.run(executor.execute(parse_action({"type": "assert", "selector": "h1", "assertType": "visible"})))
        assert result["expected"] is True
        with pytest.raises(AssertionFailedError):
            asyncio.run(
                executor.execute(
                    parse_action({"type": "assert", "selector": "li", "assertType": "count", "expected": 3})
                )
            )

    def test_complete_reports_outcome(self, mock_page):
        result = asyncio.run(ActionExecutor(mock_page).execute(CompleteAction(success=False, reason="stuck")))
        assert result == {"success": False, "reason": "stuck"}

    def test_selector_timeout_becomes_element_not_found(self, mock_page):
        mock_page.click.side_effect = PlaywrightTimeout("Timeout 30000ms exceeded")
        with pytest.raises(ElementNotFoundError) as exc_info:
            asyncio.run(ActionExecutor(mock_page).execute(parse_action({"type": "click", "selector": "#gone"})))
        assert exc_info.value.selector == "#gone"
