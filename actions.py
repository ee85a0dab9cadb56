"""Action descriptors and the executor that turns them into Playwright calls."""
from __future__ import annotations

import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from playwright.async_api import TimeoutError as PlaywrightTimeout
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from exceptions import ActionValidationError, AssertionFailedError, ElementNotFoundError, UnknownActionError


class _BaseAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: Optional[str] = None

    def to_descriptor(self) -> Dict[str, Any]:
        """Wire form of the action, as stored on a test step."""
        return self.model_dump(by_alias=True, exclude_none=True)


class NavigateAction(_BaseAction):
    type: Literal["navigate"] = "navigate"
    url: str
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = Field(
        default="load", alias="waitUntil"
    )


class ClickAction(_BaseAction):
    type: Literal["click"] = "click"
    selector: str
    button: Literal["left", "right", "middle"] = "left"
    click_count: int = Field(default=1, ge=1, alias="clickCount")
    delay: float = 0


class FillAction(_BaseAction):
    type: Literal["fill"] = "fill"
    selector: str
    value: str


class SelectAction(_BaseAction):
    type: Literal["select"] = "select"
    selector: str
    values: Union[str, List[str]]


class KeypressAction(_BaseAction):
    type: Literal["keypress"] = "keypress"
    key: str
    selector: Optional[str] = None


class TypeTextAction(_BaseAction):
    type: Literal["typeText"] = "typeText"
    text: str
    delay: float = 0


class WaitAction(_BaseAction):
    type: Literal["wait"] = "wait"
    selector: Optional[str] = None
    timeout: float = Field(default=30000, ge=0, description="Milliseconds")
    state: Literal["attached", "detached", "visible", "hidden"] = "visible"


class ScrollAction(_BaseAction):
    type: Literal["scroll"] = "scroll"
    selector: Optional[str] = None
    direction: Optional[Literal["up", "down"]] = None
    pixels: int = Field(default=600, ge=0)


class HoverAction(_BaseAction):
    type: Literal["hover"] = "hover"
    selector: str
    timeout: float = 30000


class AssertAction(_BaseAction):
    type: Literal["assert"] = "assert"
    selector: str
    expected: Any = None
    assert_type: Literal["text", "value", "visible", "count", "attribute"] = Field(
        default="text", alias="assertType"
    )
    attribute: Optional[str] = None

    @model_validator(mode="after")
    def _require_expected(self) -> "AssertAction":
        # Only visibility has a meaningful default.
        if self.expected is None and self.assert_type != "visible":
            raise ValueError(f"{self.assert_type} assertion requires 'expected'")
        return self


class ScreenshotAction(_BaseAction):
    type: Literal["screenshot"] = "screenshot"
    full_page: bool = Field(default=False, alias="fullPage")


class CompleteAction(_BaseAction):
    type: Literal["complete"] = "complete"
    success: bool = False
    reason: str = ""


Action = Annotated[
    Union[
        NavigateAction,
        ClickAction,
        FillAction,
        SelectAction,
        KeypressAction,
        TypeTextAction,
        WaitAction,
        ScrollAction,
        HoverAction,
        AssertAction,
        ScreenshotAction,
        CompleteAction,
    ],
    Field(discriminator="type"),
]

_action_adapter: TypeAdapter[Action] = TypeAdapter(Action)

ACTION_TYPES = {
    "navigate", "click", "fill", "select", "keypress", "typeText",
    "wait", "scroll", "hover", "assert", "screenshot", "complete",
}


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map legacy and model-friendly spellings onto the canonical variants."""
    out = dict(data)
    kind = out.get("type")
    if kind == "press":
        out["type"] = "keypress"
    elif kind in ("type", "type_text", "keyboard"):
        if kind == "type" and out.get("selector") and "value" in out:
            out["type"] = "fill"
        elif kind == "keyboard" and out.get("key") and not out.get("text"):
            out["type"] = "keypress"
        else:
            out["type"] = "typeText"
            if "text" not in out and "value" in out:
                out["text"] = out["value"]
    if out.get("type") == "navigate" and "url" not in out and "target" in out:
        out["url"] = out["target"]
    if out.get("type") == "wait" and "timeout" not in out and "ms" in out:
        out["timeout"] = out["ms"]
    if out.get("type") == "assert" and isinstance(out.get("expected"), dict):
        expected = out["expected"]
        out.setdefault("attribute", expected.get("attribute"))
        out["expected"] = expected.get("value")
        out.setdefault("assertType", "attribute")
    return out


def parse_action(data: Any) -> Action:
    """Validate a raw descriptor into its typed variant."""
    if not isinstance(data, dict):
        raise ActionValidationError(f"Action must be an object, got {type(data).__name__}")
    if not data.get("type"):
        raise ActionValidationError("Action missing required field: type", data)
    if not isinstance(data["type"], str):
        raise ActionValidationError("Action type must be a string", data)
    normalized = _normalize(data)
    if normalized["type"] not in ACTION_TYPES:
        raise UnknownActionError(str(normalized["type"]))
    try:
        return _action_adapter.validate_python(normalized)
    except ValidationError as exc:
        raise ActionValidationError(f"Invalid {normalized['type']} action: {exc}", data) from exc


def is_terminal(action: Action) -> bool:
    return isinstance(action, CompleteAction)


class ActionExecutor:
    """Executes one action descriptor against a single Playwright page."""

    def __init__(self, page: Any, logger: Optional[logging.Logger] = None):
        self.page = page
        self.logger = logger or logging.getLogger("swarm.actions")

    async def execute(self, action: Action) -> Dict[str, Any]:
        """Run the action and return a uniform ``{success, ...details}`` mapping."""
        self.logger.info("Executing action: %s", action.type)
        try:
            return await self._dispatch(action)
        except PlaywrightTimeout as e:
            selector = getattr(action, "selector", None)
            if not selector:
                raise
            raise ElementNotFoundError(f"Timed out waiting for element: {selector}", selector) from e

    async def _dispatch(self, action: Action) -> Dict[str, Any]:
        page = self.page

        if isinstance(action, NavigateAction):
            await page.goto(action.url, wait_until=action.wait_until)
            return {"success": True, "url": page.url}

        elif isinstance(action, ClickAction):
            await page.click(
                action.selector,
                button=action.button,
                click_count=action.click_count,
                delay=action.delay,
            )
            return {"success": True, "selector": action.selector}

        elif isinstance(action, FillAction):
            await page.fill(action.selector, action.value)
            preview = action.value if len(action.value) <= 50 else action.value[:50] + "..."
            return {"success": True, "selector": action.selector, "value": preview}

        elif isinstance(action, SelectAction):
            selected = await page.select_option(action.selector, action.values)
            return {"success": True, "selector": action.selector, "selectedValues": selected}

        elif isinstance(action, KeypressAction):
            if action.selector:
                await page.locator(action.selector).press(action.key)
            else:
                await page.keyboard.press(action.key)
            return {"success": True, "key": action.key}

        elif isinstance(action, TypeTextAction):
            await page.keyboard.type(action.text, delay=action.delay)
            return {"success": True, "length": len(action.text)}

        elif isinstance(action, WaitAction):
            if action.selector:
                await page.wait_for_selector(action.selector, timeout=action.timeout, state=action.state)
                return {"success": True, "selector": action.selector, "state": action.state}
            await page.wait_for_timeout(action.timeout)
            return {"success": True, "timeout": action.timeout}

        elif isinstance(action, ScrollAction):
            if action.selector:
                await page.locator(action.selector).scroll_into_view_if_needed()
                return {"success": True, "selector": action.selector}
            if action.direction:
                delta = action.pixels if action.direction == "down" else -action.pixels
                await page.mouse.wheel(0, delta)
                return {"success": True, "scrolled": action.direction, "pixels": action.pixels}
            await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")
            return {"success": True, "scrolled": "to bottom"}

        elif isinstance(action, HoverAction):
            await page.hover(action.selector, timeout=action.timeout)
            return {"success": True, "selector": action.selector}

        elif isinstance(action, AssertAction):
            return await self._assert(action)

        elif isinstance(action, ScreenshotAction):
            shot = await page.screenshot(full_page=action.full_page, type="png")
            return {"success": True, "contentType": "image/png", "bytes": len(shot)}

        elif isinstance(action, CompleteAction):
            return {"success": action.success, "reason": action.reason}

        raise UnknownActionError(getattr(action, "type", type(action).__name__))

    async def _assert(self, action: AssertAction) -> Dict[str, Any]:
        locator = self.page.locator(action.selector)
        expected = action.expected

        if action.assert_type == "text":
            actual = await locator.text_content()
        elif action.assert_type == "value":
            actual = await locator.input_value()
        elif action.assert_type == "visible":
            actual = await locator.is_visible()
            expected = True if expected is None else _as_bool(expected)
        elif action.assert_type == "count":
            actual = await locator.count()
            expected = int(expected)
        else:
            if not action.attribute:
                raise ActionValidationError("attribute assertion requires 'attribute'", action.to_descriptor())
            actual = await locator.get_attribute(action.attribute)

        if action.assert_type in ("visible", "count"):
            passed = actual == expected
        else:
            expected = str(expected)
            passed = actual is not None and (actual == expected or expected in actual)

        if not passed:
            raise AssertionFailedError(expected, actual, action.selector)

        return {
            "success": True,
            "assertType": action.assert_type,
            "expected": expected,
            "actual": actual,
        }


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no", "")
    return bool(value)
