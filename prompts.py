"""Prompts for the AI decision loop"""
from __future__ import annotations

from typing import Optional

from job_types import TestCase

ACTION_REFERENCE = """\
- navigate: {"type": "navigate", "url": "https://example.com"}
- click: {"type": "click", "selector": "button.submit", "description": "Click submit button"}
- fill: {"type": "fill", "selector": "input#email", "value": "test@example.com", "description": "Fill email"}
- select: {"type": "select", "selector": "select#country", "values": "NZ", "description": "Choose a country"}
- typeText: {"type": "typeText", "text": "HELLO", "description": "Type into the focused element"}
- keypress: {"type": "keypress", "key": "Enter", "description": "Press Enter"}
- wait: {"type": "wait", "timeout": 2000, "description": "Wait for page load"}
- scroll: {"type": "scroll", "direction": "down", "description": "Scroll down"}
- hover: {"type": "hover", "selector": "nav .menu", "description": "Open the menu"}
- assert: {"type": "assert", "selector": "div.success", "expected": "Success", "description": "Verify success message"}
- complete: {"type": "complete", "reason": "Test goal achieved", "success": true}"""


def get_system_prompt(test_case: TestCase, max_steps: int) -> str:
    """Generate the system prompt that opens every decision transcript."""
    description = test_case.description or "No description provided"
    return f"""You are an autonomous QA testing agent operating a real browser.

Test: "{test_case.name}"
Goal: {test_case.goal}
Website: {test_case.url}
Test Description: {description}

Your task is to:
1. Analyze the screenshot of the web page
2. Decide what action to take next to accomplish the test goal
3. Return ONE action at a time in JSON format

Available actions:
{ACTION_REFERENCE}

Rules:
1. Always respond with a SINGLE JSON action
2. Be specific with selectors (use IDs, classes, or unique attributes)
3. Add clear descriptions for each action
4. If you're stuck or can't proceed, use {{"type": "complete", "reason": "Unable to continue", "success": false}}
5. When the test goal is achieved, use {{"type": "complete", "reason": "Goal achieved", "success": true}}
6. Never claim success unless the page clearly shows the goal was reached
7. Try different approaches if something doesn't work
8. You have at most {max_steps} actions

The browser is already on the starting URL. Analyze and proceed step by step."""


def build_step_text(
    url: str,
    title: str,
    step_number: int,
    max_steps: int,
    last_error: Optional[str] = None,
) -> str:
    """Text that accompanies each screenshot in a user turn."""
    lines = [
        "Current page info:",
        f"URL: {url or 'Unknown'}",
        f"Title: {title or 'Unknown'}",
        f"Step: {step_number}/{max_steps}",
    ]
    if last_error:
        lines.append(f"The previous action failed: {last_error}")
    lines.append("")
    lines.append("What should I do next? Respond with ONE JSON action only.")
    return "\n".join(lines)
