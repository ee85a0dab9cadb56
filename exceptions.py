"""Custom exception hierarchy for the agent swarm."""
from __future__ import annotations

from typing import Any, Optional


class SwarmError(Exception):
    """Base exception for all swarm errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Browser-related exceptions
class BrowserError(SwarmError):
    """Base exception for browser automation errors."""

    pass


class NavigationError(BrowserError):
    """Raised when page navigation fails."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        details = {}
        if url:
            details["url"] = url
        if timeout:
            details["timeout"] = timeout
        super().__init__(message, details)
        self.url = url
        self.timeout = timeout


class ElementNotFoundError(BrowserError):
    """Raised when no element matches a selector."""

    def __init__(self, message: str, selector: Optional[str] = None):
        details = {"selector": selector} if selector else {}
        super().__init__(message, details)
        self.selector = selector


class BrowserNotStartedError(BrowserError):
    """Raised when attempting to use browser before starting."""

    def __init__(self):
        super().__init__("Browser has not been started. Call start() first.")


class ScreenshotError(BrowserError):
    """Raised when screenshot capture fails."""

    pass


# Action exceptions
class ActionError(SwarmError):
    """Base exception for action descriptor problems."""

    pass


class ActionValidationError(ActionError):
    """Raised when an action descriptor is missing fields or has a bad type."""

    def __init__(self, message: str, action: Optional[dict[str, Any]] = None):
        details = {"action": action} if action else {}
        super().__init__(message, details)
        self.action = action


class UnknownActionError(ActionError):
    """Raised when an action type has no executor."""

    def __init__(self, action_type: str):
        super().__init__(f"Unknown action type: {action_type}", {"type": action_type})
        self.action_type = action_type


class AssertionFailedError(ActionError):
    """Raised when an assert action does not hold."""

    def __init__(self, expected: Any, actual: Any, selector: Optional[str] = None):
        super().__init__(
            f'Assertion failed: Expected "{expected}" but got "{actual}"',
            {"selector": selector} if selector else None,
        )
        self.expected = expected
        self.actual = actual
        self.selector = selector


# LLM-related exceptions
class LLMError(SwarmError):
    """Base exception for LLM/model-related errors."""

    pass


class LLMConnectionError(LLMError):
    """Raised when unable to connect to the LLM service."""

    def __init__(self, message: str, base_url: Optional[str] = None):
        details = {"base_url": base_url} if base_url else {}
        super().__init__(message, details)
        self.base_url = base_url


class LLMResponseError(LLMError):
    """Raised when LLM returns an empty or unusable response."""

    def __init__(self, message: str, response: Optional[str] = None):
        details = {"response_preview": response[:200] if response else None}
        super().__init__(message, details)
        self.response = response


class ActionParseError(LLMError):
    """Raised when unable to parse an action from model response."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        details = {"raw_response": raw_response[:500] if raw_response else None}
        super().__init__(message, details)
        self.raw_response = raw_response


# Job store exceptions
class JobStoreError(SwarmError):
    """Raised when the job store rejects or fails an operation."""

    pass


class TransientStoreError(JobStoreError):
    """Raised when the store is temporarily unavailable (locked, busy, disconnected)."""

    pass


class StepSequenceError(JobStoreError):
    """Raised when a step would break 1..N numbering or overlap a running step."""

    def __init__(self, message: str, test_result_id: str, step_number: int):
        super().__init__(message, {"test_result_id": test_result_id, "step_number": step_number})
        self.test_result_id = test_result_id
        self.step_number = step_number


class TestNotFoundError(JobStoreError):
    """Raised when a test case id does not exist."""

    __test__ = False

    def __init__(self, test_id: str):
        super().__init__(f"Test case not found: {test_id}", {"test_id": test_id})
        self.test_id = test_id


class StorageError(SwarmError):
    """Raised when screenshot storage fails."""

    pass


# Test definition exceptions
class TestDefinitionError(SwarmError):
    """Base exception for test definition/loading errors."""

    __test__ = False


class TaskLoadError(TestDefinitionError):
    """Raised when a task file cannot be loaded or parsed."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        details = {"file_path": file_path} if file_path else {}
        super().__init__(message, details)
        self.file_path = file_path


class TaskValidationError(TestDefinitionError):
    """Raised when a task definition is invalid."""

    def __init__(self, message: str, task_id: Optional[str] = None, field: Optional[str] = None):
        details = {}
        if task_id:
            details["task_id"] = task_id
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.task_id = task_id
        self.field = field


# Test execution exceptions
class TestExecutionError(SwarmError):
    """Base exception for test execution errors."""

    __test__ = False


class TestCancelledError(TestExecutionError):
    """Raised at a step boundary when the claimed test was cancelled out of band."""

    def __init__(self, test_id: str):
        super().__init__(f"Test was cancelled: {test_id}", {"test_id": test_id})
        self.test_id = test_id


# Configuration exceptions
class ConfigurationError(SwarmError):
    """Raised when configuration is invalid."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path
