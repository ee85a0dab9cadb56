"""Typed objects for queued browser tests, agents and their recorded results."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class TestStatus(str, Enum):
    """Lifecycle of a queued test case."""

    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TEST_STATUSES = {TestStatus.COMPLETED, TestStatus.FAILED, TestStatus.CANCELLED}


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    UNHEALTHY = "unhealthy"
    OFFLINE = "offline"


class ResultStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    SCRIPTED = "scripted"
    AI = "ai"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Optional[float]) -> Optional[datetime]:
    """Convert a stored epoch timestamp to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


@dataclass
class TestCase:
    """One queued browser test, either a fixed action script or a freeform goal."""

    __test__ = False

    id: str
    name: str
    url: str
    actions: List[Dict[str, Any]] = field(default_factory=list)
    ai_instruction: Optional[str] = None
    description: Optional[str] = None
    status: TestStatus = TestStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    priority: int = 5
    tags: Set[str] = field(default_factory=set)
    metadata: Dict[str, Any] = field(default_factory=dict)
    assigned_agent_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def _legacy_ai_action(self) -> Optional[Dict[str, Any]]:
        if len(self.actions) == 1 and self.actions[0].get("type") == "ai_autonomous":
            return self.actions[0]
        return None

    @property
    def mode(self) -> ExecutionMode:
        """AI mode when the case carries a goal instead of a script."""
        if self.ai_instruction or self.metadata.get("mode") == ExecutionMode.AI.value:
            return ExecutionMode.AI
        if self._legacy_ai_action() is not None:
            return ExecutionMode.AI
        return ExecutionMode.SCRIPTED

    @property
    def goal(self) -> str:
        """Natural-language objective handed to the decision loop."""
        if self.ai_instruction:
            return self.ai_instruction
        legacy = self._legacy_ai_action()
        if legacy and legacy.get("description"):
            return str(legacy["description"])
        return self.description or self.name

    def max_steps(self, default: int = 50) -> int:
        """Step budget from metadata (or the legacy action), falling back to ``default``."""
        raw = self.metadata.get("max_steps")
        if raw is None:
            legacy = self._legacy_ai_action()
            raw = legacy.get("max_steps") if legacy else None
        try:
            value = int(raw) if raw is not None else default
        except (TypeError, ValueError):
            return default
        return value if value > 0 else default

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TEST_STATUSES

    @property
    def retries_left(self) -> int:
        return max(0, self.max_retries - self.retry_count)


@dataclass
class AgentIdentity:
    """A registered worker and its heartbeat/counter state."""

    id: str
    name: str
    status: AgentStatus = AgentStatus.IDLE
    browser_type: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    current_test_id: Optional[str] = None
    total_tests_run: int = 0
    successful_tests: int = 0
    failed_tests: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def name_for(agent_id: str) -> str:
        return f"agent-{agent_id[:8]}"

    @classmethod
    def generate(cls, browser_type: Optional[str] = None, **metadata: Any) -> "AgentIdentity":
        agent_id = str(uuid.uuid4())
        return cls(
            id=agent_id,
            name=cls.name_for(agent_id),
            browser_type=browser_type,
            metadata=dict(metadata),
        )


@dataclass
class TestStep:
    """One action attempt inside a test result."""

    __test__ = False

    test_result_id: str
    step_number: int
    action_type: str
    action_data: Dict[str, Any]
    status: StepStatus = StepStatus.RUNNING
    id: Optional[str] = None
    screenshot_before: Optional[str] = None
    screenshot_after: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


@dataclass
class TestResult:
    """Outcome of one claimed-and-executed attempt of a test case."""

    __test__ = False

    id: str
    test_case_id: str
    agent_id: str
    status: ResultStatus = ResultStatus.RUNNING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    steps: List[TestStep] = field(default_factory=list)

    @property
    def step_numbers(self) -> List[int]:
        return [s.step_number for s in self.steps]

    @property
    def running_steps(self) -> List[TestStep]:
        return [s for s in self.steps if s.status == StepStatus.RUNNING]


@dataclass
class QueueStats:
    """Aggregate counts reported by the health monitor."""

    agents: Dict[str, int] = field(default_factory=dict)
    tests: Dict[str, int] = field(default_factory=dict)
    total_tests_run: int = 0
    successful_tests: int = 0
    failed_tests: int = 0

    @property
    def total_agents(self) -> int:
        return sum(self.agents.values())
