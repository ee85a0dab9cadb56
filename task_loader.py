"""Filesystem-backed loader for test case definitions to submit to the queue."""
from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import yaml

from actions import parse_action
from exceptions import ActionError, TaskLoadError, TaskValidationError
from job_types import ExecutionMode, TestCase

TASK_SUFFIXES = {".yaml", ".yml", ".json"}


def _as_set(value: Any) -> Set[str]:
    """Convert value to set of strings."""
    if value is None:
        return set()
    if isinstance(value, (list, set, tuple)):
        return {str(item) for item in value}
    if isinstance(value, str):
        return {value}
    raise TaskLoadError(f"Expected string, list, or set, got {type(value).__name__}")


def _int_field(data: Dict[str, Any], key: str, default: Optional[int], task_id: str) -> Optional[int]:
    raw = data.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise TaskValidationError(f"{key} must be an integer", task_id=task_id, field=key) from exc


def _parse_task(data: Dict[str, Any], fallback_name: str) -> TestCase:
    """Parse a dictionary into a pending TestCase."""
    if not isinstance(data, dict):
        raise TaskLoadError("Task payload must be a mapping")

    name = str(data.get("name") or fallback_name)
    url = data.get("url") or data.get("start_url")
    if not url:
        raise TaskValidationError("Task is missing a 'url' field", task_id=name, field="url")

    actions = data.get("actions") or []
    if not isinstance(actions, list) or not all(isinstance(a, dict) for a in actions):
        raise TaskValidationError("actions must be a list of mappings", task_id=name, field="actions")

    ai_instruction = data.get("ai_instruction") or data.get("goal") or data.get("objective")
    metadata = dict(data.get("metadata") or {})
    if data.get("mode"):
        metadata["mode"] = str(data["mode"])

    max_steps = _int_field(data, "max_steps", None, name)
    if max_steps is not None:
        if max_steps < 1:
            raise TaskValidationError("max_steps must be at least 1", task_id=name, field="max_steps")
        metadata["max_steps"] = max_steps

    max_retries = _int_field(data, "max_retries", 3, name)
    if max_retries < 0:
        raise TaskValidationError("max_retries cannot be negative", task_id=name, field="max_retries")

    # 1 = claimed first, 10 = last
    priority = min(10, max(1, _int_field(data, "priority", 5, name)))

    case = TestCase(
        id=str(data.get("id") or uuid.uuid4()),
        name=name,
        url=str(url),
        actions=actions,
        ai_instruction=str(ai_instruction) if ai_instruction else None,
        description=data.get("description"),
        max_retries=max_retries,
        priority=priority,
        tags=_as_set(data.get("tags")),
        metadata=metadata,
    )

    if case.mode == ExecutionMode.SCRIPTED:
        if not actions:
            raise TaskValidationError(
                "Task needs either an 'actions' list or an 'ai_instruction'", task_id=name, field="actions"
            )
        for index, action in enumerate(actions, start=1):
            try:
                parse_action(action)
            except ActionError as exc:
                raise TaskValidationError(
                    f"Action {index} is invalid: {exc.message}", task_id=name, field="actions"
                ) from exc
    return case


def load_task_file(path: Path) -> List[TestCase]:
    """Load one YAML or JSON file holding a single test or a list of tests."""
    try:
        raw = path.read_text(encoding="utf-8")
        if path.suffix.lower() in {".yml", ".yaml"}:
            data = yaml.safe_load(raw)
        else:
            data = json.loads(raw)
        if isinstance(data, dict) and isinstance(data.get("tests"), list):
            data = data["tests"]
        if isinstance(data, list):
            return [_parse_task(item, fallback_name=f"{path.stem}-{i}") for i, item in enumerate(data, start=1)]
        return [_parse_task(data, fallback_name=path.stem)]
    except (TaskLoadError, TaskValidationError):
        raise
    except Exception as exc:
        raise TaskLoadError(f"Failed to load task file: {exc}", file_path=str(path)) from exc


def discover_tasks(
    location: Path,
    include_tags: Optional[Set[str]] = None,
    exclude_tags: Optional[Set[str]] = None,
) -> List[TestCase]:
    """
    Load test definitions from a file or every YAML/JSON file in a directory.

    Args:
        location: A task file or a directory of task files
        include_tags: If provided, only include tests with at least one of these tags
        exclude_tags: If provided, exclude tests with any of these tags

    Returns:
        List of TestCase objects, in file order
    """
    location = location.expanduser().resolve()
    if not location.exists():
        raise TaskLoadError(f"Task path does not exist: {location}")

    if location.is_file():
        files = [location]
    else:
        files = sorted(p for p in location.iterdir() if p.suffix.lower() in TASK_SUFFIXES)

    include = {t.lower() for t in include_tags or ()}
    exclude = {t.lower() for t in exclude_tags or ()}
    found: List[TestCase] = []
    for path in files:
        for case in load_task_file(path):
            tags = {t.lower() for t in case.tags}
            if include and not include & tags:
                continue
            if exclude and exclude & tags:
                continue
            found.append(case)
    return found


def submit_tests(store: Any, cases: Iterable[TestCase]) -> List[str]:
    """Insert each test case as ``pending`` and return the stored ids."""
    ids = []
    for case in cases:
        ids.append(
            store.create_test(
                case.name,
                case.url,
                actions=case.actions,
                ai_instruction=case.ai_instruction,
                description=case.description,
                max_retries=case.max_retries,
                priority=case.priority,
                tags=case.tags,
                metadata=case.metadata,
                test_id=case.id,
            )
        )
    return ids
