"""Structural validation of task store content."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ralph.tasks.model import CATEGORIES, Task


@dataclass
class ValidationResult:
    valid: bool
    reasons: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)


def _item_reasons(item: Any, prefix: str) -> list[str]:
    if not isinstance(item, dict):
        return [f"{prefix} must be an object"]

    reasons: list[str] = []
    if not isinstance(item.get("category"), str):
        reasons.append(f"{prefix} missing or invalid 'category' field")

    description = item.get("description")
    if not isinstance(description, str) or not description:
        reasons.append(f"{prefix} missing or invalid 'description' field")

    steps = item.get("steps")
    if not isinstance(steps, list):
        reasons.append(f"{prefix} missing or invalid 'steps' field (must be array)")
    else:
        for j, step in enumerate(steps, start=1):
            if not isinstance(step, str):
                reasons.append(f"{prefix} step {j} must be a string")

    if not isinstance(item.get("passes"), bool):
        reasons.append(f"{prefix} missing or invalid 'passes' field (must be boolean)")

    branch = item.get("branch")
    if branch is not None and not isinstance(branch, str):
        reasons.append(f"{prefix} invalid 'branch' field (must be a string)")

    return reasons


def validate(content: Any) -> ValidationResult:
    """Check that *content* is an array of well-typed task objects.

    Only shape and primitive types are checked; category names are a business
    rule reported by :func:`check_categories`.
    """
    if not isinstance(content, list):
        return ValidationResult(valid=False, reasons=["Task store must be an array"])

    reasons: list[str] = []
    tasks: list[Task] = []
    for i, item in enumerate(content, start=1):
        item_reasons = _item_reasons(item, f"Item {i}:")
        if item_reasons:
            reasons.extend(item_reasons)
        else:
            tasks.append(Task.from_dict(item))

    if reasons:
        return ValidationResult(valid=False, reasons=reasons)
    return ValidationResult(valid=True, tasks=tasks)


def check_categories(tasks: list[Task]) -> list[str]:
    """Return one warning per task whose category is outside the allow-list."""
    return [
        f"Item {i}: unknown category '{task.category}'"
        for i, task in enumerate(tasks, start=1)
        if task.category not in CATEGORIES
    ]
