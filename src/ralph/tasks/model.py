"""Task data model shared by the store, recovery, grouping and executor code."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

CATEGORIES: tuple[str, ...] = ("ui", "feature", "bugfix", "setup", "development", "testing", "docs")
DEFAULT_CATEGORY = "feature"


@dataclass
class Task:
    category: str
    description: str
    steps: list[str] = field(default_factory=list)
    passes: bool = False
    branch: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "category": self.category,
            "description": self.description,
            "steps": list(self.steps),
            "passes": self.passes,
        }
        if self.branch:
            data["branch"] = self.branch
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Build a task from an already-validated mapping."""
        branch = data.get("branch")
        return cls(
            category=data["category"],
            description=data["description"],
            steps=list(data.get("steps") or []),
            passes=bool(data.get("passes", False)),
            branch=branch if isinstance(branch, str) else "",
        )

    def copy(self) -> Task:
        return Task(
            category=self.category,
            description=self.description,
            steps=list(self.steps),
            passes=self.passes,
            branch=self.branch,
        )


@dataclass
class Counts:
    total: int = 0
    complete: int = 0

    @property
    def incomplete(self) -> int:
        return self.total - self.complete

    def __str__(self) -> str:
        return f"{self.complete}/{self.total} complete"
