"""Partition incomplete tasks by branch and pick the group to work on next."""

from __future__ import annotations

from dataclasses import dataclass

from ralph.resume import ResumeState
from ralph.tasks.model import Task

UNTAGGED = ""


def effective_branch(task: Task, base_branch: str) -> str:
    """Branch a task runs on; tasks tagged with the base branch run in place."""
    if not task.branch or task.branch == base_branch:
        return UNTAGGED
    return task.branch


def group_by_branch(
    tasks: list[Task],
    *,
    base_branch: str,
    category: str | None = None,
) -> dict[str, list[Task]]:
    """Group incomplete tasks by effective branch, keeping store order."""
    groups: dict[str, list[Task]] = {}
    for task in tasks:
        if task.passes:
            continue
        if category and task.category != category:
            continue
        groups.setdefault(effective_branch(task, base_branch), []).append(task)
    return groups


@dataclass
class TargetSelection:
    branch: str
    from_resume: bool = False
    clear_resume: bool = False

    @property
    def is_worktree(self) -> bool:
        return self.branch != UNTAGGED


def select_target(
    groups: dict[str, list[Task]],
    *,
    base_branch: str,
    resume: ResumeState | None = None,
) -> TargetSelection | None:
    """Choose the branch group for this iteration.

    A saved resume state names the target unless it points at the base branch
    or at a group with nothing left to do. Otherwise the group of the first
    incomplete task wins. Returns ``None`` when there is no incomplete work.
    """
    if resume is not None:
        if resume.current_branch == base_branch or resume.current_branch == UNTAGGED:
            if UNTAGGED in groups:
                return TargetSelection(UNTAGGED, from_resume=True, clear_resume=True)
        elif resume.current_branch in groups:
            return TargetSelection(resume.current_branch, from_resume=True)

    if not groups:
        return None
    first = next(iter(groups))
    return TargetSelection(first, clear_resume=resume is not None)
