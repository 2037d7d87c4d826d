"""Shared fixtures for ralph tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use ralph.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

from ralph import log
from ralph.io_utils import write_text
from ralph.tasks.model import Task


@pytest.fixture(autouse=True)
def _quiet_debug():
    """Keep the module-level verbose flag from leaking between tests."""
    log.set_verbose(False)
    yield
    log.set_verbose(False)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo for testing."""
    repo = tmp_path / "proj"
    repo.mkdir()
    subprocess.run(["git", "init", "-b", "main"], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=repo, capture_output=True)
    subprocess.run(["git", "config", "user.email", "test@test"], cwd=repo, capture_output=True)
    write_text(repo / "README.md", "# Test")
    subprocess.run(["git", "add", "README.md"], cwd=repo, capture_output=True)
    subprocess.run(["git", "commit", "-m", "Initial"], cwd=repo, capture_output=True)
    return repo


def _make_task(
    description: str,
    *,
    category: str = "feature",
    passes: bool = False,
    branch: str = "",
    steps: list[str] | None = None,
) -> Task:
    return Task(
        category=category,
        description=description,
        steps=steps if steps is not None else [f"Check {description}"],
        passes=passes,
        branch=branch,
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def write_store():
    """Write a list of tasks (or raw content) as a JSON store file."""

    def _write(path: Path, tasks: list[Task] | object) -> Path:
        if isinstance(tasks, list) and all(isinstance(t, Task) for t in tasks):
            content = [t.to_dict() for t in tasks]
        else:
            content = tasks
        write_text(path, json.dumps(content, indent=2) + "\n")
        return path

    return _write


@pytest.fixture
def ralph_project(git_repo: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An initialized project: ``.ralph/`` with config, prompt, store and progress log."""
    ralph_dir = git_repo / ".ralph"
    write_text(
        ralph_dir / "config.json",
        json.dumps(
            {
                "language": "python",
                "checkCommand": "mypy .",
                "testCommand": "pytest",
                "cliProvider": "claude",
            }
        ),
    )
    write_text(ralph_dir / "prompt.md", "Work on $language. Check with $checkCommand.\n")
    write_text(ralph_dir / "prd.json", "[]\n")
    write_text(ralph_dir / "progress.txt", "# Progress Log\n")
    worktrees = tmp_path / "worktrees"
    worktrees.mkdir()
    monkeypatch.setenv("RALPH_WORKTREES_DIR", str(worktrees))
    monkeypatch.setenv("RALPH_SANDBOXED", "1")
    monkeypatch.delenv("RALPH_DEBUG", raising=False)
    return git_repo
