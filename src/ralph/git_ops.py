"""Thin wrappers over the git CLI used by the run loop and worktree manager."""

from __future__ import annotations

import subprocess
from pathlib import Path


def _git(*args: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing output instead of letting it reach the terminal."""
    try:
        return subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(["git", *args], 127, "", "git not found")


def repo_root(cwd: Path | None = None) -> Path | None:
    r = _git("rev-parse", "--show-toplevel", cwd=cwd)
    if r.returncode != 0 or not r.stdout.strip():
        return None
    return Path(r.stdout.strip())


def current_branch(cwd: Path | None = None) -> str:
    r = _git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
    branch = r.stdout.strip() if r.returncode == 0 else ""
    # An unborn HEAD reports "HEAD"; fall back to the symbolic ref.
    if not branch or branch == "HEAD":
        sym = _git("symbolic-ref", "--short", "HEAD", cwd=cwd)
        branch = sym.stdout.strip() if sym.returncode == 0 else ""
    return branch or "main"


def has_commits(cwd: Path | None = None) -> bool:
    r = _git("rev-parse", "--verify", "--quiet", "HEAD", cwd=cwd)
    return r.returncode == 0


def branch_exists(name: str, cwd: Path | None = None) -> bool:
    r = _git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", cwd=cwd)
    return r.returncode == 0


def worktree_prune(cwd: Path | None = None) -> None:
    _git("worktree", "prune", cwd=cwd)


def worktree_add(worktree_dir: Path, branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Check out the existing *branch* into a new worktree."""
    return _git("worktree", "add", str(worktree_dir), branch, cwd=cwd)


def worktree_add_new_branch(
    worktree_dir: Path, branch: str, cwd: Path | None = None
) -> subprocess.CompletedProcess[str]:
    """Create *branch* from HEAD and check it out into a new worktree."""
    return _git("worktree", "add", "-b", branch, str(worktree_dir), "HEAD", cwd=cwd)


def worktree_remove(worktree_dir: Path, cwd: Path | None = None) -> bool:
    r = _git("worktree", "remove", "--force", str(worktree_dir), cwd=cwd)
    return r.returncode == 0


def worktree_list(cwd: Path | None = None) -> list[tuple[Path, str]]:
    """Return ``(path, branch)`` for every worktree; detached ones have branch ``""``."""
    r = _git("worktree", "list", "--porcelain", cwd=cwd)
    if r.returncode != 0:
        return []
    entries: list[tuple[Path, str]] = []
    path: Path | None = None
    branch = ""
    for line in r.stdout.splitlines() + [""]:
        if line.startswith("worktree "):
            path = Path(line.split(" ", 1)[1])
            branch = ""
        elif line.startswith("branch "):
            branch = line.split(" ", 1)[1].removeprefix("refs/heads/")
        elif not line.strip() and path is not None:
            entries.append((path, branch))
            path = None
    return entries


CONFLICT_CODES = {"UU", "AA", "DD", "AU", "UA", "DU", "UD"}


def merge(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Merge *branch* into the checked-out branch with the default message."""
    return _git("merge", "--no-edit", branch, cwd=cwd)


def merge_abort(cwd: Path | None = None) -> bool:
    r = _git("merge", "--abort", cwd=cwd)
    return r.returncode == 0


def conflicted_files(cwd: Path | None = None) -> list[str]:
    """Paths left unmerged by a failed merge, from ``git status --porcelain``."""
    r = _git("status", "--porcelain", cwd=cwd)
    if r.returncode != 0:
        return []
    return [line[3:].strip() for line in r.stdout.splitlines() if line[:2] in CONFLICT_CODES]
