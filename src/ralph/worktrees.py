"""Per-branch git worktrees and the task workspace materialized inside them."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from ralph import git_ops, log
from ralph.errors import WorktreeError
from ralph.io_utils import write_text
from ralph.tasks.model import Task
from ralph.tasks.store import write_filtered_view

RALPH_DIR = ".ralph"
VIEW_FILE = "prd-tasks.json"
PROGRESS_FILE = "progress.txt"
PROMPT_FILE = "prompt.md"

DEFAULT_PROGRESS = "# Progress Log\n"


@dataclass
class WorkspacePaths:
    """Where one iteration runs and which files the agent is pointed at."""

    exec_dir: Path
    view_path: Path
    progress_path: Path
    branch: str = ""

    @classmethod
    def for_dir(cls, exec_dir: Path, branch: str = "") -> WorkspacePaths:
        control = exec_dir / RALPH_DIR
        return cls(
            exec_dir=exec_dir,
            view_path=control / VIEW_FILE,
            progress_path=control / PROGRESS_FILE,
            branch=branch,
        )


def worktree_name(project: str, branch: str) -> str:
    """Directory name for *branch*; prefixed so several projects can share a root."""
    return f"{project}_{branch.replace('/', '-')}"


class WorktreeManager:
    def __init__(
        self,
        *,
        repo_dir: Path,
        worktrees_root: Path,
        project_name: str,
        prompt_text: str = "",
    ) -> None:
        self.repo_dir = repo_dir
        self.worktrees_root = worktrees_root
        self.project_name = project_name
        self.prompt_text = prompt_text

    def path_for(self, branch: str) -> Path:
        return self.worktrees_root / worktree_name(self.project_name, branch)

    def check_preconditions(self) -> str | None:
        """Return why worktrees cannot be used right now, or ``None`` if they can."""
        if not self.worktrees_root.is_dir():
            return f"worktrees directory {self.worktrees_root} does not exist or is not mounted"
        if not git_ops.has_commits(cwd=self.repo_dir):
            return "repository has no commits yet; commit once before using branch tasks"
        return None

    def ensure(self, branch: str) -> Path:
        """Return the worktree directory for *branch*, creating it if needed."""
        path = self.path_for(branch)
        if path.is_dir():
            log.debug(f"Reusing worktree {path}")
            return path

        git_ops.worktree_prune(cwd=self.repo_dir)
        if git_ops.branch_exists(branch, cwd=self.repo_dir):
            log.info(f"Creating worktree for existing branch {branch} at {path}")
            r = git_ops.worktree_add(path, branch, cwd=self.repo_dir)
        else:
            log.info(f"Creating branch {branch} from HEAD with worktree at {path}")
            r = git_ops.worktree_add_new_branch(path, branch, cwd=self.repo_dir)
        if r.returncode != 0:
            detail = (r.stderr or r.stdout).strip().splitlines()
            raise WorktreeError(
                f"git worktree add failed for {branch}: {detail[0] if detail else r.returncode}"
            )
        return path

    def materialize_workspace(
        self, worktree: Path, branch: str, tasks: list[Task], *, source_dir: Path
    ) -> WorkspacePaths:
        """Write the branch-scoped task view, progress log and prompt into *worktree*.

        File references in *tasks* are resolved against *source_dir* (the primary
        ``.ralph`` directory). The progress log is only created when absent so
        notes survive across iterations.
        """
        ws = WorkspacePaths.for_dir(worktree, branch=branch)
        write_filtered_view(ws.view_path, tasks, source_dir)
        if not ws.progress_path.is_file():
            write_text(ws.progress_path, DEFAULT_PROGRESS)
        if self.prompt_text:
            write_text(ws.view_path.parent / PROMPT_FILE, self.prompt_text)
        return ws

    def prepare(self, branch: str, tasks: list[Task], *, source_dir: Path) -> WorkspacePaths | None:
        """Get a ready workspace for *branch*, or ``None`` to skip it this iteration."""
        problem = self.check_preconditions()
        if problem:
            log.warn(f"Skipping branch group '{branch}': {problem}")
            return None
        try:
            worktree = self.ensure(branch)
        except WorktreeError as exc:
            log.warn(f"Skipping branch group '{branch}': {exc}")
            return None
        return self.materialize_workspace(worktree, branch, tasks, source_dir=source_dir)

    def list_worktrees(self) -> list[tuple[Path, str]]:
        """Worktrees of this project that live under the worktrees root."""
        prefix = f"{self.project_name}_"
        return [
            (path, branch)
            for path, branch in git_ops.worktree_list(cwd=self.repo_dir)
            if path.parent.resolve() == self.worktrees_root.resolve() and path.name.startswith(prefix)
        ]

    def remove(self, branch: str) -> bool:
        path = self.path_for(branch)
        if not path.exists():
            return False
        if not git_ops.worktree_remove(path, cwd=self.repo_dir):
            shutil.rmtree(path, ignore_errors=True)
            git_ops.worktree_prune(cwd=self.repo_dir)
        return True
