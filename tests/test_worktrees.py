"""Tests for ralph.worktrees and ralph.git_ops against real temporary repos."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from ralph import git_ops
from ralph.errors import WorktreeError
from ralph.io_utils import read_text, write_text
from ralph.worktrees import DEFAULT_PROGRESS, WorktreeManager, worktree_name


def _manager(repo: Path, root: Path, prompt: str = "Do the work") -> WorktreeManager:
    return WorktreeManager(repo_dir=repo, worktrees_root=root, project_name="proj", prompt_text=prompt)


class TestGitOps:
    def test_current_branch(self, git_repo: Path):
        assert git_ops.current_branch(cwd=git_repo) == "main"

    def test_current_branch_unborn_head(self, tmp_path: Path):
        subprocess.run(["git", "init", "-b", "trunk"], cwd=tmp_path, capture_output=True, check=True)
        assert git_ops.current_branch(cwd=tmp_path) == "trunk"
        assert not git_ops.has_commits(cwd=tmp_path)

    def test_branch_exists(self, git_repo: Path):
        assert git_ops.branch_exists("main", cwd=git_repo)
        assert not git_ops.branch_exists("feat/none", cwd=git_repo)

    def test_repo_root(self, git_repo: Path):
        assert git_ops.repo_root(cwd=git_repo).resolve() == git_repo.resolve()

    def test_merge_conflict_detected_and_aborted(self, git_repo: Path):
        def commit(content: str) -> None:
            write_text(git_repo / "README.md", content)
            subprocess.run(["git", "commit", "-am", "update readme"], cwd=git_repo, capture_output=True, check=True)

        subprocess.run(["git", "checkout", "-b", "feat/a"], cwd=git_repo, capture_output=True, check=True)
        commit("# A")
        subprocess.run(["git", "checkout", "main"], cwd=git_repo, capture_output=True, check=True)
        commit("# Main")

        assert git_ops.merge("feat/a", cwd=git_repo).returncode != 0
        assert git_ops.conflicted_files(cwd=git_repo) == ["README.md"]
        assert git_ops.merge_abort(cwd=git_repo)
        assert git_ops.conflicted_files(cwd=git_repo) == []
        assert read_text(git_repo / "README.md") == "# Main"

    def test_clean_merge(self, git_repo: Path):
        subprocess.run(["git", "checkout", "-b", "feat/b"], cwd=git_repo, capture_output=True, check=True)
        write_text(git_repo / "b.txt", "b")
        subprocess.run(["git", "add", "b.txt"], cwd=git_repo, capture_output=True, check=True)
        subprocess.run(["git", "commit", "-m", "b"], cwd=git_repo, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "main"], cwd=git_repo, capture_output=True, check=True)

        assert git_ops.merge("feat/b", cwd=git_repo).returncode == 0
        assert (git_repo / "b.txt").is_file()

    def test_missing_git_binary(self):
        with patch("ralph.git_ops.subprocess.run", side_effect=FileNotFoundError):
            assert not git_ops.has_commits()
            assert git_ops.worktree_list() == []


class TestWorktreeName:
    def test_slashes_replaced_and_project_prefixed(self):
        assert worktree_name("shop", "feat/cart/v2") == "shop_feat-cart-v2"

    def test_deterministic(self):
        assert worktree_name("a", "x") == worktree_name("a", "x")


class TestPreconditions:
    def test_missing_root(self, git_repo: Path, tmp_path: Path):
        problem = _manager(git_repo, tmp_path / "nope").check_preconditions()
        assert problem and "does not exist" in problem

    def test_no_commits(self, tmp_path: Path):
        repo = tmp_path / "empty"
        repo.mkdir()
        subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
        root = tmp_path / "wt"
        root.mkdir()
        problem = _manager(repo, root).check_preconditions()
        assert problem and "no commits" in problem

    def test_ok(self, git_repo: Path, tmp_path: Path):
        root = tmp_path / "wt"
        root.mkdir()
        assert _manager(git_repo, root).check_preconditions() is None


class TestEnsure:
    def test_creates_new_branch_from_head(self, git_repo: Path, tmp_path: Path):
        root = tmp_path / "wt"
        root.mkdir()
        path = _manager(git_repo, root).ensure("feat/x")
        assert path == root / "proj_feat-x"
        assert (path / "README.md").is_file()
        assert git_ops.branch_exists("feat/x", cwd=git_repo)
        assert git_ops.current_branch(cwd=path) == "feat/x"

    def test_attaches_existing_branch(self, git_repo: Path, tmp_path: Path):
        subprocess.run(["git", "branch", "feat/y"], cwd=git_repo, capture_output=True, check=True)
        root = tmp_path / "wt"
        root.mkdir()
        path = _manager(git_repo, root).ensure("feat/y")
        assert git_ops.current_branch(cwd=path) == "feat/y"

    def test_reuses_existing_directory(self, git_repo: Path, tmp_path: Path):
        root = tmp_path / "wt"
        root.mkdir()
        manager = _manager(git_repo, root)
        first = manager.ensure("feat/x")
        write_text(first / "work.txt", "in progress")
        assert manager.ensure("feat/x") == first
        assert read_text(first / "work.txt") == "in progress"

    def test_git_failure_raises(self, git_repo: Path, tmp_path: Path):
        root = tmp_path / "wt"
        root.mkdir()
        # "main" is checked out in the primary workspace, so git refuses.
        with pytest.raises(WorktreeError, match="git worktree add failed"):
            _manager(git_repo, root).ensure("main")


class TestMaterializeAndPrepare:
    def test_prepare_writes_workspace(self, git_repo: Path, tmp_path: Path, make_task):
        root = tmp_path / "wt"
        root.mkdir()
        source = git_repo / ".ralph"
        write_text(source / "design.md", "Use a modal")
        manager = _manager(git_repo, root, prompt="Resolved prompt")

        ws = manager.prepare("feat/ui", [make_task("Build dialog: @{design.md}")], source_dir=source)

        assert ws is not None
        assert ws.branch == "feat/ui"
        assert ws.exec_dir == root / "proj_feat-ui"
        view = json.loads(read_text(ws.view_path))
        assert view[0]["description"] == "Build dialog: Use a modal"
        assert read_text(ws.progress_path) == DEFAULT_PROGRESS
        assert read_text(ws.exec_dir / ".ralph" / "prompt.md") == "Resolved prompt"

    def test_progress_log_preserved_across_iterations(self, git_repo: Path, tmp_path: Path, make_task):
        root = tmp_path / "wt"
        root.mkdir()
        manager = _manager(git_repo, root)
        ws = manager.prepare("feat/a", [make_task("A")], source_dir=git_repo)
        write_text(ws.progress_path, "# Progress Log\n- did half of A\n")
        again = manager.prepare("feat/a", [make_task("A")], source_dir=git_repo)
        assert read_text(again.progress_path).endswith("did half of A\n")

    def test_reused_worktree_does_not_list_worktrees(self, git_repo: Path, tmp_path: Path, make_task):
        root = tmp_path / "wt"
        root.mkdir()
        manager = _manager(git_repo, root)
        manager.ensure("feat/a")
        with patch("ralph.worktrees.git_ops.worktree_list") as listing:
            ws = manager.prepare("feat/a", [make_task("A")], source_dir=git_repo)
        assert ws.branch == "feat/a"
        listing.assert_not_called()

    def test_prepare_returns_none_when_root_missing(self, git_repo: Path, tmp_path: Path, make_task):
        manager = _manager(git_repo, tmp_path / "not-mounted")
        assert manager.prepare("feat/a", [make_task("A")], source_dir=git_repo) is None

    def test_prepare_returns_none_on_git_failure(self, git_repo: Path, tmp_path: Path, make_task):
        root = tmp_path / "wt"
        root.mkdir()
        assert _manager(git_repo, root).prepare("main", [make_task("A")], source_dir=git_repo) is None


class TestListAndRemove:
    def test_list_and_remove(self, git_repo: Path, tmp_path: Path):
        root = tmp_path / "wt"
        root.mkdir()
        manager = _manager(git_repo, root)
        manager.ensure("feat/a")
        manager.ensure("feat/b")

        listed = {branch: path.name for path, branch in manager.list_worktrees()}
        assert listed == {"feat/a": "proj_feat-a", "feat/b": "proj_feat-b"}

        assert manager.remove("feat/a")
        assert not (root / "proj_feat-a").exists()
        assert [b for _p, b in manager.list_worktrees()] == ["feat/b"]
        # The branch itself survives.
        assert git_ops.branch_exists("feat/a", cwd=git_repo)

    def test_remove_unknown(self, git_repo: Path, tmp_path: Path):
        assert not _manager(git_repo, tmp_path).remove("feat/none")
