"""CLI tests: every command runs and maps outcomes to exit codes."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from ralph import __version__
from ralph.cli import main
from ralph.controller import Outcome, RunMode, RunReport
from ralph.io_utils import read_text, write_text
from ralph.prompt import LANGUAGES
from ralph.resume import ResumeState, ResumeStore
from ralph.tasks.model import Counts
from ralph.worktrees import WorktreeManager


@pytest.fixture
def cli_runner():
    """Click CliRunner for invoking the CLI in-process."""
    return CliRunner()


@pytest.fixture
def in_project(ralph_project: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(ralph_project)
    return ralph_project


def _flat(output: str) -> str:
    """Console output with Rich line wrapping undone."""
    return " ".join(output.split())


def _report(outcome: Outcome) -> RunReport:
    return RunReport(outcome=outcome, iterations=1, counts=Counts(total=1, complete=1), elapsed=0.1)


def _commit(repo: Path, name: str, content: str) -> None:
    write_text(repo / name, content)
    subprocess.run(["git", "add", name], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", f"Update {name}"], cwd=repo, capture_output=True, check=True)


class TestHelpAndVersion:
    def test_help(self, cli_runner):
        r = cli_runner.invoke(main, ["--help"])
        assert r.exit_code == 0
        for command in ("run", "once", "status", "validate", "init", "branch"):
            assert command in r.output

    def test_short_help(self, cli_runner):
        assert cli_runner.invoke(main, ["-h"]).exit_code == 0

    def test_version(self, cli_runner):
        r = cli_runner.invoke(main, ["--version"])
        assert r.exit_code == 0
        assert __version__ in r.output


class TestInit:
    def test_creates_project_files(self, cli_runner, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        r = cli_runner.invoke(main, ["init", "--provider", "codex", "--language", "python"])
        assert r.exit_code == 0, r.output

        ralph_dir = tmp_path / ".ralph"
        config = json.loads(read_text(ralph_dir / "config.json"))
        assert config["cliProvider"] == "codex"
        assert config["checkCommand"] == LANGUAGES["python"].check_command
        assert "@.ralph/prd-tasks.json" in read_text(ralph_dir / "prompt.md")
        tasks = json.loads(read_text(ralph_dir / "prd.json"))
        assert tasks[0]["description"] == "Example: Project builds successfully"
        assert read_text(ralph_dir / "progress.txt") == "# Progress Log\n"

    def test_existing_files_kept_unless_forced(self, cli_runner, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        write_text(tmp_path / ".ralph" / "prd.json", "[]\n")

        r = cli_runner.invoke(main, ["init"])
        assert r.exit_code == 0
        assert "exists" in r.output
        assert read_text(tmp_path / ".ralph" / "prd.json") == "[]\n"

        r = cli_runner.invoke(main, ["init", "--force"])
        assert r.exit_code == 0
        assert "Example" in read_text(tmp_path / ".ralph" / "prd.json")

    def test_unknown_provider_rejected(self, cli_runner, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        r = cli_runner.invoke(main, ["init", "--provider", "cursor"])
        assert r.exit_code == 2


class TestValidate:
    def test_valid_store(self, cli_runner, in_project, write_store, make_task):
        write_store(in_project / ".ralph" / "prd.json", [make_task("A"), make_task("B", category="docs")])
        r = cli_runner.invoke(main, ["validate"])
        assert r.exit_code == 0, r.output
        assert "2 task(s), structure OK" in r.output

    def test_unknown_category_is_a_warning(self, cli_runner, in_project, write_store, make_task):
        write_store(in_project / ".ralph" / "prd.json", [make_task("A", category="chores")])
        r = cli_runner.invoke(main, ["validate"])
        assert r.exit_code == 0
        assert "chores" in r.output

    def test_invalid_structure(self, cli_runner, in_project, write_store):
        write_store(in_project / ".ralph" / "prd.json", {"features": []})
        r = cli_runner.invoke(main, ["validate"])
        assert r.exit_code == 1
        assert "not a valid task list" in _flat(r.output)

    def test_unparsable(self, cli_runner, in_project):
        write_text(in_project / ".ralph" / "prd.json", "[{")
        r = cli_runner.invoke(main, ["validate"])
        assert r.exit_code == 1
        assert "could not be parsed" in _flat(r.output)

    def test_missing_store(self, cli_runner, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        r = cli_runner.invoke(main, ["validate"])
        assert r.exit_code == 1
        assert "ralph init" in _flat(r.output)


class TestStatus:
    def test_counts_and_groups(self, cli_runner, in_project, write_store, make_task):
        write_store(
            in_project / ".ralph" / "prd.json",
            [make_task("A", passes=True), make_task("B", category="docs"), make_task("C", branch="feat/c")],
        )
        ResumeStore(in_project / ".ralph" / "run-state.json").save(ResumeState("main", "feat/c"))

        r = cli_runner.invoke(main, ["status"])

        assert r.exit_code == 0, r.output
        assert "1/3 complete, 2 remaining" in r.output
        assert "feat/c: 1 task(s)" in r.output
        assert "primary workspace, main" in r.output
        assert "resume on branch feat/c" in r.output

    def test_category_filter(self, cli_runner, in_project, write_store, make_task):
        write_store(in_project / ".ralph" / "prd.json", [make_task("A", passes=True), make_task("B", category="docs")])
        r = cli_runner.invoke(main, ["status", "-c", "docs"])
        assert r.exit_code == 0
        assert "0/1 complete" in r.output

    def test_unreadable_store(self, cli_runner, in_project):
        write_text(in_project / ".ralph" / "prd.json", "nope{")
        r = cli_runner.invoke(main, ["status"])
        assert r.exit_code == 1


class TestRun:
    def test_all_and_loop_are_exclusive(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["run", "--all", "--loop"])
        assert r.exit_code == 2
        assert "mutually exclusive" in r.output

    def test_iterations_must_be_positive(self, cli_runner, in_project):
        assert cli_runner.invoke(main, ["run", "0"]).exit_code == 2

    def test_unknown_category_rejected(self, cli_runner, in_project):
        assert cli_runner.invoke(main, ["run", "-c", "chores"]).exit_code == 2

    @pytest.mark.parametrize(
        ("args", "mode", "iterations"),
        [
            ([], RunMode.ALL, 0),
            (["--all"], RunMode.ALL, 0),
            (["3"], RunMode.FIXED, 3),
            (["--loop"], RunMode.LOOP, 0),
        ],
    )
    def test_mode_selection(self, cli_runner, in_project, args, mode, iterations):
        with patch("ralph.controller.RunController") as controller_cls:
            controller_cls.return_value.run.return_value = _report(Outcome.COMPLETE)
            r = cli_runner.invoke(main, ["run", *args, "-c", "docs", "-m", "opus"])

        assert r.exit_code == 0, r.output
        ctx = controller_cls.call_args.args[0]
        assert controller_cls.call_args.kwargs == {"mode": mode, "iterations": iterations, "category": "docs"}
        assert ctx.model == "opus"

    @pytest.mark.parametrize(
        ("outcome", "code"),
        [
            (Outcome.COMPLETE, 0),
            (Outcome.NO_PROGRESS, 0),
            (Outcome.ITERATIONS_EXHAUSTED, 0),
            (Outcome.FAILED, 1),
            (Outcome.INTERRUPTED, 130),
        ],
    )
    def test_exit_codes(self, cli_runner, in_project, outcome, code):
        with patch("ralph.controller.RunController") as controller_cls:
            controller_cls.return_value.run.return_value = _report(outcome)
            r = cli_runner.invoke(main, ["run"])
        assert r.exit_code == code

    def test_lock_released_after_run(self, cli_runner, in_project):
        with patch("ralph.controller.RunController") as controller_cls:
            controller_cls.return_value.run.return_value = _report(Outcome.COMPLETE)
            cli_runner.invoke(main, ["run"])
        assert not (in_project / ".ralph" / "run.lock").exists()

    def test_second_run_refused_while_lock_held(self, cli_runner, in_project):
        write_text(in_project / ".ralph" / "run.lock", "4242\n")
        with patch("ralph.lock.pid_alive", return_value=True), patch("ralph.controller.RunController") as controller_cls:
            r = cli_runner.invoke(main, ["run"])
        assert r.exit_code == 1
        assert "pid 4242" in _flat(r.output)
        controller_cls.assert_not_called()

    def test_uninitialized_project(self, cli_runner, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        r = cli_runner.invoke(main, ["run"])
        assert r.exit_code == 1
        assert "ralph init" in _flat(r.output)

    def test_once_emits_iteration_complete(self, cli_runner, in_project):
        notifier = MagicMock()
        with patch("ralph.config.Notifier", return_value=notifier), patch(
            "ralph.controller.RunController"
        ) as controller_cls:
            controller_cls.return_value.run.return_value = _report(Outcome.ITERATIONS_EXHAUSTED)
            r = cli_runner.invoke(main, ["once"])
        assert r.exit_code == 0
        assert controller_cls.call_args.kwargs["mode"] is RunMode.FIXED
        notifier.emit.assert_called_once_with("iteration_complete")

    def test_not_sandboxed_warns(self, cli_runner, in_project, monkeypatch):
        monkeypatch.setenv("RALPH_SANDBOXED", "0")
        with patch("ralph.controller.RunController") as controller_cls:
            controller_cls.return_value.run.return_value = _report(Outcome.COMPLETE)
            r = cli_runner.invoke(main, ["run"])
        assert "Not running in a container" in _flat(r.output)
        assert controller_cls.call_args.args[0].sandboxed is False


class TestBranch:
    def test_list_empty(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["branch", "list"])
        assert r.exit_code == 0
        assert "No worktrees" in r.output

    def test_list_and_remove(self, cli_runner, in_project, tmp_path: Path):
        manager = WorktreeManager(repo_dir=in_project, worktrees_root=tmp_path / "worktrees", project_name="proj")
        manager.ensure("feat/x")
        resume = ResumeStore(in_project / ".ralph" / "run-state.json")
        resume.save(ResumeState("main", "feat/x"))

        r = cli_runner.invoke(main, ["branch", "list"])
        assert r.exit_code == 0
        assert "feat/x" in r.output

        r = cli_runner.invoke(main, ["branch", "remove", "feat/x"])
        assert r.exit_code == 0, r.output
        assert not (tmp_path / "worktrees" / "proj_feat-x").exists()
        assert resume.load() is None

    def test_remove_unknown(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["branch", "remove", "feat/none"])
        assert r.exit_code == 1
        assert "No worktree for branch feat/none" in _flat(r.output)


class TestBranchMerge:
    @pytest.fixture
    def feature(self, in_project: Path, tmp_path: Path) -> Path:
        manager = WorktreeManager(repo_dir=in_project, worktrees_root=tmp_path / "worktrees", project_name="proj")
        return manager.ensure("feat/x")

    def test_merges_and_removes_worktree(self, cli_runner, in_project, feature):
        _commit(feature, "feature.txt", "done\n")
        ResumeStore(in_project / ".ralph" / "run-state.json").save(ResumeState("main", "feat/x"))

        r = cli_runner.invoke(main, ["branch", "merge", "feat/x", "--yes"])

        assert r.exit_code == 0, r.output
        assert 'Merged "feat/x" into "main"' in _flat(r.output)
        assert read_text(in_project / "feature.txt") == "done\n"
        assert not feature.exists()
        assert ResumeStore(in_project / ".ralph" / "run-state.json").load() is None

    def test_confirmation_declined(self, cli_runner, in_project, feature):
        _commit(feature, "feature.txt", "done\n")
        r = cli_runner.invoke(main, ["branch", "merge", "feat/x"], input="n\n")
        assert r.exit_code == 0
        assert "Merge cancelled" in r.output
        assert not (in_project / "feature.txt").exists()
        assert feature.is_dir()

    def test_conflict_aborts_and_lists_files(self, cli_runner, in_project, feature):
        _commit(feature, "README.md", "# From the branch\n")
        _commit(in_project, "README.md", "# From main\n")

        r = cli_runner.invoke(main, ["branch", "merge", "feat/x"], input="y\n")

        assert r.exit_code == 1
        out = _flat(r.output)
        assert "Merge conflict detected" in out
        assert "README.md" in out
        assert "Merge aborted" in out
        assert read_text(in_project / "README.md") == "# From main\n"
        assert not (in_project / ".git" / "MERGE_HEAD").exists()
        assert feature.is_dir()

    def test_unknown_branch(self, cli_runner, in_project):
        r = cli_runner.invoke(main, ["branch", "merge", "feat/none", "--yes"])
        assert r.exit_code == 1
        assert 'Branch "feat/none" does not exist' in _flat(r.output)
