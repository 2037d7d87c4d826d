"""ralph CLI: drive a coding agent through the task backlog in ``.ralph/``.

Installed as the ``ralph`` console_script.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import NoReturn

import click

from ralph import __version__
from ralph.engines.providers import PROVIDER_NAMES
from ralph.errors import RalphError
from ralph.prompt import LANGUAGES
from ralph.tasks.model import CATEGORIES

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

EXIT_INTERRUPTED = 130


def _fail(message: str) -> NoReturn:
    from ralph import log as glog

    glog.error(message)
    sys.exit(1)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, prog_name="ralph")
def main() -> None:
    """Ralph: run an AI coding agent over a task backlog until it is done.

    Tasks live in .ralph/prd.json (or prd.yaml). Each iteration hands the agent
    the incomplete tasks of one branch group and records what it finished.
    """


# ── run / once ───────────────────────────────────────────────────────


def _execute(
    *,
    mode_name: str,
    iterations: int,
    category: str | None,
    model: str,
    debug: bool,
) -> int:
    from ralph import log as glog
    from ralph.config import build_context, debug_from_env
    from ralph.controller import Outcome, RunController, RunMode
    from ralph.lock import RunLock

    glog.set_verbose(debug or debug_from_env())
    mode = RunMode(mode_name)

    try:
        ctx = build_context(Path.cwd(), model=model)
        if not ctx.sandboxed:
            glog.warn("Not running in a container; the agent will ask before acting (no auto-approve flags).")
        with RunLock(ctx.paths.lock):
            report = RunController(ctx, mode=mode, iterations=iterations, category=category).run()
    except RalphError as exc:
        _fail(str(exc))

    if mode is RunMode.FIXED and iterations == 1 and report.outcome is not Outcome.INTERRUPTED:
        ctx.notifier.emit("iteration_complete")

    match report.outcome:
        case Outcome.FAILED:
            return 1
        case Outcome.INTERRUPTED:
            return EXIT_INTERRUPTED
        case _:
            return 0


@main.command()
@click.argument("iterations", required=False, type=click.IntRange(min=1))
@click.option("--all", "all_mode", is_flag=True, help="Run until every task passes (default)")
@click.option("--loop", "loop_mode", is_flag=True, help="Run forever, waiting for new tasks when done")
@click.option("-c", "--category", type=click.Choice(CATEGORIES), default=None, help="Only work on tasks of this category")
@click.option("-m", "--model", default="", help="Model to pass to the agent CLI")
@click.option("-d", "--debug", is_flag=True, help="Show debug output")
def run(
    iterations: int | None,
    all_mode: bool,
    loop_mode: bool,
    category: str | None,
    model: str,
    debug: bool,
) -> None:
    """Run the agent repeatedly: ITERATIONS times, until done (--all), or forever (--loop)."""
    if all_mode and loop_mode:
        raise click.UsageError("--all and --loop are mutually exclusive.")

    if loop_mode:
        mode_name, count = "loop", 0
    elif all_mode or iterations is None:
        mode_name, count = "all", 0
    else:
        mode_name, count = "fixed", iterations

    sys.exit(_execute(mode_name=mode_name, iterations=count, category=category, model=model, debug=debug))


@main.command()
@click.option("-m", "--model", default="", help="Model to pass to the agent CLI")
@click.option("-d", "--debug", is_flag=True, help="Show debug output")
def once(model: str, debug: bool) -> None:
    """Run a single iteration."""
    sys.exit(_execute(mode_name="fixed", iterations=1, category=None, model=model, debug=debug))


# ── status / validate ────────────────────────────────────────────────


def _store_path() -> Path:
    from ralph.config import Paths

    return Paths.for_project(Path.cwd()).store


@main.command()
@click.option("-c", "--category", type=click.Choice(CATEGORIES), default=None, help="Only count this category")
def status(category: str | None) -> None:
    """Show task counts and the pending branch groups."""
    from ralph import git_ops
    from ralph import log as glog
    from ralph.branches import UNTAGGED, group_by_branch
    from ralph.resume import ResumeStore
    from ralph.config import Paths
    from ralph.tasks.store import count, load

    paths = Paths.for_project(Path.cwd())
    try:
        tasks = load(paths.store)
    except RalphError as exc:
        _fail(str(exc))

    counts = count(tasks, category)
    scope = f" ({category})" if category else ""
    glog.console.print(f"[bold]Tasks{scope}:[/bold] {counts}, {counts.incomplete} remaining")

    by_category: dict[str, list[int]] = {}
    for task in tasks:
        entry = by_category.setdefault(task.category, [0, 0])
        entry[0] += 1
        entry[1] += int(task.passes)
    for name, (total, done) in by_category.items():
        if category and name != category:
            continue
        glog.console.print(f"  {name:<12} {done}/{total}")

    base = git_ops.current_branch(cwd=paths.project_root)
    groups = group_by_branch(tasks, base_branch=base, category=category)
    if groups:
        glog.console.print("[bold]Pending branch groups:[/bold]")
        for branch, group in groups.items():
            label = branch if branch != UNTAGGED else f"(primary workspace, {base})"
            glog.console.print(f"  {label}: {len(group)} task(s)")

    resume = ResumeStore(paths.resume).load()
    if resume is not None:
        glog.info(f"Interrupted run will resume on branch {resume.current_branch}")


@main.command()
def validate() -> None:
    """Check the task store structure and categories."""
    from ralph import log as glog
    from ralph.tasks.store import read_raw
    from ralph.tasks.validate import check_categories
    from ralph.tasks.validate import validate as validate_content

    path = _store_path()
    if not path.is_file():
        _fail(f"{path} not found. Run 'ralph init' first.")
    parsed = read_raw(path)
    if parsed is None:
        _fail(f"{path} could not be parsed")

    result = validate_content(parsed.content)
    if not result.valid:
        for reason in result.reasons:
            glog.error(reason)
        _fail(f"{path} is not a valid task list")

    for problem in check_categories(result.tasks):
        glog.warn(problem)
    glog.success(f"{path.name}: {len(result.tasks)} task(s), structure OK")


# ── init ─────────────────────────────────────────────────────────────


@main.command()
@click.option("--provider", type=click.Choice(PROVIDER_NAMES), default="claude", help="Agent CLI to drive")
@click.option("--language", type=click.Choice(sorted(LANGUAGES)), default="none", help="Project language preset")
@click.option("--force", is_flag=True, help="Overwrite existing files")
def init(provider: str, language: str, force: bool) -> None:
    """Create .ralph/ with config, prompt template, task store and progress log."""
    from ralph import log as glog
    from ralph.config import Config, Paths
    from ralph.io_utils import write_text
    from ralph.prompt import DEFAULT_TEMPLATE
    from ralph.tasks.store import dump, placeholder_tasks
    from ralph.worktrees import DEFAULT_PROGRESS

    paths = Paths.for_project(Path.cwd())
    preset = LANGUAGES[language]
    config = Config(
        language=language,
        check_command=preset.check_command,
        test_command=preset.test_command,
        cli_provider=provider,
    )
    files = {
        paths.config: json.dumps(config.to_json(), indent=2) + "\n",
        paths.prompt: DEFAULT_TEMPLATE,
        paths.store: dump(placeholder_tasks(), as_yaml=paths.store.suffix in (".yaml", ".yml")),
        paths.progress: DEFAULT_PROGRESS,
    }
    for path, content in files.items():
        if path.exists() and not force:
            glog.warn(f"{path.relative_to(paths.project_root)} exists; keeping it (use --force to overwrite)")
            continue
        write_text(path, content)
        glog.success(f"Created {path.relative_to(paths.project_root)}")

    glog.info("Edit .ralph/prd.json with your tasks, then run 'ralph run'.")


# ── branch ───────────────────────────────────────────────────────────


def _worktree_manager():
    from ralph.config import Config, Paths, load_config, worktrees_root
    from ralph.worktrees import WorktreeManager

    paths = Paths.for_project(Path.cwd())
    config = load_config(paths.config) if paths.config.is_file() else Config()
    return paths, WorktreeManager(
        repo_dir=paths.project_root,
        worktrees_root=worktrees_root(config),
        project_name=paths.project_root.name,
    )


def _forget_resume(paths, name: str) -> None:
    """Drop resume state that points at branch *name*."""
    from ralph.resume import ResumeStore

    resume = ResumeStore(paths.resume)
    state = resume.load()
    if state is not None and state.current_branch == name:
        resume.clear()


@main.group()
def branch() -> None:
    """Inspect, merge and clean up per-branch worktrees."""


@branch.command("list")
def branch_list() -> None:
    """List this project's worktrees."""
    from ralph import log as glog

    try:
        _paths, manager = _worktree_manager()
    except RalphError as exc:
        _fail(str(exc))

    entries = manager.list_worktrees()
    if not entries:
        glog.info(f"No worktrees under {manager.worktrees_root}")
        return
    for path, name in entries:
        glog.console.print(f"  {name or '(detached)':<30} {path}")


@branch.command("remove")
@click.argument("name")
def branch_remove(name: str) -> None:
    """Remove the worktree for branch NAME (the branch itself is kept)."""
    from ralph import log as glog

    try:
        paths, manager = _worktree_manager()
    except RalphError as exc:
        _fail(str(exc))

    if not manager.remove(name):
        _fail(f"No worktree for branch {name} at {manager.path_for(name)}")

    _forget_resume(paths, name)
    glog.success(f"Removed worktree for {name}")


@branch.command("merge")
@click.argument("name")
@click.option("-y", "--yes", is_flag=True, help="Merge without asking for confirmation.")
def branch_merge(name: str, yes: bool) -> None:
    """Merge branch NAME into the current branch and remove its worktree.

    On conflicts the merge is aborted and the conflicting files are listed.
    """
    from ralph import git_ops
    from ralph import log as glog

    try:
        paths, manager = _worktree_manager()
    except RalphError as exc:
        _fail(str(exc))

    root = paths.project_root
    if not git_ops.branch_exists(name, cwd=root):
        _fail(f'Branch "{name}" does not exist.')

    base = git_ops.current_branch(cwd=root)
    worktree = manager.path_for(name)
    glog.info(f"Branch: {name}")
    glog.info(f"Base branch: {base}")
    if worktree.is_dir():
        glog.info(f"Worktree: {worktree}")

    if not yes and not click.confirm(f'Merge "{name}" into "{base}"?', default=True):
        glog.info("Merge cancelled.")
        return

    glog.info(f'Merging "{name}" into "{base}"...')
    r = git_ops.merge(name, cwd=root)
    if r.returncode != 0:
        conflicts = git_ops.conflicted_files(cwd=root)
        aborted = git_ops.merge_abort(cwd=root)
        if not conflicts:
            detail = (r.stderr or r.stdout).strip().splitlines()
            _fail(f"Merge failed: {detail[0] if detail else r.returncode}")
        glog.error("Merge conflict detected! Conflicting files:")
        for path in conflicts:
            glog.console.print(f"  [yellow]{path}[/yellow]")
        if aborted:
            glog.info("Merge aborted.")
        else:
            glog.warn("Could not abort the merge; run 'git merge --abort' manually.")
        _fail(f"Resolve the conflicts by hand, or add a task describing the resolution, then merge {name} again.")

    glog.success(f'Merged "{name}" into "{base}".')
    if worktree.is_dir():
        manager.remove(name)
        glog.info(f"Removed worktree {worktree}")
    _forget_resume(paths, name)
