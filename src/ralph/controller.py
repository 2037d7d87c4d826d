"""The run loop: pick a branch group, run the agent, reconcile the store, decide.

Each iteration:

1. reload the store as the trusted snapshot,
2. group incomplete tasks by branch and select the target group (resume state
   first, then store order),
3. prepare the workspace (primary checkout or the group's worktree),
4. run the agent,
5. copy completions from the filtered view back, repair the store if the
   agent corrupted it,
6. update the progress and failure circuit breakers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ralph import log
from ralph.branches import UNTAGGED, group_by_branch, select_target
from ralph.config import RunContext
from ralph.errors import ConfigError, FormatError
from ralph.executor import FailureTracker, IterationExecutor, IterationResult
from ralph.resume import ResumeState, ResumeStore
from ralph.tasks.model import Counts, Task
from ralph.tasks.recovery import sync_passes_from_view, validate_and_recover
from ralph.tasks.store import count, find_latest_backup, load, write_filtered_view
from ralph.worktrees import VIEW_FILE, WorkspacePaths

MAX_ITERATIONS_WITHOUT_PROGRESS = 3


class RunMode(Enum):
    FIXED = "fixed"
    ALL = "all"
    LOOP = "loop"


class Outcome(str, Enum):
    COMPLETE = "complete"
    NO_PROGRESS = "no_progress"
    FAILED = "failed"
    ITERATIONS_EXHAUSTED = "iterations_exhausted"
    INTERRUPTED = "interrupted"


@dataclass
class RunReport:
    outcome: Outcome
    iterations: int
    counts: Counts
    elapsed: float
    completed_tasks: list[str] = field(default_factory=list)


class ProgressTracker:
    """No-progress circuit breaker.

    Progress means the complete count or the total count went up; the agent is
    allowed to append tasks.
    """

    def __init__(self, initial: Counts, limit: int = MAX_ITERATIONS_WITHOUT_PROGRESS) -> None:
        self.limit = limit
        self.last_complete = initial.complete
        self.last_total = initial.total
        self.without_progress = 0

    def update(self, counts: Counts) -> bool:
        """Record post-iteration counts; ``True`` if they show progress."""
        if counts.complete > self.last_complete or counts.total > self.last_total:
            self.without_progress = 0
            self.last_complete = counts.complete
            self.last_total = counts.total
            return True
        self.without_progress += 1
        return False

    @property
    def stalled(self) -> bool:
        return self.without_progress >= self.limit


def format_elapsed(seconds: float) -> str:
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


class RunController:
    def __init__(
        self,
        ctx: RunContext,
        *,
        mode: RunMode = RunMode.ALL,
        iterations: int = 0,
        category: str | None = None,
        executor: IterationExecutor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if mode is RunMode.FIXED and iterations < 1:
            raise ValueError("fixed mode needs at least one iteration")
        self.ctx = ctx
        self.mode = mode
        self.requested = iterations
        self.category = category
        self.executor = executor or IterationExecutor(
            ctx.provider,
            sandboxed=ctx.sandboxed,
            stream_json_args=ctx.stream_json.args if ctx.stream_json else None,
            raw_log_dir=ctx.stream_json.raw_log_dir if ctx.stream_json else None,
        )
        self.sleep = sleep
        self.resume = ResumeStore(ctx.paths.resume)
        self.failures = FailureTracker()
        self.iteration = 0
        self.completed_tasks: list[str] = []
        self._trusted: list[Task] | None = None
        self._completion_notified = False

    # ── store access ───────────────────────────────────────────────

    def _load_trusted(self) -> list[Task]:
        """Load the store, repairing it from the last good snapshot if needed."""
        store = self.ctx.paths.store
        try:
            tasks = load(store)
        except FormatError as exc:
            if self._trusted is None:
                backup = find_latest_backup(store)
                hint = f" Latest backup: {backup}" if backup else ""
                raise ConfigError(f"{exc}.{hint}") from exc
            log.warn(f"{exc}; repairing from the last good snapshot")
            validate_and_recover(store, self._trusted)
            tasks = load(store)
        self._trusted = tasks
        return tasks

    def _counts(self, tasks: list[Task]) -> Counts:
        return count(tasks, self.category)

    def _groups(self, tasks: list[Task]) -> dict[str, list[Task]]:
        return group_by_branch(tasks, base_branch=self.ctx.base_branch, category=self.category)

    # ── main loop ──────────────────────────────────────────────────

    def run(self) -> RunReport:
        start = time.monotonic()
        tasks = self._load_trusted()
        counts = self._counts(tasks)
        progress = ProgressTracker(counts)
        self._announce(counts)

        outcome = Outcome.COMPLETE
        try:
            while True:
                if self.mode is RunMode.FIXED and self.iteration >= self.requested:
                    outcome = Outcome.ITERATIONS_EXHAUSTED
                    break

                tasks = self._load_trusted()
                groups = self._groups(tasks)
                if not groups:
                    if self.mode is RunMode.LOOP:
                        self._notify_complete(self._counts(tasks))
                        self._wait_for_work()
                        continue
                    outcome = Outcome.COMPLETE
                    self._notify_complete(self._counts(tasks))
                    break
                self._completion_notified = False

                self.iteration += 1
                self._iteration_banner(self._counts(tasks))
                result = self._run_iteration(tasks, groups)

                tasks = self._load_trusted()
                counts = self._counts(tasks)

                if self.mode is RunMode.ALL:
                    progress.update(counts)
                    if progress.stalled:
                        outcome = Outcome.NO_PROGRESS
                        self._stop_no_progress(counts)
                        break

                if result is None:
                    if self.mode is RunMode.LOOP:
                        self.sleep(self.ctx.config.poll_interval)
                    continue

                if self._record_exit(result):
                    outcome = Outcome.FAILED
                    break

                if result.completed:
                    if counts.incomplete == 0:
                        if self.mode is RunMode.LOOP:
                            continue
                        outcome = Outcome.COMPLETE
                        self._notify_complete(counts)
                        break
                    log.info(
                        f"Completion signal received, but {counts.incomplete} task(s) remain "
                        "in other branch groups; continuing."
                    )
        except KeyboardInterrupt:
            outcome = Outcome.INTERRUPTED
            log.warn("Interrupted! Resume state is kept so the next run continues this branch group.")

        final = self._counts(self._trusted or [])
        elapsed = time.monotonic() - start
        log.console.print(f"\nRalph run finished in {format_elapsed(elapsed)}.")
        return RunReport(
            outcome=outcome,
            iterations=self.iteration,
            counts=final,
            elapsed=elapsed,
            completed_tasks=list(self.completed_tasks),
        )

    def _run_iteration(self, tasks: list[Task], groups: dict[str, list[Task]]) -> IterationResult | None:
        """Run one agent invocation; ``None`` if no workspace could be prepared."""
        selection = select_target(groups, base_branch=self.ctx.base_branch, resume=self.resume.load())
        assert selection is not None
        if selection.clear_resume:
            self.resume.clear()

        workspace: WorkspacePaths | None = None
        if selection.is_worktree:
            self.resume.save(ResumeState(self.ctx.base_branch, selection.branch))
            workspace = self.ctx.worktrees.prepare(
                selection.branch,
                groups[selection.branch],
                source_dir=self.ctx.paths.ralph_dir,
            )
            if workspace is None:
                self.resume.clear()
                if UNTAGGED not in groups:
                    return None
                log.info("Continuing with untagged tasks in the primary workspace")
            else:
                log.info(f"Working on branch {selection.branch} in {workspace.exec_dir}")
                if selection.from_resume:
                    log.info("(resumed from a previous run)")

        if workspace is None:
            workspace = self._primary_workspace(groups[UNTAGGED])

        try:
            result = self.executor.run(workspace, self.ctx.prompt, model=self.ctx.model)
        finally:
            self._reconcile(workspace, tasks)

        if workspace.branch:
            self.resume.clear()
        return result

    def _primary_workspace(self, group: list[Task]) -> WorkspacePaths:
        paths = self.ctx.paths
        workspace = WorkspacePaths(
            exec_dir=paths.project_root,
            view_path=paths.ralph_dir / VIEW_FILE,
            progress_path=paths.progress,
        )
        write_filtered_view(workspace.view_path, group, paths.ralph_dir)
        return workspace

    def _reconcile(self, workspace: WorkspacePaths, trusted: list[Task]) -> None:
        """Bring agent edits back into the store without losing recorded completions."""
        store = self.ctx.paths.store
        sync_passes_from_view(workspace.view_path, store, self.ctx.paths.ralph_dir)
        recovery = validate_and_recover(store, trusted)
        if recovery.recovered:
            # The view sync above could not apply to an unreadable store.
            sync_passes_from_view(workspace.view_path, store, self.ctx.paths.ralph_dir)
        workspace.view_path.unlink(missing_ok=True)

        before = {t.description for t in trusted if t.passes}
        try:
            after = load(store)
        except FormatError as exc:
            log.warn(f"Task store still unreadable after recovery: {exc}")
            return
        for task in after:
            if task.passes and task.description not in before:
                before.add(task.description)
                self.completed_tasks.append(task.description)
                log.success(f"Task complete: {task.description}")
                self.ctx.notifier.emit("task_complete", task.description)

    def _record_exit(self, result: IterationResult) -> bool:
        """Update the failure streak; ``True`` when the run must stop."""
        command = self.ctx.provider.command
        if result.exit_code == 0:
            self.failures.record(0)
            return False

        log.error(f"{command} exited with code {result.exit_code}")
        if self.failures.record(result.exit_code):
            log.error(
                f"Stopping: {command} failed {self.failures.consecutive} times in a row "
                f"with exit code {result.exit_code}."
            )
            log.error("This usually indicates a configuration error (e.g., missing API key).")
            self.ctx.notifier.emit("error", f"{command} failed repeatedly (exit code {result.exit_code}).")
            return True
        log.info("Continuing to next iteration...")
        return False

    def _wait_for_work(self) -> None:
        scope = f'"{self.category}" items' if self.category else "items"
        poll = self.ctx.config.poll_interval
        log.rule(f"All {scope} complete. Waiting for new items...")
        log.console.print(f"(Checking every {poll} seconds. Press Ctrl+C to stop)")
        while True:
            self.sleep(poll)
            if self._groups(self._load_trusted()):
                log.info("New incomplete item(s) detected! Resuming...")
                return

    # ── reporting ──────────────────────────────────────────────────

    def _announce(self, counts: Counts) -> None:
        match self.mode:
            case RunMode.ALL:
                log.info("Starting ralph in --all mode (runs until all tasks complete)...")
                log.info(f"PRD Status: {counts}, {counts.incomplete} remaining")
            case RunMode.LOOP:
                log.info("Starting ralph in loop mode (runs until interrupted)...")
            case RunMode.FIXED:
                log.info(f"Starting ralph iterations (requested: {self.requested})...")
        if self.category:
            log.info(f"Filtering PRD items by category: {self.category}")
        if self.ctx.stream_json:
            log.info("Stream JSON output enabled")
            if self.ctx.stream_json.raw_log_dir:
                log.info(f"Raw JSON logs will be saved to: {self.ctx.stream_json.raw_log_dir}")

    def _iteration_banner(self, counts: Counts) -> None:
        match self.mode:
            case RunMode.ALL:
                title = f"Iteration {self.iteration} | Progress: {counts}"
            case RunMode.LOOP:
                title = f"Iteration {self.iteration}"
            case _:
                title = f"Iteration {self.iteration} of {self.requested}"
        log.console.print()
        log.rule(title)

    def _notify_complete(self, counts: Counts) -> None:
        if self._completion_notified:
            return
        self._completion_notified = True
        scope = f'All "{self.category}" tasks' if self.category else "All tasks"
        log.console.print()
        log.rule(f"[green]PRD COMPLETE - {scope} finished![/green]")
        log.info(f"Final Status: {counts}")
        self.ctx.notifier.emit("prd_complete")

    def _stop_no_progress(self, counts: Counts) -> None:
        log.warn(f"Stopping: no progress after {MAX_ITERATIONS_WITHOUT_PROGRESS} consecutive iterations.")
        log.warn("(No tasks completed and no new tasks added)")
        log.info(f"Status: {counts}, {counts.incomplete} remaining.")
        log.info("Check the PRD and task definitions for issues.")
        self.ctx.notifier.emit("run_stopped", "No progress after 3 consecutive iterations.")
