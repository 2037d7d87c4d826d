"""One agent invocation: command line, output streaming, and result classification."""

from __future__ import annotations

import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO

from ralph import log
from ralph.engine_errors import failure_hint, suggested_model
from ralph.engines.providers import ProviderSpec
from ralph.engines.stream import parse_line
from ralph.errors import AgentLaunchError
from ralph.io_utils import open_text
from ralph.prompt import COMPLETION_SENTINEL
from ralph.worktrees import WorkspacePaths

MAX_CONSECUTIVE_FAILURES = 3


def build_command(
    provider: ProviderSpec,
    *,
    prompt: str,
    view_path: Path,
    progress_path: Path,
    sandboxed: bool,
    model: str = "",
    stream_json_args: list[str] | None = None,
) -> list[str]:
    """Assemble the agent argv.

    Order: base args, auto-approve flags (sandbox only), stream-json flags,
    model flags, then the prompt. The task view and progress log are passed
    through ``file_args`` when the provider has them, otherwise inlined as
    ``@path`` references at the front of the prompt.
    """
    cmd = [provider.command, *provider.args]
    if sandboxed:
        cmd += provider.yolo_args
    if stream_json_args:
        cmd += stream_json_args
    if model and provider.model_args:
        cmd += [*provider.model_args, model]
    if provider.file_args:
        for path in (view_path, progress_path):
            cmd += [*provider.file_args, str(path)]
        cmd += [*provider.prompt_args, prompt]
    else:
        cmd += [*provider.prompt_args, f"@{view_path} @{progress_path} {prompt}"]
    return cmd


def has_completion_signal(output: str) -> bool:
    """Plain substring check; output that merely quotes the sentinel also counts."""
    return COMPLETION_SENTINEL in output


class FailureTracker:
    """Counts consecutive identical non-zero exit codes."""

    def __init__(self, limit: int = MAX_CONSECUTIVE_FAILURES) -> None:
        self.limit = limit
        self.last_code = 0
        self.consecutive = 0

    def record(self, exit_code: int) -> bool:
        """Record an iteration's exit code; ``True`` once the limit is reached."""
        if exit_code == 0:
            self.last_code = 0
            self.consecutive = 0
            return False
        if exit_code == self.last_code:
            self.consecutive += 1
        else:
            self.last_code = exit_code
            self.consecutive = 1
        return self.consecutive >= self.limit


@dataclass
class IterationResult:
    exit_code: int
    output: str = ""
    stderr: str = ""
    model_used: str = ""
    retried_model: str = ""

    @property
    def completed(self) -> bool:
        return has_completion_signal(self.output)


def _terminate_process(proc: subprocess.Popen[str]) -> None:
    """Stop a child promptly: terminate, then kill if it does not exit."""
    for stop in (proc.terminate, proc.kill):
        if proc.poll() is not None:
            return
        try:
            stop()
            proc.wait(timeout=2)
            return
        except subprocess.TimeoutExpired:
            continue
        except OSError:
            return


def raw_log_path(directory: Path) -> Path:
    stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    return directory / f"ralph-run-{stamp}.jsonl"


class IterationExecutor:
    def __init__(
        self,
        provider: ProviderSpec,
        *,
        sandboxed: bool,
        stream_json_args: list[str] | None = None,
        raw_log_dir: Path | None = None,
    ) -> None:
        self.provider = provider
        self.sandboxed = sandboxed
        self.stream_json_args = stream_json_args
        self.raw_log_dir = raw_log_dir

    @property
    def streaming_json(self) -> bool:
        return bool(self.stream_json_args)

    def run(self, workspace: WorkspacePaths, prompt: str, *, model: str = "") -> IterationResult:
        """Run the agent once in *workspace*.

        A "model not found, did you mean X" failure is retried once with X; only
        the retry's result is returned.
        """
        result = self._run_once(workspace, prompt, model)
        if result.exit_code == 0:
            return result

        suggestion = suggested_model(f"{result.stderr}\n{result.output}")
        if suggestion and suggestion != model:
            log.warn(f"Model '{model or 'default'}' not found; retrying with suggested model '{suggestion}'")
            retry = self._run_once(workspace, prompt, suggestion)
            retry.retried_model = suggestion
            return retry

        hint = failure_hint(result.stderr)
        if hint:
            log.warn(f"{self.provider.command} failed: {hint}")
        return result

    def _run_once(self, workspace: WorkspacePaths, prompt: str, model: str) -> IterationResult:
        cmd = build_command(
            self.provider,
            prompt=prompt,
            view_path=workspace.view_path,
            progress_path=workspace.progress_path,
            sandboxed=self.sandboxed,
            model=model,
            stream_json_args=self.stream_json_args,
        )
        log.debug(" ".join(f'"{a}"' if " " in a else a for a in cmd))

        raw_log: IO[str] | None = None
        if self.streaming_json and self.raw_log_dir is not None:
            self.raw_log_dir.mkdir(parents=True, exist_ok=True)
            path = raw_log_path(self.raw_log_dir)
            log.debug(f"Saving raw JSON to: {path}")
            raw_log = open_text(path, "a")

        try:
            with tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as err_fh:
                exit_code, output = self._stream(cmd, workspace.exec_dir, err_fh, raw_log)
                err_fh.seek(0)
                stderr = err_fh.read()
        finally:
            if raw_log is not None:
                raw_log.close()

        if stderr.strip():
            log.stream(stderr if stderr.endswith("\n") else stderr + "\n")
        return IterationResult(exit_code=exit_code, output=output, stderr=stderr, model_used=model)

    def _stream(
        self,
        cmd: list[str],
        cwd: Path,
        err_fh: IO[str],
        raw_log: IO[str] | None,
    ) -> tuple[int, str]:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=None,
                stdout=subprocess.PIPE,
                stderr=err_fh,
                text=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise AgentLaunchError(f"Failed to start {cmd[0]}: command not found") from exc
        except OSError as exc:
            raise AgentLaunchError(f"Failed to start {cmd[0]}: {exc}") from exc

        chunks: list[str] = []
        try:
            assert proc.stdout is not None
            # Text-mode iteration yields whole lines even when the child
            # flushes mid-line.
            for line in proc.stdout:
                text = self._render(line, raw_log)
                if text:
                    log.stream(text)
                    chunks.append(text)
            exit_code = proc.wait()
        finally:
            # Interrupts and SystemExit from the signal handlers land here too.
            if proc.poll() is None:
                _terminate_process(proc)
            if proc.stdout is not None:
                proc.stdout.close()

        if self.streaming_json:
            log.stream("\n")
        return exit_code, "".join(chunks)

    def _render(self, line: str, raw_log: IO[str] | None) -> str:
        if not self.streaming_json:
            return line
        stripped = line.strip()
        if not stripped:
            return ""
        if not stripped.startswith("{"):
            return line if line.endswith("\n") else line + "\n"
        if raw_log is not None:
            raw_log.write(stripped + "\n")
        return parse_line(stripped, self.provider.name)
