"""Project configuration (``.ralph/config.json``), paths, and the per-run context."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph import git_ops
from ralph.engines.providers import DEFAULT_STREAM_JSON_ARGS, ProviderSpec, resolve_provider
from ralph.errors import ConfigError
from ralph.io_utils import read_text
from ralph.notify import Notifier
from ralph.prompt import resolve_variables
from ralph.worktrees import PROGRESS_FILE, PROMPT_FILE, RALPH_DIR, WorktreeManager

CONFIG_FILE = "config.json"
STORE_CANDIDATES = ("prd.json", "prd.yaml", "prd.yml")
LOCK_FILE = "run.lock"
RESUME_FILE = "run-state.json"

DEFAULT_WORKTREES_PATH = "/worktrees"
DEFAULT_POLL_INTERVAL = 30
DEFAULT_RECORDINGS_DIR = ".recordings"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


@dataclass
class StreamJsonConfig:
    enabled: bool = False
    save_raw_json: bool = True
    output_dir: str = DEFAULT_RECORDINGS_DIR


@dataclass
class Config:
    """Settings from ``.ralph/config.json``; keys there are camelCase."""

    language: str = "none"
    check_command: str = ""
    test_command: str = ""
    technologies: list[str] = field(default_factory=list)
    cli_provider: str = "claude"
    cli: dict[str, Any] = field(default_factory=dict)
    notify_command: str = ""
    model: str = ""
    worktrees_path: str = DEFAULT_WORKTREES_PATH
    stream_json: StreamJsonConfig = field(default_factory=StreamJsonConfig)
    poll_interval: int = DEFAULT_POLL_INTERVAL

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "language": self.language,
            "checkCommand": self.check_command,
            "testCommand": self.test_command,
            "technologies": list(self.technologies),
            "cliProvider": self.cli_provider,
        }
        if self.cli:
            data["cli"] = dict(self.cli)
        if self.notify_command:
            data["notifyCommand"] = self.notify_command
        if self.model:
            data["model"] = self.model
        if self.worktrees_path != DEFAULT_WORKTREES_PATH:
            data["worktreesPath"] = self.worktrees_path
        if self.stream_json.enabled:
            data["streamJson"] = {
                "enabled": True,
                "saveRawJson": self.stream_json.save_raw_json,
                "outputDir": self.stream_json.output_dir,
            }
        if self.poll_interval != DEFAULT_POLL_INTERVAL:
            data["pollInterval"] = self.poll_interval
        return data


def _get(data: dict[str, Any], key: str, kind: type | tuple[type, ...], default: Any) -> Any:
    if key not in data or data[key] is None:
        return default
    value = data[key]
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ConfigError(f"config.json: '{key}' has the wrong type ({type(value).__name__})")
    return value


def parse_config(data: Any) -> Config:
    if not isinstance(data, dict):
        raise ConfigError("config.json must contain a JSON object")

    technologies = _get(data, "technologies", list, [])
    if not all(isinstance(t, str) for t in technologies):
        raise ConfigError("config.json: 'technologies' must be a list of strings")

    stream_raw = _get(data, "streamJson", dict, {})
    stream = StreamJsonConfig(
        enabled=bool(_get(stream_raw, "enabled", bool, False)),
        save_raw_json=bool(_get(stream_raw, "saveRawJson", bool, True)),
        output_dir=_get(stream_raw, "outputDir", str, DEFAULT_RECORDINGS_DIR) or DEFAULT_RECORDINGS_DIR,
    )

    poll = _get(data, "pollInterval", int, DEFAULT_POLL_INTERVAL)
    if poll < 1:
        raise ConfigError("config.json: 'pollInterval' must be at least 1 second")

    return Config(
        language=_get(data, "language", str, "none"),
        check_command=_get(data, "checkCommand", str, ""),
        test_command=_get(data, "testCommand", str, ""),
        technologies=list(technologies),
        cli_provider=_get(data, "cliProvider", str, "claude"),
        cli=dict(_get(data, "cli", dict, {})),
        notify_command=_get(data, "notifyCommand", str, ""),
        model=_get(data, "model", str, ""),
        worktrees_path=_get(data, "worktreesPath", str, DEFAULT_WORKTREES_PATH) or DEFAULT_WORKTREES_PATH,
        stream_json=stream,
        poll_interval=poll,
    )


def load_config(path: Path) -> Config:
    if not path.is_file():
        raise ConfigError(f"{RALPH_DIR}/{CONFIG_FILE} not found. Run 'ralph init' first.")
    try:
        data = json.loads(read_text(path))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"{RALPH_DIR}/{CONFIG_FILE} could not be read: {exc}") from exc
    return parse_config(data)


@dataclass
class Paths:
    """Well-known files under a project's ``.ralph`` directory."""

    project_root: Path
    ralph_dir: Path
    config: Path
    prompt: Path
    store: Path
    progress: Path
    lock: Path
    resume: Path

    @classmethod
    def for_project(cls, project_root: Path) -> Paths:
        ralph_dir = project_root / RALPH_DIR
        store = next(
            (ralph_dir / name for name in STORE_CANDIDATES if (ralph_dir / name).is_file()),
            ralph_dir / STORE_CANDIDATES[0],
        )
        return cls(
            project_root=project_root,
            ralph_dir=ralph_dir,
            config=ralph_dir / CONFIG_FILE,
            prompt=ralph_dir / PROMPT_FILE,
            store=store,
            progress=ralph_dir / PROGRESS_FILE,
            lock=ralph_dir / LOCK_FILE,
            resume=ralph_dir / RESUME_FILE,
        )

    def check_files(self) -> None:
        """Raise :class:`ConfigError` naming the first missing required file."""
        if not self.ralph_dir.is_dir():
            raise ConfigError(f"{RALPH_DIR}/ directory not found. Run 'ralph init' first.")
        for path in (self.config, self.prompt, self.store, self.progress):
            if not path.is_file():
                raise ConfigError(f"{RALPH_DIR}/{path.name} not found. Run 'ralph init' first.")


def is_sandboxed() -> bool:
    """Whether we run inside a container, where auto-approve flags are safe."""
    forced = _env_bool("RALPH_SANDBOXED")
    if forced is not None:
        return forced
    if os.environ.get("DEVCONTAINER") == "true":
        return True
    if Path("/.dockerenv").exists():
        return True
    try:
        cgroup = read_text("/proc/1/cgroup", errors="replace")
    except OSError:
        cgroup = ""
    if any(marker in cgroup for marker in ("docker", "podman", "/lxc/", "containerd")):
        return True
    return os.environ.get("container") in ("podman", "docker")


def debug_from_env() -> bool:
    return bool(_env_bool("RALPH_DEBUG"))


@dataclass
class StreamJsonOptions:
    args: list[str]
    raw_log_dir: Path | None = None


@dataclass
class RunContext:
    """Everything one run needs, built once and passed down explicitly."""

    config: Config
    paths: Paths
    provider: ProviderSpec
    notifier: Notifier
    prompt: str
    base_branch: str
    sandboxed: bool
    worktrees: WorktreeManager
    model: str = ""
    stream_json: StreamJsonOptions | None = None

    @property
    def project_root(self) -> Path:
        return self.paths.project_root


def worktrees_root(config: Config) -> Path:
    return Path(os.environ.get("RALPH_WORKTREES_DIR") or config.worktrees_path)


def build_context(project_root: Path, *, model: str = "") -> RunContext:
    """Load config and template for *project_root* and assemble a :class:`RunContext`.

    Raises :class:`ConfigError` if the project was not initialized.
    """
    paths = Paths.for_project(project_root)
    paths.check_files()
    config = load_config(paths.config)
    provider = resolve_provider(config.cli_provider, config.cli)
    try:
        template = read_text(paths.prompt)
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"{RALPH_DIR}/{PROMPT_FILE} could not be read: {exc}") from exc
    prompt = resolve_variables(
        template,
        language=config.language,
        check_command=config.check_command,
        test_command=config.test_command,
        technologies=config.technologies,
    )

    stream_json = None
    if config.stream_json.enabled:
        stream_json = StreamJsonOptions(
            args=list(provider.stream_json_args or DEFAULT_STREAM_JSON_ARGS),
            raw_log_dir=(project_root / config.stream_json.output_dir)
            if config.stream_json.save_raw_json
            else None,
        )

    return RunContext(
        config=config,
        paths=paths,
        provider=provider,
        notifier=Notifier(config.notify_command, desktop=True),
        prompt=prompt,
        base_branch=git_ops.current_branch(cwd=project_root),
        sandboxed=is_sandboxed(),
        worktrees=WorktreeManager(
            repo_dir=project_root,
            worktrees_root=worktrees_root(config),
            project_name=project_root.name,
            prompt_text=prompt,
        ),
        model=model or config.model,
        stream_json=stream_json,
    )
