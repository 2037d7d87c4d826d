"""Command-line conventions of the supported agent CLIs."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from ralph.errors import ConfigError

DEFAULT_YOLO_ARGS = ["--dangerously-skip-permissions"]
DEFAULT_PROMPT_ARGS = ["-p"]
DEFAULT_STREAM_JSON_ARGS = ["--output-format", "stream-json", "--verbose", "--print"]


@dataclass
class ProviderSpec:
    """How to invoke one agent CLI.

    ``file_args`` is set for CLIs that take context files through a flag
    (``aider --read FILE``); the others get ``@path`` references inlined in the
    prompt string.
    """

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    yolo_args: list[str] = field(default_factory=lambda: list(DEFAULT_YOLO_ARGS))
    prompt_args: list[str] = field(default_factory=lambda: list(DEFAULT_PROMPT_ARGS))
    model_args: list[str] = field(default_factory=list)
    file_args: list[str] = field(default_factory=list)
    stream_json_args: list[str] = field(default_factory=lambda: list(DEFAULT_STREAM_JSON_ARGS))


def _claude() -> ProviderSpec:
    return ProviderSpec(name="claude", command="claude", model_args=["--model"])


def _codex() -> ProviderSpec:
    return ProviderSpec(
        name="codex",
        command="codex",
        args=["exec"],
        yolo_args=["--dangerously-bypass-approvals-and-sandbox"],
        prompt_args=[],
        model_args=["-m"],
        stream_json_args=["--json"],
    )


def _gemini() -> ProviderSpec:
    return ProviderSpec(
        name="gemini",
        command="gemini",
        yolo_args=["--yolo"],
        model_args=["-m"],
        stream_json_args=["--output-format", "stream-json"],
    )


def _opencode() -> ProviderSpec:
    return ProviderSpec(
        name="opencode",
        command="opencode",
        args=["run"],
        yolo_args=[],
        prompt_args=[],
        model_args=["-m"],
        stream_json_args=["--format", "json"],
    )


def _goose() -> ProviderSpec:
    return ProviderSpec(
        name="goose",
        command="goose",
        args=["run"],
        yolo_args=[],
        prompt_args=["-t"],
        model_args=["--model"],
        stream_json_args=["--output-format", "stream-json"],
    )


def _aider() -> ProviderSpec:
    return ProviderSpec(
        name="aider",
        command="aider",
        yolo_args=["--yes-always"],
        prompt_args=["--message"],
        model_args=["--model"],
        file_args=["--read"],
        stream_json_args=[],
    )


PROVIDER_NAMES = ("claude", "codex", "gemini", "opencode", "goose", "aider")


def get_provider(name: str) -> ProviderSpec:
    """Return a fresh provider spec for *name*."""
    match name:
        case "claude":
            return _claude()
        case "codex":
            return _codex()
        case "gemini":
            return _gemini()
        case "opencode":
            return _opencode()
        case "goose":
            return _goose()
        case "aider":
            return _aider()
        case _:
            raise ConfigError(f"Unknown CLI provider: {name} (valid: {', '.join(PROVIDER_NAMES)})")


_OVERRIDE_KEYS = {
    "command": "command",
    "args": "args",
    "yoloArgs": "yolo_args",
    "promptArgs": "prompt_args",
    "modelArgs": "model_args",
    "fileArgs": "file_args",
    "streamJsonArgs": "stream_json_args",
}


def resolve_provider(name: str, override: dict[str, Any] | None = None) -> ProviderSpec:
    """Provider spec for *name* with the user's ``cli`` config block applied on top.

    Without a named provider the override describes a custom CLI; it gets the
    Claude-compatible defaults for any list it leaves out.
    """
    spec = get_provider(name) if name else ProviderSpec(name="", command="claude")
    if not override:
        return spec

    changes: dict[str, Any] = {}
    for key, attr in _OVERRIDE_KEYS.items():
        if key not in override:
            continue
        value = override[key]
        if attr == "command":
            if not isinstance(value, str) or not value.strip():
                raise ConfigError("cli.command must be a non-empty string")
        elif not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"cli.{key} must be a list of strings")
        changes[attr] = value
    return replace(spec, **changes)
