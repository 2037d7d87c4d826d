"""Exception types raised by the run loop and its collaborators."""

from __future__ import annotations


class RalphError(Exception):
    """Base class for errors that should stop ralph with a readable message."""


class ConfigError(RalphError):
    """Missing or malformed ``.ralph/`` files."""


class FormatError(RalphError):
    """The task store cannot be read as an array of tasks."""


class LockHeldError(RalphError):
    """Another live ralph process owns the run lock."""

    def __init__(self, pid: int) -> None:
        super().__init__(
            f"Another ralph run is already active (pid {pid}). "
            "Stop it first, or wait for it to finish."
        )
        self.pid = pid


class WorktreeError(RalphError):
    """A git worktree could not be created or reused."""


class AgentLaunchError(RalphError):
    """The agent CLI could not be started at all."""
