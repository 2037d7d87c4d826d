"""Crash-survivable pointer to the branch group currently being worked on."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from ralph import log
from ralph.io_utils import read_text, replace_text


@dataclass
class ResumeState:
    base_branch: str
    current_branch: str


class ResumeStore:
    """Persist :class:`ResumeState` at a fixed path (``.ralph/run-state.json``)."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> ResumeState | None:
        if not self.path.is_file():
            return None
        try:
            data = json.loads(read_text(self.path))
            state = ResumeState(
                base_branch=str(data["baseBranch"]),
                current_branch=str(data["currentBranch"]),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warn(f"Ignoring unreadable resume state {self.path}: {exc}")
            self.clear()
            return None
        return state

    def save(self, state: ResumeState) -> None:
        payload = {"baseBranch": state.base_branch, "currentBranch": state.current_branch}
        replace_text(self.path, json.dumps(payload, indent=2) + "\n")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
