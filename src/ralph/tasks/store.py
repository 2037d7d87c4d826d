"""Task store persistence: parse, rewrite, count and build filtered views."""

from __future__ import annotations

import json
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from ralph.errors import FormatError
from ralph.io_utils import read_text, replace_text
from ralph.tasks.model import Counts, Task
from ralph.tasks.validate import validate

YAML_SUFFIXES = (".yaml", ".yml")

_FILE_REF = re.compile(r"@\{([^}]+)\}")


@dataclass
class RawStore:
    """Parsed-but-unvalidated store content together with the original text."""

    content: Any
    raw: str


def is_yaml(path: Path) -> bool:
    return path.suffix.lower() in YAML_SUFFIXES


def read_raw(path: Path) -> RawStore | None:
    """Parse *path* as YAML or JSON (by extension). Return ``None`` if unparsable."""
    try:
        raw = read_text(path)
    except (OSError, UnicodeDecodeError):
        return None
    try:
        content = yaml.safe_load(raw) if is_yaml(path) else json.loads(raw)
    except (json.JSONDecodeError, yaml.YAMLError):
        return None
    return RawStore(content=content, raw=raw)


def load(path: Path) -> list[Task]:
    """Load the store at *path*.

    Raises :class:`FormatError` if the file cannot be parsed or does not hold an
    array of tasks; callers must recover before going further.
    """
    parsed = read_raw(path)
    if parsed is None:
        raise FormatError(f"{path} could not be parsed")
    result = validate(parsed.content)
    if not result.valid:
        detail = "; ".join(result.reasons[:3])
        raise FormatError(f"{path} is not a valid task list: {detail}")
    return result.tasks


def dump(tasks: list[Task], *, as_yaml: bool = False) -> str:
    data = [t.to_dict() for t in tasks]
    if as_yaml:
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_store(path: Path, tasks: list[Task]) -> None:
    """Rewrite the whole store file."""
    replace_text(path, dump(tasks, as_yaml=is_yaml(path)))


def count(tasks: list[Task], category: str | None = None) -> Counts:
    scoped = [t for t in tasks if not category or t.category == category]
    return Counts(total=len(scoped), complete=sum(1 for t in scoped if t.passes))


def incomplete(tasks: list[Task], category: str | None = None) -> list[Task]:
    return [t for t in tasks if not t.passes and (not category or t.category == category)]


def expand_file_references(text: str, base_dir: Path) -> str:
    """Replace ``@{path}`` placeholders with the referenced file's content."""

    def _sub(match: re.Match[str]) -> str:
        ref = match.group(1)
        full = Path(ref) if Path(ref).is_absolute() else base_dir / ref
        if not full.is_file():
            return f"[File not found: {full}]"
        try:
            return read_text(full)
        except (OSError, UnicodeDecodeError):
            return f"[Error reading: {full}]"

    return _FILE_REF.sub(_sub, text)


def expand_tasks(tasks: list[Task], base_dir: Path) -> list[Task]:
    expanded: list[Task] = []
    for task in tasks:
        copy = task.copy()
        copy.description = expand_file_references(task.description, base_dir)
        copy.steps = [expand_file_references(s, base_dir) for s in task.steps]
        expanded.append(copy)
    return expanded


def write_filtered_view(path: Path, tasks: list[Task], base_dir: Path) -> None:
    """Write the agent-facing view: *tasks* with file references expanded."""
    replace_text(path, dump(expand_tasks(tasks, base_dir)))


def placeholder_tasks() -> list[Task]:
    """Initial store content written by ``ralph init``."""
    return [
        Task(
            category="setup",
            description="Example: Project builds successfully",
            steps=["Run the build command", "Verify no errors occur"],
        )
    ]


def create_backup(path: Path) -> Path:
    """Copy *path* to ``backup.prd.<timestamp><ext>`` next to it."""
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
    ext = path.suffix.lower() if is_yaml(path) else ".json"
    backup = path.parent / f"backup.prd.{stamp}{ext}"
    shutil.copy2(path, backup)
    return backup


def find_latest_backup(path: Path) -> Path | None:
    candidates = sorted(
        p
        for p in path.parent.glob("backup.prd.*")
        if p.suffix.lower() in (".json", *YAML_SUFFIXES)
    )
    return candidates[-1] if candidates else None
