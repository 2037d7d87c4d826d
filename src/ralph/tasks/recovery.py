"""Recovery of a task store that the agent corrupted.

The agent has full write access to the store, so after every iteration the
file is checked against the snapshot taken before the agent ran. Recovery
never un-completes a task that the snapshot already recorded as passing.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph import log
from ralph.errors import FormatError
from ralph.io_utils import read_text
from ralph.tasks.model import DEFAULT_CATEGORY, Task
from ralph.tasks.store import create_backup, expand_file_references, load, read_raw, write_store
from ralph.tasks.validate import validate

WRAPPER_KEYS = ("features", "items", "entries", "prd", "tasks", "requirements")
DESCRIPTION_KEYS = ("description", "desc", "name", "title", "task", "feature")
PASSES_KEYS = ("passes", "pass", "passed", "done", "complete", "completed", "status", "finished")
TRUTHY_STRINGS = {"true", "pass", "passed", "done", "complete", "completed", "finished"}

_JSON_DESCRIPTION = re.compile(r'"description"\s*:\s*"((?:[^"\\]|\\.)*)"')
_JSON_PASSES = re.compile(r'"passes"\s*:\s*(true|false)')
_JSON_CATEGORY = re.compile(r'"category"\s*:\s*"((?:[^"\\]|\\.)*)"')
_YAML_DESCRIPTION = re.compile(r"^\s*-?\s*description:\s*(.+?)\s*$", re.MULTILINE)
_YAML_PASSES = re.compile(r"^\s*-?\s*passes:\s*(true|false)\s*$", re.MULTILINE)


@dataclass
class ExtractedItem:
    description: str
    passes: bool
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class MergeResult:
    merged: list[Task]
    items_updated: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class RecoveryResult:
    recovered: bool = False
    items_updated: int = 0
    added: int = 0
    warnings: list[str] = field(default_factory=list)


def descriptions_match(a: str, b: str) -> bool:
    """Identity rule for tasks: equal, or either description contains the other.

    Ambiguous when several descriptions overlap; callers take the first match.
    """
    return a == b or a in b or b in a


def _coerce_passes(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return None


def _extract_from_item(item: Any) -> ExtractedItem | None:
    if not isinstance(item, dict):
        return None

    description = ""
    for key in DESCRIPTION_KEYS:
        value = item.get(key)
        if isinstance(value, str) and value:
            description = value
            break
    if not description:
        return None

    passes = False
    for key in PASSES_KEYS:
        coerced = _coerce_passes(item.get(key))
        if coerced is not None:
            passes = coerced
            break

    return ExtractedItem(description=description, passes=passes, raw=item)


def extract_items(content: Any) -> list[ExtractedItem]:
    """Pull ``(description, passes)`` pairs out of arbitrarily shaped content."""
    if content is None:
        return []

    if isinstance(content, list):
        return [e for e in (_extract_from_item(i) for i in content) if e is not None]

    if isinstance(content, dict):
        for key in WRAPPER_KEYS:
            wrapped = content.get(key)
            if isinstance(wrapped, list):
                return extract_items(wrapped)
        single = _extract_from_item(content)
        return [single] if single else []

    return []


def _task_from_item(item: ExtractedItem) -> Task:
    raw = item.raw
    category = raw.get("category")
    steps = raw.get("steps")
    branch = raw.get("branch")
    return Task(
        category=category if isinstance(category, str) and category else DEFAULT_CATEGORY,
        description=item.description,
        steps=[s for s in steps if isinstance(s, str)] if isinstance(steps, list) else [],
        passes=item.passes,
        branch=branch if isinstance(branch, str) else "",
    )


def _short(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def smart_merge(trusted: list[Task], current: Any) -> MergeResult:
    """Merge completion flags from *current* into the *trusted* structure.

    Every trusted task keeps its place and content; it only gains
    ``passes=True`` when its first matching item in *current* passes. Items in
    *current* that were not consumed as a match and do not exist in *trusted*
    are appended as new tasks with safe defaults.
    """
    items = extract_items(current)
    merged = [t.copy() for t in trusted]
    consumed: set[int] = set()
    updated = 0
    warnings: list[str] = []

    for task in merged:
        candidates = [
            idx for idx, item in enumerate(items)
            if descriptions_match(task.description, item.description)
        ]
        if not candidates:
            warnings.append(f"No counterpart found for task: \"{_short(task.description)}\"")
            continue
        if len(candidates) > 1:
            warnings.append(
                f"Ambiguous match for \"{_short(task.description)}\" "
                f"({len(candidates)} candidates); using the first"
            )
        first = candidates[0]
        consumed.add(first)
        if items[first].passes and not task.passes:
            task.passes = True
            updated += 1

    known = {t.description for t in trusted}
    for idx, item in enumerate(items):
        if idx in consumed or item.description in known:
            continue
        merged.append(_task_from_item(item))
        known.add(item.description)

    return MergeResult(merged=merged, items_updated=updated, warnings=warnings)


def _unescape_json_string(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value


def salvage_text(raw: str) -> list[ExtractedItem]:
    """Best-effort scan of unparsable store text for task-like fragments."""
    if not raw:
        return []

    json_hits = list(_JSON_DESCRIPTION.finditer(raw))
    if json_hits:
        items: list[ExtractedItem] = []
        for n, hit in enumerate(json_hits):
            # The enclosing object may list fields in any order, so look at the
            # text between the previous and next description.
            start = json_hits[n - 1].end() if n else 0
            end = json_hits[n + 1].start() if n + 1 < len(json_hits) else len(raw)
            segment_after = raw[hit.end():end]
            segment_before = raw[start:hit.start()]
            passes_hit = _JSON_PASSES.search(segment_after)
            raw_item: dict[str, Any] = {}
            before = list(_JSON_CATEGORY.finditer(segment_before))
            category_hit = before[-1] if before else _JSON_CATEGORY.search(segment_after)
            if category_hit:
                raw_item["category"] = _unescape_json_string(category_hit.group(1))
            items.append(
                ExtractedItem(
                    description=_unescape_json_string(hit.group(1)),
                    passes=bool(passes_hit and passes_hit.group(1) == "true"),
                    raw=raw_item,
                )
            )
        return [i for i in items if i.description]

    items = []
    yaml_hits = list(_YAML_DESCRIPTION.finditer(raw))
    for n, hit in enumerate(yaml_hits):
        end = yaml_hits[n + 1].start() if n + 1 < len(yaml_hits) else len(raw)
        passes_hit = _YAML_PASSES.search(raw, hit.end(), end)
        description = hit.group(1).strip().strip("'\"")
        if description:
            items.append(
                ExtractedItem(
                    description=description,
                    passes=bool(passes_hit and passes_hit.group(1) == "true"),
                )
            )
    return items


def _log_result(result: RecoveryResult) -> None:
    for warning in result.warnings:
        log.warn(f"  {warning}")


def validate_and_recover(path: Path, trusted: list[Task]) -> RecoveryResult:
    """Repair *path* after an iteration, using *trusted* as the source of truth."""
    parsed = read_raw(path)

    if parsed is None:
        try:
            raw = read_text(path, errors="replace")
        except OSError:
            raw = ""
        salvaged = [
            item for item in salvage_text(raw)
            if not any(descriptions_match(t.description, item.description) for t in trusted)
        ]
        if path.is_file():
            backup = create_backup(path)
            log.debug(f"Saved unparsable task store to {backup}")
        restored = [t.copy() for t in trusted] + [_task_from_item(i) for i in salvaged]
        write_store(path, restored)
        result = RecoveryResult(
            recovered=True,
            added=len(salvaged),
            warnings=["Task store could not be parsed; restored from memory."],
        )
        log.warn("Task store corrupted (unparsable) - restored from memory.")
        if salvaged:
            log.info(f"Salvaged {len(salvaged)} new task(s) from the corrupted file.")
        _log_result(result)
        return result

    if validate(parsed.content).valid:
        return RecoveryResult()

    log.warn("Task store format corrupted by the agent - recovering...")
    backup = create_backup(path)
    log.debug(f"Saved corrupted task store to {backup}")
    merge = smart_merge(trusted, parsed.content)
    write_store(path, merge.merged)
    added = len(merge.merged) - len(trusted)
    if merge.items_updated:
        log.success(f"Recovered: merged {merge.items_updated} passes flag(s) into the valid structure.")
    else:
        log.success("Recovered: restored valid task store structure.")
    result = RecoveryResult(
        recovered=True,
        items_updated=merge.items_updated,
        added=added,
        warnings=merge.warnings,
    )
    _log_result(result)
    return result


def _view_match(tasks: list[Task], expanded: list[str], description: str) -> Task | None:
    """Store task a view item refers to.

    The view carries descriptions with file references expanded, so an exact
    hit on the raw or expanded text wins. Otherwise the first incomplete task
    with an overlapping description is taken.
    """
    for task, full in zip(tasks, expanded):
        if description in (task.description, full):
            return task
    for task, full in zip(tasks, expanded):
        if task.passes:
            continue
        if descriptions_match(task.description, description) or descriptions_match(full, description):
            return task
    return None


def sync_passes_from_view(view_path: Path, store_path: Path, base_dir: Path | None = None) -> list[str]:
    """Copy completions the agent recorded in the filtered view into the store.

    *base_dir* is where the view's ``@{path}`` references were resolved from;
    it defaults to the store's directory. Returns the descriptions of store
    tasks that became passing.
    """
    if not view_path.is_file():
        return []
    parsed = read_raw(view_path)
    if parsed is None:
        log.debug(f"Filtered view {view_path} is unparsable; nothing to sync")
        return []
    try:
        tasks = load(store_path)
    except FormatError as exc:
        log.debug(f"Skipping view sync: {exc}")
        return []

    base = base_dir if base_dir is not None else store_path.parent
    expanded = [expand_file_references(t.description, base) for t in tasks]
    synced: list[str] = []
    for item in extract_items(parsed.content):
        if not item.passes:
            continue
        match = _view_match(tasks, expanded, item.description)
        if match is not None and not match.passes:
            match.passes = True
            synced.append(match.description)

    if synced:
        write_store(store_path, tasks)
        log.success(f"Synced {len(synced)} completed item(s) from {view_path.name}")
    return synced
