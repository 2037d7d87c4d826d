"""UTF-8 text I/O helpers shared by the store, lock and workspace code."""

from __future__ import annotations

import os
import tempfile
from io import TextIOWrapper
from pathlib import Path
from typing import Any

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict") -> str:
    """Read *path* as UTF-8 text."""
    return Path(path).read_text(encoding="utf-8", errors=errors)


def write_text(path: PathLike, text: str) -> None:
    """Write *text* to *path* as UTF-8, creating parent directories."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def replace_text(path: PathLike, text: str) -> None:
    """Rewrite *path* in one step via a sibling temp file and ``os.replace``.

    Readers never observe a truncated file, even if the process dies mid-write.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=p.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_name, p)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def open_text(
    path: PathLike,
    mode: str = "r",
    *,
    encoding: str = "utf-8",
    errors: str = "strict",
    **kwargs: Any,
) -> TextIOWrapper:
    """Open *path* for text I/O (append-mode logs, raw event streams)."""
    return open(Path(path), mode, encoding=encoding, errors=errors, **kwargs)
