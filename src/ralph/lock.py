"""Single-host mutual exclusion for run loops via a pid marker file."""

from __future__ import annotations

import atexit
import os
import signal
from pathlib import Path

from ralph import log
from ralph.errors import LockHeldError
from ralph.io_utils import read_text, write_text


def pid_alive(pid: int) -> bool:
    """Probe *pid* with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def read_pid(path: Path) -> int | None:
    try:
        return int(read_text(path).strip())
    except (OSError, UnicodeDecodeError, ValueError):
        return None


class RunLock:
    """Pid marker at *path* held while a run loop is active.

    ``acquire`` installs ``atexit`` and SIGINT/SIGTERM handlers that remove the
    marker, but only while it still names this process.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.pid = os.getpid()
        self.held = False
        self._orig_signal_handlers: dict[int, object] = {}

    def acquire(self) -> None:
        if self.path.exists():
            other = read_pid(self.path)
            if other is not None and other != self.pid and pid_alive(other):
                raise LockHeldError(other)
            log.debug(f"Removing stale run lock (pid {other})")
            self.path.unlink(missing_ok=True)

        write_text(self.path, f"{self.pid}\n")
        self.held = True
        atexit.register(self._release_marker)
        self._install_signal_handlers()

    def release(self) -> None:
        self._restore_signal_handlers()
        atexit.unregister(self._release_marker)
        self._release_marker()

    def _release_marker(self) -> None:
        if not self.held:
            return
        self.held = False
        if read_pid(self.path) == self.pid:
            self.path.unlink(missing_ok=True)

    def _install_signal_handlers(self) -> None:
        self._orig_signal_handlers = {}
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)

        for sig in signals_to_handle:
            try:
                self._orig_signal_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._orig_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError):
                continue
        self._orig_signal_handlers = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        self._release_marker()
        self._restore_signal_handlers()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(128 + signum)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()
