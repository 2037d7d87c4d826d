"""Run event notifications: a user-configured command, else a desktop toast."""

from __future__ import annotations

import subprocess
import sys

from ralph import log

EVENTS = ("prd_complete", "iteration_complete", "run_stopped", "task_complete", "error")

DEFAULT_MESSAGES: dict[str, str] = {
    "prd_complete": "Ralph: PRD Complete! All tasks finished.",
    "iteration_complete": "Ralph: Iteration complete.",
    "run_stopped": "Ralph: Run stopped.",
    "task_complete": "Ralph: Task complete.",
    "error": "Ralph: An error occurred.",
}

# Events worth a desktop toast when no command is configured.
_DESKTOP_EVENTS = {"prd_complete", "run_stopped", "error"}


def _run_quiet(*cmd: str) -> bool:
    """Fire-and-forget subprocess; ``False`` if it could not be started."""
    try:
        subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=sys.platform != "win32",
        )
    except (FileNotFoundError, OSError):
        return False
    return True


def _desktop_done(message: str) -> None:
    if sys.platform == "darwin":
        _run_quiet("afplay", "/System/Library/Sounds/Glass.aiff")
        _run_quiet("osascript", "-e", f'display notification "{message}" with title "Ralph"')
    elif sys.platform.startswith("linux"):
        _run_quiet("notify-send", "Ralph", message)
        _run_quiet("paplay", "/usr/share/sounds/freedesktop/stereo/complete.oga")
    elif sys.platform == "win32":
        _run_quiet("powershell.exe", "-Command", "[System.Media.SystemSounds]::Asterisk.Play()")


def _desktop_error(message: str) -> None:
    if sys.platform == "darwin":
        _run_quiet("osascript", "-e", f'display notification "{message}" with title "Ralph - Error"')
    elif sys.platform.startswith("linux"):
        _run_quiet("notify-send", "-u", "critical", "Ralph - Error", message)
    elif sys.platform == "win32":
        _run_quiet("powershell.exe", "-Command", "[System.Media.SystemSounds]::Hand.Play()")


def format_message(event: str, detail: str = "") -> str:
    base = DEFAULT_MESSAGES.get(event, f"Ralph: {event}")
    return f"{base} {detail}".strip() if detail else base


class Notifier:
    """Dispatches run events.

    With ``notify_command`` set, the command is split on whitespace and the
    message appended as its last argument (``ntfy pub topic``,
    ``notify-send Ralph``). Notification failures never stop the run.
    """

    def __init__(self, notify_command: str = "", *, desktop: bool = False) -> None:
        self.notify_command = notify_command.strip()
        self.desktop = desktop

    def emit(self, event: str, detail: str = "") -> None:
        message = format_message(event, detail)
        if self.notify_command:
            cmd = [*self.notify_command.split(), message]
            log.debug(f"Notify: {' '.join(cmd)}")
            if not _run_quiet(*cmd):
                log.debug(f"Notification command {cmd[0]} could not be started")
            return
        if not self.desktop or event not in _DESKTOP_EVENTS:
            log.debug(f"No notifyCommand configured, skipping {event} notification")
            return
        if event == "prd_complete":
            _desktop_done(message)
        else:
            _desktop_error(message)
