"""Notification sinks.

Backends:
- `notify-send` (libnotify) on Linux
- `osascript` on macOS

Anything else, or a failing backend, falls back to the log.
"""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
from typing import Protocol

logger = logging.getLogger(__name__)

APP_TITLE = "connwatch"


class NotificationSink(Protocol):
    def notify(self, title: str, body: str) -> None: ...


class LoggingNotifier:
    def notify(self, title: str, body: str) -> None:
        logger.info("Notification: %s: %s", title, body)


def _applescript_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


class DesktopNotifier:
    def __init__(self, *, timeout_s: float = 5.0) -> None:
        self._timeout_s = timeout_s
        self._fallback = LoggingNotifier()

    def command_for(self, title: str, body: str) -> list[str] | None:
        if platform.system() == "Darwin":
            if shutil.which("osascript") is None:
                return None
            script = (
                f"display notification {_applescript_quote(body)} "
                f"with title {_applescript_quote(title)} subtitle {_applescript_quote(APP_TITLE)}"
            )
            return ["osascript", "-e", script]
        if shutil.which("notify-send") is None:
            return None
        return ["notify-send", "--app-name", APP_TITLE, title, body]

    def notify(self, title: str, body: str) -> None:
        cmd = self.command_for(title, body)
        if cmd is None:
            self._fallback.notify(title, body)
            return
        try:
            result = subprocess.run(
                cmd,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Desktop notification failed: %s", exc)
            self._fallback.notify(title, body)
            return
        if result.returncode != 0:
            logger.warning(
                "Desktop notification failed (%s): %s",
                cmd[0],
                (result.stderr or "").strip() or f"exit {result.returncode}",
            )
            self._fallback.notify(title, body)
