"""Diagnostics collection."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys
from typing import TYPE_CHECKING

from connwatch.core.logging_setup import redact
from connwatch.core.settings import MonitorSettings, SettingsStore
from connwatch.core.state_store import STATE_FILE
from connwatch.core.storage import get_config_dir, get_logs_dir, get_state_dir

if TYPE_CHECKING:
    from connwatch.core.monitor import MonitorOrchestrator
    from connwatch.core.pulse import PulseMonitor

_ROUTE_TOOLS = ("scutil", "route", "nmcli", "ip", "ps")
_NOTIFY_TOOLS = ("notify-send", "osascript")
_PROXY_ENV_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "NO_PROXY")


def _tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def _run_command(cmd: list[str], *, timeout_s: float = 3.0) -> tuple[bool, str]:
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        return False, str(exc)
    if result.returncode != 0:
        detail = (result.stderr or "").strip() or (result.stdout or "").strip() or "unknown error"
        return False, detail
    return True, (result.stdout or "").strip()


def _settings_lines(settings: MonitorSettings) -> list[str]:
    lines = [
        f"- Interval: {settings.normalized_interval:.0f}s",
        f"- Timeout: {settings.normalized_timeout:.0f}s",
        f"- Domestic: {redact(settings.domestic_url)} (+{len(settings.domestic_extra_urls)} extra)",
        f"- Global: {redact(settings.global_url)} (+{len(settings.global_extra_urls)} extra)",
        f"- Blocked: {redact(settings.blocked_url)} (+{len(settings.blocked_extra_urls)} extra)",
    ]
    if settings.proxy_enabled:
        lines.append(
            f"- Proxy: {settings.proxy_type.title} {settings.proxy_host}:{settings.proxy_port}"
        )
    else:
        lines.append("- Proxy: disabled")
    lines.append(
        f"- Notifications: {'on' if settings.notifications_enabled else 'off'}"
        f" (recovery {'on' if settings.notify_on_recovery else 'off'},"
        f" cooldown {settings.normalized_notification_cooldown / 60:.0f} min)"
    )
    if settings.quiet_hours_enabled:
        lines.append(
            f"- Quiet hours: {settings.normalized_quiet_hours_start:02d}:00"
            f"-{settings.normalized_quiet_hours_end:02d}:00"
        )
    enabled_services = [s.name for s in settings.critical_services if s.enabled]
    lines.append(f"- Critical services: {', '.join(enabled_services) or 'none'}")
    lines.append(
        f"- National pulse: {'on' if settings.pulse_enabled else 'off'}"
        f" every {settings.normalized_pulse_interval:.0f}s,"
        f" country {settings.normalized_country_code}"
    )
    return lines


def collect_diagnostics(
    settings_store: SettingsStore | None = None,
    *,
    monitor: "MonitorOrchestrator | None" = None,
    pulse: "PulseMonitor | None" = None,
) -> str:
    lines: list[str] = []
    lines.append("connwatch diagnostics")
    lines.append("")

    lines.append("System")
    lines.append(f"- OS: {platform.system()} {platform.release()}")
    lines.append(f"- Kernel: {platform.version()}")
    lines.append(f"- Arch: {platform.machine()}")
    lines.append(f"- Python: {sys.version.split()[0]}")
    lines.append("")

    lines.append("Tools")
    for name in (*_ROUTE_TOOLS, *_NOTIFY_TOOLS):
        lines.append(f"- {name}: {'yes' if _tool_available(name) else 'no'}")
    lines.append("")

    lines.append("Environment Proxies (ignored by direct probes)")
    for name in _PROXY_ENV_VARS:
        value = os.environ.get(name) or os.environ.get(name.lower()) or ""
        lines.append(f"- {name}: {redact(value) if value else '(unset)'}")
    lines.append("")

    lines.append("Paths")
    lines.append(f"- Config: {get_config_dir()}")
    state_path = get_state_dir() / STATE_FILE
    lines.append(f"- State file: {'present' if state_path.exists() else 'absent'} ({state_path})")
    lines.append(f"- Logs: {get_logs_dir()}")
    lines.append("")

    lines.append("Default Route")
    if platform.system() == "Darwin":
        cmd = ["route", "-n", "get", "default"]
    else:
        cmd = ["ip", "route", "show", "default"]
    if _tool_available(cmd[0]):
        ok, output = _run_command(cmd)
        if ok:
            for raw_line in output.splitlines():
                line = raw_line.strip()
                if line:
                    lines.append(f"- {line}")
            if not output:
                lines.append("- no default route")
        else:
            lines.append(f"- Error reading default route: {output}")
    else:
        lines.append(f"- {cmd[0]} unavailable")
    lines.append("")

    if settings_store is not None:
        lines.append("Settings")
        lines.extend(_settings_lines(settings_store.settings))
        if settings_store.last_load_error:
            lines.append(f"- Load error: {settings_store.last_load_error}")
        lines.append("")

    if monitor is not None:
        lines.append(monitor.diagnostics_report())
        lines.append("")

    if pulse is not None:
        lines.append(pulse.diagnostics_report())
        lines.append("")

    return "\n".join(lines)
