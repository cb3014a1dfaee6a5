"""System route inspection: is a VPN/tunnel carrying traffic, and whose is it?

Detection shells out to platform tools (``scutil``/``route`` on macOS,
``nmcli``/``ip`` on Linux, ``ps`` on both). A missing tool, a non-zero exit or a
timeout simply means "no information"; inspection never raises.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import re
import shutil
import subprocess
import time
from typing import Callable

from connwatch.core.models import RouteContext

logger = logging.getLogger(__name__)

CACHE_TTL_S = 2.0
UNKNOWN_CLIENT_LABEL = "Unknown VPN client"

TUNNEL_INTERFACE_PREFIXES: tuple[str, ...] = ("utun", "tun", "tap", "ppp", "wg")

KNOWN_VPN_CLIENTS: tuple[tuple[str, str], ...] = (
    ("happ", "Happ"),
    ("hiddify", "Hiddify"),
    ("openvpn", "OpenVPN"),
    ("wireguard", "WireGuard"),
    ("v2ray", "V2Ray"),
    ("xray", "Xray"),
    ("sing-box", "Sing-box"),
    ("clash", "Clash"),
    ("outline", "Outline"),
    ("protonvpn", "ProtonVPN"),
    ("surfshark", "Surfshark"),
)

_NMCLI_VPN_TYPES = {"vpn", "wireguard"}


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


def _command_output(cmd: list[str]) -> str | None:
    if not _tool_available(cmd[0]):
        return None
    ok, output = _run_command(cmd)
    if not ok:
        logger.debug("Route command failed: %s: %s", " ".join(cmd), output)
        return None
    return output


def is_tunnel_interface(name: str) -> bool:
    return name.startswith(TUNNEL_INTERFACE_PREFIXES)


def parse_scutil_connected_service(output: str) -> str | None:
    for raw_line in output.splitlines():
        if "(Connected)" not in raw_line:
            continue
        line = raw_line.strip()
        quoted = re.search(r'"([^"]*)"', line)
        if quoted and quoted.group(1).strip():
            return quoted.group(1).strip()
        compact = re.sub(r"\s+", " ", line)
        if compact:
            return compact
    return None


def parse_nmcli_active_vpn(output: str) -> str | None:
    """Parse ``nmcli -t -f NAME,TYPE,STATE connection show --active``."""
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        # NAME may itself contain escaped colons; TYPE and STATE never do.
        parts = line.rsplit(":", 2)
        if len(parts) != 3:
            continue
        name, conn_type, state = parts
        if conn_type.strip().lower() not in _NMCLI_VPN_TYPES:
            continue
        if state.strip().lower() != "activated":
            continue
        name = name.replace("\\:", ":").strip()
        if name:
            return name
    return None


def parse_route_get_interface(output: str) -> str | None:
    """Parse ``route -n get default`` output (macOS)."""
    for line in output.splitlines():
        trimmed = line.strip()
        if not trimmed.startswith("interface:"):
            continue
        name = trimmed[len("interface:"):].strip()
        if name:
            return name
    return None


def parse_ip_route_interface(output: str) -> str | None:
    """Parse ``ip route show default`` output (Linux)."""
    for line in output.splitlines():
        tokens = line.split()
        if "dev" in tokens:
            idx = tokens.index("dev")
            if idx + 1 < len(tokens):
                return tokens[idx + 1]
    return None


def match_vpn_process(output: str) -> str | None:
    lowered = output.lower()
    for needle, label in KNOWN_VPN_CLIENTS:
        if needle in lowered:
            return label
    return None


def _is_macos() -> bool:
    return platform.system() == "Darwin"


def detect_connected_vpn_service() -> str | None:
    if _is_macos():
        output = _command_output(["scutil", "--nc", "list"])
        return parse_scutil_connected_service(output) if output else None
    output = _command_output(
        ["nmcli", "-t", "-f", "NAME,TYPE,STATE", "connection", "show", "--active"]
    )
    return parse_nmcli_active_vpn(output) if output else None


def detect_default_route_interfaces() -> list[str]:
    if _is_macos():
        commands = (
            ["route", "-n", "get", "default"],
            ["route", "-n", "get", "-inet6", "default"],
        )
        parser = parse_route_get_interface
    else:
        commands = (
            ["ip", "route", "show", "default"],
            ["ip", "-6", "route", "show", "default"],
        )
        parser = parse_ip_route_interface

    interfaces: list[str] = []
    for cmd in commands:
        output = _command_output(cmd)
        name = parser(output) if output else None
        if name:
            interfaces.append(name)
    return interfaces


def detect_vpn_process_name() -> str | None:
    output = _command_output(["ps", "-A", "-o", "comm="])
    return match_vpn_process(output) if output else None


def detect_route_context() -> RouteContext:
    service_name = detect_connected_vpn_service()
    if service_name:
        return RouteContext(vpn_active=True, vpn_client_name=service_name)

    if not any(is_tunnel_interface(name) for name in detect_default_route_interfaces()):
        return RouteContext(vpn_active=False, vpn_client_name=None)

    return RouteContext(
        vpn_active=True,
        vpn_client_name=detect_vpn_process_name() or UNKNOWN_CLIENT_LABEL,
    )


class RouteInspector:
    """Serializes route detection and caches the answer for ``cache_ttl`` seconds."""

    def __init__(
        self,
        *,
        cache_ttl: float = CACHE_TTL_S,
        detector: Callable[[], RouteContext] = detect_route_context,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache_ttl = cache_ttl
        self._detector = detector
        self._clock = clock
        self._lock = asyncio.Lock()
        self._cache: tuple[float, RouteContext] | None = None

    def invalidate(self) -> None:
        self._cache = None

    async def inspect(self) -> RouteContext:
        async with self._lock:
            if self._cache is not None:
                cached_at, context = self._cache
                if self._clock() - cached_at < self._cache_ttl:
                    return context

            context = await asyncio.to_thread(self._detector)
            self._cache = (self._clock(), context)
            return context
