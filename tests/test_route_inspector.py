from __future__ import annotations

import asyncio
import subprocess

import connwatch.core.route_inspector as ri
from connwatch.core.models import RouteContext


def _fake_run(outputs: dict[tuple[str, ...], str]):
    calls: list[list[str]] = []

    def fake_run(cmd, **_kwargs):  # noqa: ANN001
        calls.append(cmd)
        key = tuple(cmd)
        if key in outputs:
            return subprocess.CompletedProcess(cmd, 0, stdout=outputs[key], stderr="")
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="not configured")

    return fake_run, calls


NMCLI = ("nmcli", "-t", "-f", "NAME,TYPE,STATE", "connection", "show", "--active")
IP4 = ("ip", "route", "show", "default")
IP6 = ("ip", "-6", "route", "show", "default")
PS = ("ps", "-A", "-o", "comm=")


def _linux(monkeypatch, outputs: dict[tuple[str, ...], str]) -> list[list[str]]:
    fake_run, calls = _fake_run(outputs)
    monkeypatch.setattr(ri, "_is_macos", lambda: False)
    monkeypatch.setattr(ri, "_tool_available", lambda _name: True)
    monkeypatch.setattr(ri.subprocess, "run", fake_run)
    return calls


def test_parse_scutil_prefers_quoted_name() -> None:
    output = (
        "Available network connection services in the current set (*=enabled):\n"
        '* (Disconnected)   1111 VPN (IKEv2)  "Office"   [VPN/IKEv2]\n'
        '* (Connected)      2222 VPN (com.wireguard.macos) "Home WG"  [VPN/WireGuard]\n'
    )
    assert ri.parse_scutil_connected_service(output) == "Home WG"
    assert ri.parse_scutil_connected_service("* (Disconnected) nothing") is None


def test_parse_nmcli_active_vpn() -> None:
    output = (
        "Wired connection 1:802-3-ethernet:activated\n"
        "corp\\:vpn:vpn:activating\n"
        "wg-home:wireguard:activated\n"
    )
    assert ri.parse_nmcli_active_vpn(output) == "wg-home"
    assert ri.parse_nmcli_active_vpn("corp\\:vpn:vpn:activated") == "corp:vpn"
    assert ri.parse_nmcli_active_vpn("Wired:802-3-ethernet:activated") is None


def test_parse_default_route_interfaces() -> None:
    mac = "   route to: default\ndestination: default\n  interface: utun4\n      flags: <UP>"
    assert ri.parse_route_get_interface(mac) == "utun4"
    assert ri.parse_ip_route_interface("default via 10.8.0.1 dev tun0 proto static") == "tun0"
    assert ri.parse_ip_route_interface("unreachable default") is None


def test_tunnel_prefixes_and_process_match() -> None:
    assert ri.is_tunnel_interface("wg0")
    assert ri.is_tunnel_interface("utun3")
    assert not ri.is_tunnel_interface("wlan0")
    assert ri.match_vpn_process("/usr/sbin/sshd\n/usr/bin/sing-box\n") == "Sing-box"
    assert ri.match_vpn_process("bash\nsshd\n") is None


def test_named_vpn_service_wins(monkeypatch) -> None:
    calls = _linux(monkeypatch, {NMCLI: "Work VPN:vpn:activated\n"})

    assert ri.detect_route_context() == RouteContext(vpn_active=True, vpn_client_name="Work VPN")
    assert calls == [list(NMCLI)]


def test_tunnel_default_route_resolves_client_from_processes(monkeypatch) -> None:
    _linux(
        monkeypatch,
        {
            NMCLI: "Wired:802-3-ethernet:activated\n",
            IP4: "default via 192.168.1.1 dev wlan0 proto dhcp\n",
            IP6: "default dev tun0 metric 1024\n",
            PS: "systemd\n/usr/sbin/openvpn\nbash\n",
        },
    )

    assert ri.detect_route_context() == RouteContext(vpn_active=True, vpn_client_name="OpenVPN")


def test_tunnel_with_unknown_client(monkeypatch) -> None:
    _linux(
        monkeypatch,
        {
            IP4: "default via 10.0.0.1 dev wg0\n",
            PS: "systemd\nbash\n",
        },
    )

    context = ri.detect_route_context()
    assert context.vpn_active is True
    assert context.vpn_client_name == ri.UNKNOWN_CLIENT_LABEL


def test_no_tunnel_means_inactive(monkeypatch) -> None:
    calls = _linux(monkeypatch, {IP4: "default via 192.168.1.1 dev eth0\n", PS: "openvpn\n"})

    assert ri.detect_route_context() == RouteContext(vpn_active=False, vpn_client_name=None)
    assert list(PS) not in calls


def test_missing_tools_mean_inactive(monkeypatch) -> None:
    monkeypatch.setattr(ri, "_is_macos", lambda: False)
    monkeypatch.setattr(ri, "_tool_available", lambda _name: False)

    def unexpected(*_args, **_kwargs):
        raise AssertionError("no command should run")

    monkeypatch.setattr(ri.subprocess, "run", unexpected)

    assert ri.detect_route_context() == RouteContext(vpn_active=False)


def test_command_timeout_is_no_information(monkeypatch) -> None:
    monkeypatch.setattr(ri, "_tool_available", lambda _name: True)

    def slow(cmd, **kwargs):  # noqa: ANN001
        raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

    monkeypatch.setattr(ri.subprocess, "run", slow)
    assert ri._command_output(["ps", "-A"]) is None


def test_macos_uses_scutil_and_route(monkeypatch) -> None:
    fake_run, calls = _fake_run(
        {
            ("route", "-n", "get", "default"): "  interface: utun2\n",
            PS: "/Applications/Hiddify.app/Contents/MacOS/Hiddify\n",
        }
    )
    monkeypatch.setattr(ri, "_is_macos", lambda: True)
    monkeypatch.setattr(ri, "_tool_available", lambda _name: True)
    monkeypatch.setattr(ri.subprocess, "run", fake_run)

    assert ri.detect_route_context() == RouteContext(vpn_active=True, vpn_client_name="Hiddify")
    assert calls[0] == ["scutil", "--nc", "list"]


def test_inspector_caches_within_ttl() -> None:
    now = [100.0]
    detections: list[int] = []

    def detector() -> RouteContext:
        detections.append(1)
        return RouteContext(vpn_active=len(detections) > 1)

    inspector = ri.RouteInspector(cache_ttl=2.0, detector=detector, clock=lambda: now[0])

    async def scenario() -> list[RouteContext]:
        results = list(await asyncio.gather(inspector.inspect(), inspector.inspect()))
        now[0] += 1.5
        results.append(await inspector.inspect())
        now[0] += 1.0
        results.append(await inspector.inspect())
        inspector.invalidate()
        results.append(await inspector.inspect())
        return results

    results = asyncio.run(scenario())
    assert [r.vpn_active for r in results] == [False, False, False, True, True]
    assert len(detections) == 3
