"""Classify a probe snapshot into a connectivity state with a diagnosis.

Rules are checked top to bottom and the first match wins. The order matters:
a working VPN must be recognised before the "general internet works" rule,
and the direct path before the proxy path.
"""

from __future__ import annotations

from connwatch.core.models import (
    ConnectivityAssessment,
    ConnectivityState,
    Diagnosis,
    ProbeSnapshot,
    RouteContext,
    RouteIndicator,
    RouteKind,
    format_route_summary,
)

VPN_WORKING = Diagnosis(
    title="VPN route is active",
    explanation="A system VPN is carrying traffic and restricted services are reachable.",
    actions=(
        "Keep the current VPN connection.",
        "If pages feel slow, try another server in your VPN client.",
    ),
)

VPN_BLOCKED_ROUTES_FAIL = Diagnosis(
    title="VPN is up, but blocked routes fail",
    explanation=(
        "The tunnel is connected and ordinary sites load, but restricted services "
        "do not answer through it. The VPN server is probably filtered or overloaded."
    ),
    actions=(
        "Switch to a different VPN server or protocol.",
        "Reconnect the VPN client.",
        "Check whether your VPN subscription is still active.",
    ),
)

VPN_NO_TRAFFIC = Diagnosis(
    title="VPN is up but not passing traffic",
    explanation="A tunnel interface is active, yet no probe got an answer through it.",
    actions=(
        "Disconnect and reconnect the VPN client.",
        "Try another VPN server or protocol.",
        "Disable the VPN briefly to check whether the direct connection works.",
    ),
)

DIRECT_OPEN = Diagnosis(
    title="Direct path is open",
    explanation="Restricted services are reachable without any VPN or proxy.",
    actions=("No action needed.",),
)

PROXY_WORKING = Diagnosis(
    title="Proxy path is working",
    explanation="Restricted services are reachable through the configured local proxy.",
    actions=(
        "Route blocked apps through the local proxy.",
        "Keep the proxy client running.",
    ),
)

GENERAL_ONLY = Diagnosis(
    title="General internet works, restricted services fail",
    explanation=(
        "Domestic and global sites load, but restricted services are blocked on the "
        "direct path and the proxy path is not delivering them."
    ),
    actions=(
        "Start or reconnect your VPN or proxy client.",
        "Check the proxy host and port in settings.",
        "Try another VPN server or protocol.",
    ),
)

DOMESTIC_ONLY = Diagnosis(
    title="Only domestic services are reachable",
    explanation="Sites hosted inside the country load, but international traffic fails.",
    actions=(
        "Wait a few minutes; international links are often restored without action.",
        "Try a VPN protocol designed for heavy filtering.",
        "Check the national pulse for a wider disruption.",
    ),
)

PROXY_UNUSABLE = Diagnosis(
    title="Proxy endpoint is reachable but unusable",
    explanation=(
        "The local proxy port accepts connections, but requests through it do not "
        "reach restricted services. The proxy client is probably not connected upstream."
    ),
    actions=(
        "Reconnect the proxy client to its server.",
        "Verify the proxy type (SOCKS5 or HTTP) matches the client.",
        "Try another server in the proxy client.",
    ),
)

NO_ROUTE = Diagnosis(
    title="No usable route detected",
    explanation="No probe succeeded on the direct path, the VPN, or the proxy.",
    actions=(
        "Check Wi-Fi or Ethernet and your router.",
        "Restart the modem if other devices are offline too.",
        "Check the national pulse for a wider outage.",
    ),
)


def evaluate(
    snapshot: ProbeSnapshot,
    route: RouteContext,
    *,
    proxy_active: bool,
    proxy_endpoint_connected: bool,
) -> ConnectivityAssessment:
    state, diagnosis = _classify(snapshot, route, proxy_endpoint_connected)

    direct_ok = snapshot.domestic.ok or snapshot.global_.ok or snapshot.blocked_direct.ok
    indicators = (
        RouteIndicator(RouteKind.DIRECT, not route.vpn_active and direct_ok),
        RouteIndicator(RouteKind.VPN, route.vpn_active),
        RouteIndicator(RouteKind.PROXY, proxy_active),
    )

    detail_line = format_route_summary(vpn_active=route.vpn_active, proxy_active=proxy_active)
    if route.vpn_active and route.vpn_client_name:
        detail_line = f"{detail_line} ({route.vpn_client_name})"

    return ConnectivityAssessment(
        state=state,
        diagnosis=diagnosis,
        route_indicators=indicators,
        detail_line=detail_line,
    )


def _classify(
    snapshot: ProbeSnapshot,
    route: RouteContext,
    proxy_endpoint_connected: bool,
) -> tuple[ConnectivityState, Diagnosis]:
    domestic_ok = snapshot.domestic.ok
    global_ok = snapshot.global_.ok
    blocked_direct_ok = snapshot.blocked_direct.ok
    blocked_proxy_ok = snapshot.blocked_via_proxy.ok

    if route.vpn_active:
        if blocked_proxy_ok or blocked_direct_ok:
            return ConnectivityState.USABLE, VPN_WORKING
        if global_ok or domestic_ok:
            return ConnectivityState.VPN_ISSUE, VPN_BLOCKED_ROUTES_FAIL
        return ConnectivityState.VPN_ISSUE, VPN_NO_TRAFFIC

    if blocked_direct_ok:
        return ConnectivityState.USABLE, DIRECT_OPEN
    if blocked_proxy_ok:
        return ConnectivityState.USABLE, PROXY_WORKING
    if domestic_ok and global_ok:
        return ConnectivityState.DEGRADED, GENERAL_ONLY
    if domestic_ok:
        return ConnectivityState.DEGRADED, DOMESTIC_ONLY
    if proxy_endpoint_connected:
        return ConnectivityState.DEGRADED, PROXY_UNUSABLE
    return ConnectivityState.OFFLINE, NO_ROUTE
