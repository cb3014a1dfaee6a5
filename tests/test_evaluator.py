from __future__ import annotations

from datetime import datetime, timezone
import itertools

import pytest

from connwatch.core.evaluator import evaluate
from connwatch.core.models import (
    ConnectivityState,
    ProbeKind,
    ProbeResult,
    ProbeSnapshot,
    RouteContext,
    RouteKind,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _snapshot(domestic: bool, global_: bool, blocked_direct: bool, blocked_proxy: bool) -> ProbeSnapshot:
    def result(kind: ProbeKind, ok: bool) -> ProbeResult:
        return ProbeResult(kind=kind, target=f"https://{kind.value}.test/", ok=ok)

    return ProbeSnapshot(
        timestamp=NOW,
        domestic=result(ProbeKind.DOMESTIC, domestic),
        global_=result(ProbeKind.GLOBAL, global_),
        blocked_direct=result(ProbeKind.BLOCKED_DIRECT, blocked_direct),
        blocked_via_proxy=result(ProbeKind.BLOCKED_VIA_PROXY, blocked_proxy),
    )


def _expected_state(vpn, domestic, global_, blocked_direct, blocked_proxy, endpoint):
    if vpn and (blocked_proxy or blocked_direct):
        return ConnectivityState.USABLE
    if vpn and (global_ or domestic):
        return ConnectivityState.VPN_ISSUE
    if vpn:
        return ConnectivityState.VPN_ISSUE
    if blocked_direct:
        return ConnectivityState.USABLE
    if blocked_proxy:
        return ConnectivityState.USABLE
    if domestic and global_:
        return ConnectivityState.DEGRADED
    if domestic:
        return ConnectivityState.DEGRADED
    if endpoint and not blocked_proxy:
        return ConnectivityState.DEGRADED
    return ConnectivityState.OFFLINE


def test_truth_table_matches_rule_precedence() -> None:
    for vpn, domestic, global_, blocked_direct, blocked_proxy, proxy_active, endpoint in itertools.product(
        (False, True), repeat=7
    ):
        assessment = evaluate(
            _snapshot(domestic, global_, blocked_direct, blocked_proxy),
            RouteContext(vpn_active=vpn, vpn_client_name="WireGuard" if vpn else None),
            proxy_active=proxy_active,
            proxy_endpoint_connected=endpoint,
        )
        expected = _expected_state(vpn, domestic, global_, blocked_direct, blocked_proxy, endpoint)
        assert assessment.state is expected, (vpn, domestic, global_, blocked_direct, blocked_proxy, endpoint)
        assert assessment.diagnosis.title
        assert assessment.diagnosis.explanation
        assert assessment.diagnosis.actions


def test_general_internet_without_restricted_services() -> None:
    assessment = evaluate(
        _snapshot(True, True, False, False),
        RouteContext(vpn_active=False),
        proxy_active=False,
        proxy_endpoint_connected=False,
    )
    assert assessment.state is ConnectivityState.DEGRADED
    assert assessment.diagnosis.title == "General internet works, restricted services fail"
    assert assessment.detail_line == "Route: DIRECT"


def test_vpn_with_blocked_direct_is_usable() -> None:
    assessment = evaluate(
        _snapshot(False, False, True, False),
        RouteContext(vpn_active=True, vpn_client_name="Happ"),
        proxy_active=False,
        proxy_endpoint_connected=False,
    )
    assert assessment.state is ConnectivityState.USABLE
    assert assessment.diagnosis.title == "VPN route is active"
    assert assessment.detail_line == "Route: VPN (Happ)"


@pytest.mark.parametrize(
    ("snapshot", "title"),
    [
        (_snapshot(True, False, False, False), "VPN is up, but blocked routes fail"),
        (_snapshot(False, False, False, False), "VPN is up but not passing traffic"),
    ],
)
def test_vpn_issue_diagnoses(snapshot: ProbeSnapshot, title: str) -> None:
    assessment = evaluate(
        snapshot,
        RouteContext(vpn_active=True),
        proxy_active=False,
        proxy_endpoint_connected=True,
    )
    assert assessment.state is ConnectivityState.VPN_ISSUE
    assert assessment.diagnosis.title == title
    assert assessment.detail_line == "Route: VPN"


def test_reachable_but_unusable_proxy() -> None:
    assessment = evaluate(
        _snapshot(False, False, False, False),
        RouteContext(vpn_active=False),
        proxy_active=False,
        proxy_endpoint_connected=True,
    )
    assert assessment.state is ConnectivityState.DEGRADED
    assert assessment.diagnosis.title == "Proxy endpoint is reachable but unusable"


def test_route_indicators() -> None:
    direct = evaluate(
        _snapshot(True, False, False, True),
        RouteContext(vpn_active=False),
        proxy_active=True,
        proxy_endpoint_connected=True,
    )
    assert direct.is_route_active(RouteKind.DIRECT)
    assert direct.is_route_active(RouteKind.PROXY)
    assert not direct.is_route_active(RouteKind.VPN)
    assert direct.detail_line == "Route: PROXY"

    tunnelled = evaluate(
        _snapshot(True, True, True, True),
        RouteContext(vpn_active=True, vpn_client_name="Xray"),
        proxy_active=True,
        proxy_endpoint_connected=True,
    )
    assert not tunnelled.is_route_active(RouteKind.DIRECT)
    assert tunnelled.is_route_active(RouteKind.VPN)
    assert tunnelled.detail_line == "Route: VPN + PROXY (Xray)"
