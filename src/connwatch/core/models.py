"""Connectivity data model shared by the probe engine, evaluator and monitor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import math
from typing import Any
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_int(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class ConnectivityState(str, Enum):
    CHECKING = "checking"
    OFFLINE = "offline"
    DEGRADED = "degraded"
    VPN_ISSUE = "vpn_issue"
    USABLE = "usable"

    @classmethod
    def from_stored(cls, raw: Any) -> "ConnectivityState | None":
        """Decode a persisted raw value, including names used by older releases."""
        if not isinstance(raw, str):
            return None
        try:
            return cls(raw)
        except ValueError:
            pass
        return _LEGACY_STATE_NAMES.get(raw)

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def short_label(self) -> str:
        return _SHORT_LABELS[self]

    @property
    def detail(self) -> str:
        return _DETAILS[self]


_SEVERITY = {
    ConnectivityState.CHECKING: -1,
    ConnectivityState.OFFLINE: 0,
    ConnectivityState.VPN_ISSUE: 0,
    ConnectivityState.DEGRADED: 1,
    ConnectivityState.USABLE: 2,
}

_SHORT_LABELS = {
    ConnectivityState.CHECKING: "CHECKING",
    ConnectivityState.OFFLINE: "OFFLINE",
    ConnectivityState.DEGRADED: "DEGRADED",
    ConnectivityState.VPN_ISSUE: "VPN ISSUE",
    ConnectivityState.USABLE: "USABLE",
}

_DETAILS = {
    ConnectivityState.CHECKING: "Running live connectivity checks",
    ConnectivityState.OFFLINE: "No reliable connectivity",
    ConnectivityState.DEGRADED: "Internet is partially available",
    ConnectivityState.VPN_ISSUE: "VPN is connected but not delivering traffic",
    ConnectivityState.USABLE: "Internet is currently usable",
}

_LEGACY_STATE_NAMES = {
    "openInternet": ConnectivityState.USABLE,
    "vpnOK": ConnectivityState.USABLE,
    "vpnOrProxyActive": ConnectivityState.USABLE,
    "domesticOnly": ConnectivityState.DEGRADED,
    "globalLimited": ConnectivityState.DEGRADED,
    "vpnIssue": ConnectivityState.VPN_ISSUE,
}


class ProbeKind(str, Enum):
    DOMESTIC = "domestic"
    GLOBAL = "global"
    BLOCKED_DIRECT = "blocked_direct"
    BLOCKED_VIA_PROXY = "blocked_via_proxy"

    @property
    def title(self) -> str:
        return _PROBE_TITLES[self]


_PROBE_TITLES = {
    ProbeKind.DOMESTIC: "Domestic",
    ProbeKind.GLOBAL: "Global",
    ProbeKind.BLOCKED_DIRECT: "Blocked Service (Direct)",
    ProbeKind.BLOCKED_VIA_PROXY: "Blocked Service (Proxy)",
}


@dataclass(frozen=True, slots=True)
class RouteContext:
    vpn_active: bool
    vpn_client_name: str | None = None


@dataclass(frozen=True, slots=True)
class ProbeResult:
    kind: ProbeKind
    target: str
    ok: bool
    status_code: int | None = None
    latency_ms: int | None = None
    error: str | None = None

    @property
    def summary(self) -> str:
        if self.ok:
            if self.status_code is not None and self.latency_ms is not None:
                return f"OK {self.status_code} ({self.latency_ms} ms)"
            return "Reachable"
        if self.status_code is not None and self.latency_ms is not None:
            return f"HTTP {self.status_code} ({self.latency_ms} ms)"
        if self.error:
            return self.error
        return "Failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "ok": self.ok,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProbeResult | None":
        try:
            kind = ProbeKind(data.get("kind"))
        except ValueError:
            return None
        error = data.get("error")
        return cls(
            kind=kind,
            target=str(data.get("target", "")),
            ok=bool(data.get("ok", False)),
            status_code=_optional_int(data.get("status_code")),
            latency_ms=_optional_int(data.get("latency_ms")),
            error=str(error) if error is not None else None,
        )


@dataclass(frozen=True, slots=True)
class ProbeSnapshot:
    timestamp: datetime
    domestic: ProbeResult
    global_: ProbeResult
    blocked_direct: ProbeResult
    blocked_via_proxy: ProbeResult

    @property
    def all_results(self) -> tuple[ProbeResult, ...]:
        return (self.domestic, self.global_, self.blocked_direct, self.blocked_via_proxy)

    def result_for(self, kind: ProbeKind) -> ProbeResult:
        for result in self.all_results:
            if result.kind is kind:
                return result
        raise KeyError(kind)

    @property
    def average_latency_ms(self) -> int | None:
        latencies = [r.latency_ms for r in self.all_results if r.ok and r.latency_ms is not None]
        if not latencies:
            return None
        return round_half_up(sum(latencies) / len(latencies))


class RouteKind(str, Enum):
    DIRECT = "direct"
    VPN = "vpn"
    PROXY = "proxy"

    @property
    def title(self) -> str:
        return self.value.upper()


@dataclass(frozen=True, slots=True)
class RouteIndicator:
    kind: RouteKind
    is_active: bool


@dataclass(frozen=True, slots=True)
class Diagnosis:
    title: str
    explanation: str
    actions: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ConnectivityAssessment:
    state: ConnectivityState
    diagnosis: Diagnosis
    route_indicators: tuple[RouteIndicator, ...]
    detail_line: str

    @classmethod
    def initial(cls) -> "ConnectivityAssessment":
        return cls(
            state=ConnectivityState.CHECKING,
            diagnosis=Diagnosis(
                title="Initial check in progress",
                explanation="connwatch is gathering the first probe results.",
                actions=("Wait for the first check to complete.",),
            ),
            route_indicators=(
                RouteIndicator(RouteKind.DIRECT, False),
                RouteIndicator(RouteKind.VPN, False),
                RouteIndicator(RouteKind.PROXY, False),
            ),
            detail_line="Route: checking...",
        )

    def is_route_active(self, kind: RouteKind) -> bool:
        return any(ind.kind is kind and ind.is_active for ind in self.route_indicators)


def format_route_summary(*, vpn_active: bool, proxy_active: bool) -> str:
    if vpn_active and proxy_active:
        return "Route: VPN + PROXY"
    if vpn_active:
        return "Route: VPN"
    if proxy_active:
        return "Route: PROXY"
    return "Route: DIRECT"


@dataclass(frozen=True, slots=True)
class StateTransition:
    from_state: ConnectivityState
    to_state: ConnectivityState
    timestamp: datetime
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def label(self) -> str:
        return f"{self.from_state.short_label} -> {self.to_state.short_label}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.from_state.value,
            "to": self.to_state.value,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateTransition | None":
        from_state = ConnectivityState.from_stored(data.get("from"))
        to_state = ConnectivityState.from_stored(data.get("to"))
        timestamp = parse_timestamp(data.get("timestamp"))
        if from_state is None or to_state is None or timestamp is None:
            return None
        transition_id = str(data.get("id") or "").strip() or str(uuid4())
        return cls(from_state=from_state, to_state=to_state, timestamp=timestamp, id=transition_id)


@dataclass(frozen=True, slots=True)
class HealthSample:
    timestamp: datetime
    state: ConnectivityState
    average_latency_ms: int | None
    route_label: str
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "state": self.state.value,
            "average_latency_ms": self.average_latency_ms,
            "route_label": self.route_label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthSample | None":
        state = ConnectivityState.from_stored(data.get("state"))
        timestamp = parse_timestamp(data.get("timestamp"))
        if state is None or timestamp is None:
            return None
        sample_id = str(data.get("id") or "").strip() or str(uuid4())
        return cls(
            timestamp=timestamp,
            state=state,
            average_latency_ms=_optional_int(data.get("average_latency_ms")),
            route_label=str(data.get("route_label", "")),
            id=sample_id,
        )


@dataclass(frozen=True, slots=True)
class TimelineSummary:
    uptime_percent: int
    drop_count: int
    average_latency_ms: int | None
    mean_recovery_seconds: int | None
    sample_count: int

    @classmethod
    def empty(cls) -> "TimelineSummary":
        return cls(
            uptime_percent=0,
            drop_count=0,
            average_latency_ms=None,
            mean_recovery_seconds=None,
            sample_count=0,
        )
