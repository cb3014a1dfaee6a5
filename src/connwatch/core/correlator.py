"""Compare the local verdict with the national pulse."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from connwatch.core.models import ConnectivityState
from connwatch.core.pulse import PulseSnapshot
from connwatch.core.pulse_providers import PulseSeverity

MIN_PULSE_CONFIDENCE = 0.45

_LOCAL_ISSUE_STATES = {
    ConnectivityState.OFFLINE,
    ConnectivityState.VPN_ISSUE,
    ConnectivityState.DEGRADED,
}


class CorrelationKind(str, Enum):
    LIKELY_LOCAL_ISSUE = "likely_local_issue"
    LIKELY_NATIONAL_DISRUPTION = "likely_national_disruption"
    MIXED_SIGNALS = "mixed_signals"
    STABLE = "stable"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True, slots=True)
class CorrelationHint:
    kind: CorrelationKind
    title: str
    explanation: str
    action: str


def _inconclusive(explanation: str) -> CorrelationHint:
    return CorrelationHint(
        kind=CorrelationKind.INCONCLUSIVE,
        title="Not enough national data",
        explanation=explanation,
        action="Rely on the local diagnosis for now.",
    )


def correlate(
    local_state: ConnectivityState,
    pulse: PulseSnapshot,
    *,
    pulse_enabled: bool,
) -> CorrelationHint:
    if local_state is ConnectivityState.CHECKING:
        return _inconclusive("The local check has not finished yet.")
    if not pulse_enabled:
        return _inconclusive("National pulse is disabled in settings.")
    if pulse.score is None or not pulse.providers:
        return _inconclusive("No national pulse source returned a score.")
    if pulse.confidence < MIN_PULSE_CONFIDENCE:
        return _inconclusive("National pulse confidence is too low to compare.")
    if pulse.severity is PulseSeverity.UNKNOWN:
        return _inconclusive("National pulse severity is unknown.")

    national_healthy = pulse.severity is PulseSeverity.NORMAL and pulse.score >= 80
    national_disrupted = pulse.severity is PulseSeverity.SEVERE or (
        pulse.severity is PulseSeverity.DEGRADED and pulse.score < 65
    )
    local_issue = local_state in _LOCAL_ISSUE_STATES

    if local_issue and national_disrupted:
        return CorrelationHint(
            kind=CorrelationKind.LIKELY_NATIONAL_DISRUPTION,
            title="Likely a national disruption",
            explanation=(
                "Your connection is failing and national signals show a wide disruption "
                "at the same time."
            ),
            action=(
                "Switching servers may not help; wait or use a protocol built for heavy filtering."
            ),
        )
    if local_issue and national_healthy:
        return CorrelationHint(
            kind=CorrelationKind.LIKELY_LOCAL_ISSUE,
            title="Likely a local issue",
            explanation=(
                "National signals look healthy, so the problem is probably on this device "
                "or network."
            ),
            action="Check your VPN or proxy client, router and ISP connection.",
        )
    if not local_issue and national_disrupted:
        return CorrelationHint(
            kind=CorrelationKind.MIXED_SIGNALS,
            title="Working despite national disruption",
            explanation="Your route works even though national signals show a disruption.",
            action="Keep the current route; expect it to be less stable than usual.",
        )
    if not local_issue and national_healthy:
        return CorrelationHint(
            kind=CorrelationKind.STABLE,
            title="Stable",
            explanation="Both your connection and national signals look healthy.",
            action="No action needed.",
        )
    return CorrelationHint(
        kind=CorrelationKind.MIXED_SIGNALS,
        title="Mixed signals",
        explanation="Local and national signals do not clearly point in the same direction.",
        action="Watch the next few checks before changing your setup.",
    )
