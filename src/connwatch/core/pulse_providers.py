"""External connectivity-health feeds normalized into ``ProviderSnapshot``.

Two feeds are supported:

- the Vanillapp radar, which publishes a status level (0 = healthy .. 4 = down)
  for monitored datacenters inside and outside the country;
- OONI web-connectivity measurements for the configured country, each flagged
  as confirmed blocking, anomaly or failure.

Each provider is its own failure domain: transport errors, rate limiting, bad
status codes and malformed payloads all come back as an error snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import math
from typing import Any, Callable, Protocol

import httpx

from connwatch.core.errors import ProviderError
from connwatch.core.models import format_timestamp, parse_timestamp, round_half_up, utc_now

logger = logging.getLogger(__name__)

USER_AGENT = "connwatch/0.1"

RADAR_ENDPOINT = "https://radar.vanillapp.ir/api/radar/monitoring/all"
OONI_ENDPOINT = "https://api.ooni.io/api/v1/measurements"

RADAR_TIMEOUT_S = 16.0
OONI_TIMEOUT_S = 18.0

RADAR_STALE_AFTER_S = 20 * 60
RADAR_VERY_OLD_AFTER_S = 45 * 60
OONI_STALE_AFTER_S = 60 * 60
OONI_SAMPLE_LIMIT = 40


class PulseSeverity(str, Enum):
    NORMAL = "normal"
    DEGRADED = "degraded"
    SEVERE = "severe"
    UNKNOWN = "unknown"

    @property
    def title(self) -> str:
        return self.value.capitalize()


class PulseSource(str, Enum):
    VANILLAPP = "vanillapp"
    OONI = "ooni"

    @property
    def title(self) -> str:
        return "Vanillapp Radar" if self is PulseSource.VANILLAPP else "OONI"


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def severity_for_score(score: int) -> PulseSeverity:
    if score >= 80:
        return PulseSeverity.NORMAL
    if score >= 50:
        return PulseSeverity.DEGRADED
    return PulseSeverity.SEVERE


@dataclass(frozen=True, slots=True)
class ProviderSnapshot:
    source: PulseSource
    score: int | None
    severity: PulseSeverity
    confidence: float
    captured_at: datetime | None
    stale: bool
    summary: str
    details: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def failure(cls, source: PulseSource, message: str) -> "ProviderSnapshot":
        return cls(
            source=source,
            score=None,
            severity=PulseSeverity.UNKNOWN,
            confidence=0.0,
            captured_at=None,
            stale=False,
            summary=message,
            details={},
            error=message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "score": self.score,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "captured_at": format_timestamp(self.captured_at) if self.captured_at else None,
            "stale": self.stale,
            "summary": self.summary,
            "details": dict(self.details),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderSnapshot | None":
        try:
            source = PulseSource(data.get("source"))
            severity = PulseSeverity(data.get("severity", PulseSeverity.UNKNOWN.value))
        except ValueError:
            return None
        raw_score = data.get("score")
        score = None
        if isinstance(raw_score, (int, float)) and not isinstance(raw_score, bool):
            score = int(clamp(int(raw_score), 0, 100))
        raw_confidence = data.get("confidence", 0)
        confidence = (
            clamp(float(raw_confidence), 0, 1)
            if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool)
            else 0.0
        )
        raw_details = data.get("details")
        details = (
            {str(k): str(v) for k, v in raw_details.items()} if isinstance(raw_details, dict) else {}
        )
        error = data.get("error")
        return cls(
            source=source,
            score=score,
            severity=severity,
            confidence=confidence,
            captured_at=parse_timestamp(data.get("captured_at")),
            stale=bool(data.get("stale", False)),
            summary=str(data.get("summary", "")),
            details=details,
            error=str(error) if error is not None else None,
        )


class PulseProvider(Protocol):
    source: PulseSource

    async def fetch_snapshot(self, *, force_refresh: bool = False) -> ProviderSnapshot: ...


def _describe_transport_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timed out"
    text = str(exc).strip()
    return text or type(exc).__name__


class _JsonFeedProvider:
    source: PulseSource
    name: str
    endpoint: str
    timeout_s: float

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._clock = clock

    def params(self) -> dict[str, str]:
        return {}

    def map_payload(self, payload: Any, now: datetime) -> ProviderSnapshot:
        raise NotImplementedError

    async def fetch_snapshot(self, *, force_refresh: bool = False) -> ProviderSnapshot:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if force_refresh:
            headers["Cache-Control"] = "no-cache"

        try:
            response = await self._client.get(
                self.endpoint,
                params=self.params(),
                headers=headers,
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as exc:
            return self._failure(f"{self.name} fetch failed: {_describe_transport_error(exc)}.")

        if response.status_code == 429:
            return self._failure(f"{self.name} rate limited (429).")
        if not 200 <= response.status_code < 300:
            return self._failure(f"{self.name} HTTP {response.status_code}.")

        try:
            payload = response.json()
        except ValueError:
            return self._failure(f"{self.name} returned a malformed response.")

        try:
            return self.map_payload(payload, self._clock())
        except ProviderError as exc:
            return self._failure(exc.user_message)

    def _failure(self, message: str) -> ProviderSnapshot:
        logger.warning("%s", message)
        return ProviderSnapshot.failure(self.source, message)

    def _malformed(self) -> ProviderError:
        return ProviderError(
            f"{self.name} payload did not match the expected schema",
            user_message=f"{self.name} returned a malformed response.",
        )


def _number(raw: Any) -> float | None:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    try:
        value = float(raw)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


class RadarProvider(_JsonFeedProvider):
    source = PulseSource.VANILLAPP
    name = "Vanillapp"
    endpoint = RADAR_ENDPOINT
    timeout_s = RADAR_TIMEOUT_S

    def map_payload(self, payload: Any, now: datetime) -> ProviderSnapshot:
        if not isinstance(payload, dict):
            raise self._malformed()
        groups = (payload.get("internal"), payload.get("external"))
        if not all(isinstance(group, dict) for group in groups):
            raise self._malformed()

        nodes = [node for group in groups for node in group.values() if isinstance(node, dict)]
        levels: list[int] = []
        latencies: list[float] = []
        cached_at: list[float] = []
        for node in nodes:
            status = node.get("status")
            if isinstance(status, dict):
                level = status.get("level")
                if isinstance(level, int) and not isinstance(level, bool) and 0 <= level <= 4:
                    levels.append(level)
                latency = _number(status.get("average_latency"))
                if latency is not None:
                    latencies.append(latency)
            node_cached_at = _number(node.get("cached_at"))
            if node_cached_at is not None:
                cached_at.append(node_cached_at)

        if not levels:
            raise ProviderError(
                "no status levels in radar payload",
                user_message=f"{self.name} returned no status levels.",
            )

        total_nodes = len(nodes)
        degraded_count = sum(1 for level in levels if level >= 2)
        average_level = sum(levels) / len(levels)
        degraded_ratio = degraded_count / len(levels)

        raw_score = ((4 - average_level) / 4 * 100) - (degraded_ratio * 20)
        score = round_half_up(clamp(raw_score, 0, 100))

        captured_candidates = [
            value
            for value in (_number(payload.get("timestamp")), max(cached_at, default=None))
            if value is not None
        ]
        captured_at: datetime | None = None
        if captured_candidates:
            try:
                captured_at = datetime.fromtimestamp(max(captured_candidates), tz=timezone.utc)
            except (ValueError, OverflowError, OSError) as exc:
                raise self._malformed() from exc
        age_s = (now - captured_at).total_seconds() if captured_at else 0.0
        stale = age_s > RADAR_STALE_AFTER_S

        confidence = 0.82
        coverage = len(levels) / total_nodes if total_nodes else 0.0
        if coverage < 0.7:
            confidence -= 0.15
        if coverage < 0.4:
            confidence -= 0.15
        if stale:
            confidence -= 0.2
        if age_s > RADAR_VERY_OLD_AFTER_S:
            confidence -= 0.2
        confidence = clamp(confidence, 0.1, 1)

        details = {
            "datacenters_total": str(total_nodes),
            "status_coverage": str(len(levels)),
            "degraded_nodes": str(degraded_count),
            "average_level": f"{average_level:.2f}",
        }
        if latencies:
            details["average_latency"] = f"{sum(latencies) / len(latencies):.2f}"
        if captured_at is not None:
            details["captured_at"] = format_timestamp(captured_at)
            details["age_seconds"] = str(round_half_up(max(0.0, age_s)))

        return ProviderSnapshot(
            source=self.source,
            score=score,
            severity=severity_for_score(score),
            confidence=confidence,
            captured_at=captured_at,
            stale=stale,
            summary=(
                f"{degraded_count}/{len(levels)} nodes degraded across "
                f"{total_nodes} datacenters."
            ),
            details=details,
        )


def decode_flag(raw: Any) -> bool:
    """OONI flags arrive as bools, ints or strings depending on the API version."""
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    if isinstance(raw, str):
        normalized = raw.strip().lower()
        return normalized not in {"", "false", "ok"}
    return False


class OoniProvider(_JsonFeedProvider):
    source = PulseSource.OONI
    name = "OONI"
    endpoint = OONI_ENDPOINT
    timeout_s = OONI_TIMEOUT_S

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        country_code: str = "IR",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(client, clock=clock)
        self.country_code = country_code

    def params(self) -> dict[str, str]:
        return {
            "probe_cc": self.country_code,
            "test_name": "web_connectivity",
            "limit": str(OONI_SAMPLE_LIMIT),
        }

    def map_payload(self, payload: Any, now: datetime) -> ProviderSnapshot:
        if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
            raise self._malformed()
        results = payload["results"]
        if not all(isinstance(item, dict) for item in results):
            raise self._malformed()
        if not results:
            raise ProviderError(
                "empty OONI result list",
                user_message=f"{self.name} returned no measurements.",
            )

        sample_count = len(results)
        anomaly_count = sum(1 for item in results if decode_flag(item.get("anomaly")))
        confirmed_count = sum(1 for item in results if decode_flag(item.get("confirmed")))
        failure_count = sum(1 for item in results if decode_flag(item.get("failure")))

        weighted_blocked = confirmed_count * 1.3 + anomaly_count * 1.0 + failure_count * 0.9
        blocked_ratio = min(1.0, weighted_blocked / sample_count)
        score = round_half_up((1 - blocked_ratio) * 100)

        sample_times = [
            parsed
            for parsed in (parse_timestamp(item.get("measurement_start_time")) for item in results)
            if parsed is not None
        ]
        newest_sample_at = max(sample_times, default=None)
        age_s = (now - newest_sample_at).total_seconds() if newest_sample_at else 0.0
        stale = age_s > OONI_STALE_AFTER_S

        confidence = 0.62 + min(0.28, sample_count / 100)
        if sample_count < 10:
            confidence -= 0.2
        if stale:
            confidence -= 0.2
        confidence = clamp(confidence, 0.1, 1)

        details = {
            "sample_count": str(sample_count),
            "confirmed_count": str(confirmed_count),
            "anomaly_count": str(anomaly_count),
            "failure_count": str(failure_count),
            "blocked_ratio": f"{blocked_ratio:.3f}",
        }
        if newest_sample_at is not None:
            details["newest_sample_at"] = format_timestamp(newest_sample_at)
            details["age_seconds"] = str(round_half_up(max(0.0, age_s)))

        return ProviderSnapshot(
            source=self.source,
            score=score,
            severity=severity_for_score(score),
            confidence=confidence,
            captured_at=newest_sample_at,
            stale=stale,
            summary=(
                f"{confirmed_count} confirmed, {failure_count} failure, "
                f"{anomaly_count} anomaly in {sample_count} samples."
            ),
            details=details,
        )
