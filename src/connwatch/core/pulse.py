"""National pulse: periodic fusion of the external signal feeds.

The monitor owns one loop task. Each cycle fetches every enabled provider
concurrently, merges the results into a ``PulseSnapshot`` and persists it.
Cycles with no scored provider stretch the polling interval (backoff 1..6,
capped at 30 minutes); any scored cycle resets it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Sequence

import httpx

from connwatch.core.errors import StateStoreError
from connwatch.core.models import format_timestamp, parse_timestamp, round_half_up, utc_now
from connwatch.core.pulse_providers import (
    OoniProvider,
    ProviderSnapshot,
    PulseProvider,
    PulseSeverity,
    PulseSource,
    RadarProvider,
    clamp,
    severity_for_score,
)
from connwatch.core.settings import MonitorSettings, SettingsStore
from connwatch.core.state_store import KEY_PULSE_SNAPSHOT, StateStore

logger = logging.getLogger(__name__)

MAX_BACKOFF_MULTIPLIER = 6
MAX_LOOP_DELAY_S = 30 * 60

SOURCE_WEIGHTS = {
    PulseSource.VANILLAPP: 0.7,
    PulseSource.OONI: 0.3,
}

ProviderFactory = Callable[[MonitorSettings], Sequence[PulseProvider]]


def _plural_errors(count: int) -> str:
    return f"{count} source error{'s' if count > 1 else ''}"


@dataclass(frozen=True, slots=True)
class PulseSnapshot:
    score: int | None
    severity: PulseSeverity
    confidence: float
    summary: str
    providers: tuple[ProviderSnapshot, ...]
    last_updated: datetime

    @classmethod
    def initial(cls, now: datetime | None = None) -> "PulseSnapshot":
        return cls(
            score=None,
            severity=PulseSeverity.UNKNOWN,
            confidence=0.0,
            summary="Waiting for the first national pulse check.",
            providers=(),
            last_updated=now or utc_now(),
        )

    @classmethod
    def disabled(cls, now: datetime | None = None) -> "PulseSnapshot":
        return cls(
            score=None,
            severity=PulseSeverity.UNKNOWN,
            confidence=0.0,
            summary="National pulse is disabled.",
            providers=(),
            last_updated=now or utc_now(),
        )

    @classmethod
    def no_providers(cls, now: datetime | None = None) -> "PulseSnapshot":
        return cls(
            score=None,
            severity=PulseSeverity.UNKNOWN,
            confidence=0.0,
            summary="No national pulse sources are enabled.",
            providers=(),
            last_updated=now or utc_now(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "summary": self.summary,
            "providers": [provider.to_dict() for provider in self.providers],
            "last_updated": format_timestamp(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PulseSnapshot | None":
        last_updated = parse_timestamp(data.get("last_updated"))
        if last_updated is None:
            return None
        try:
            severity = PulseSeverity(data.get("severity", PulseSeverity.UNKNOWN.value))
        except ValueError:
            return None
        raw_score = data.get("score")
        score = (
            int(clamp(int(raw_score), 0, 100))
            if isinstance(raw_score, (int, float)) and not isinstance(raw_score, bool)
            else None
        )
        raw_confidence = data.get("confidence", 0)
        confidence = (
            clamp(float(raw_confidence), 0, 1)
            if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool)
            else 0.0
        )
        raw_providers = data.get("providers")
        providers = tuple(
            provider
            for provider in (
                ProviderSnapshot.from_dict(item)
                for item in (raw_providers if isinstance(raw_providers, list) else [])
                if isinstance(item, dict)
            )
            if provider is not None
        )
        return cls(
            score=score,
            severity=severity,
            confidence=confidence,
            summary=str(data.get("summary", "")),
            providers=providers,
            last_updated=last_updated,
        )


def merge_provider_snapshots(
    providers: Sequence[ProviderSnapshot], now: datetime
) -> PulseSnapshot:
    """Fuse provider snapshots into one weighted national score.

    Providers are sorted by source first, so the result does not depend on the
    order they finished in.
    """
    ordered = tuple(sorted(providers, key=lambda provider: provider.source.value))
    if not ordered:
        return PulseSnapshot.no_providers(now)

    scored: list[tuple[int, float, float]] = []
    for provider in ordered:
        if provider.score is None:
            continue
        weight = SOURCE_WEIGHTS[provider.source] * max(0.2, min(provider.confidence, 1))
        scored.append((provider.score, weight, provider.confidence))

    error_count = sum(1 for provider in ordered if provider.error)

    if not scored:
        summary = (
            f"National pulse unavailable ({_plural_errors(error_count)})."
            if error_count
            else "National pulse unavailable."
        )
        return PulseSnapshot(
            score=None,
            severity=PulseSeverity.UNKNOWN,
            confidence=0.0,
            summary=summary,
            providers=ordered,
            last_updated=now,
        )

    weight_sum = max(sum(weight for _, weight, _ in scored), 0.0001)
    merged_score = round_half_up(sum(score * weight for score, weight, _ in scored) / weight_sum)

    stale_count = sum(1 for provider in ordered if provider.stale)
    if stale_count == len(ordered):
        merged_score -= 18
    elif stale_count:
        merged_score -= 8
    merged_score = int(clamp(merged_score, 0, 100))

    severity = severity_for_score(merged_score)
    confidence = clamp(
        sum(conf * weight for _, weight, conf in scored) / weight_sum,
        0,
        1,
    )

    parts = [f"National pulse {severity.title} · {merged_score}/100"]
    if stale_count:
        parts.append(f"{stale_count} stale")
    if error_count:
        parts.append(_plural_errors(error_count))

    return PulseSnapshot(
        score=merged_score,
        severity=severity,
        confidence=confidence,
        summary=" · ".join(parts),
        providers=ordered,
        last_updated=now,
    )


def build_providers(
    settings: MonitorSettings,
    client: httpx.AsyncClient,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> list[PulseProvider]:
    providers: list[PulseProvider] = []
    if settings.pulse_radar_enabled:
        providers.append(RadarProvider(client, clock=clock))
    if settings.pulse_ooni_enabled:
        providers.append(
            OoniProvider(client, country_code=settings.normalized_country_code, clock=clock)
        )
    return providers


class PulseMonitor:
    def __init__(
        self,
        settings_store: SettingsStore,
        state_store: StateStore,
        *,
        client: httpx.AsyncClient | None = None,
        provider_factory: ProviderFactory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings_store = settings_store
        self._state_store = state_store
        self._clock = clock
        self._owns_client = client is None
        self._client = client
        self._provider_factory = provider_factory
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._event_loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None

        self.backoff_multiplier = 1
        self.latest_error: str | None = None
        self.snapshot = self._load_snapshot() or PulseSnapshot.initial(clock())

    @property
    def is_checking(self) -> bool:
        return self._lock.locked()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def loop_delay(self) -> float:
        base = self._settings_store.settings.normalized_pulse_interval
        return min(base * self.backoff_multiplier, MAX_LOOP_DELAY_S)

    def start(self, *, run_immediately: bool = True) -> None:
        self._event_loop = asyncio.get_running_loop()
        if self._unsubscribe is None:
            self._unsubscribe = self._settings_store.subscribe(self._on_settings_changed)
        self.restart(run_immediately=run_immediately)

    def restart(self, *, run_immediately: bool = False) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run_loop(run_immediately))

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def aclose(self) -> None:
        await self.stop()
        if self._inflight is not None and not self._inflight.done():
            await self._inflight
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _on_settings_changed(self, _settings: MonitorSettings) -> None:
        if self._event_loop is None or self._task is None:
            return
        self._event_loop.call_soon_threadsafe(self.restart)

    async def _run_loop(self, run_immediately: bool) -> None:
        if run_immediately:
            await self._guarded_check()
        while True:
            await asyncio.sleep(self.loop_delay())
            await self._guarded_check()

    async def _guarded_check(self) -> None:
        # A cancelled loop must not tear down a cycle that already started.
        self._inflight = asyncio.ensure_future(self.run_check())
        try:
            await asyncio.shield(self._inflight)
        except Exception:
            logger.exception("Pulse check failed")

    async def run_check(self, *, force_refresh: bool = False) -> PulseSnapshot | None:
        if self._lock.locked():
            logger.debug("Pulse check already running; skipping")
            return None

        async with self._lock:
            settings = self._settings_store.settings
            now = self._clock()

            if not settings.pulse_enabled:
                self.latest_error = None
                self.backoff_multiplier = 1
                return self._publish(PulseSnapshot.disabled(now))

            providers = self._providers_for(settings)
            if not providers:
                self.latest_error = None
                self.backoff_multiplier = 1
                return self._publish(PulseSnapshot.no_providers(now))

            results = await asyncio.gather(
                *(provider.fetch_snapshot(force_refresh=force_refresh) for provider in providers)
            )
            merged = merge_provider_snapshots(results, self._clock())

            if any(result.score is not None for result in results):
                self.latest_error = None
                self.backoff_multiplier = 1
            else:
                self.latest_error = next(
                    (result.error for result in merged.providers if result.error),
                    "No provider data",
                )
                self.backoff_multiplier = min(self.backoff_multiplier * 2, MAX_BACKOFF_MULTIPLIER)
                logger.warning(
                    "National pulse unavailable (%s); next check in %.0fs",
                    self.latest_error,
                    self.loop_delay(),
                )
            return self._publish(merged)

    def diagnostics_report(self) -> str:
        snapshot = self.snapshot
        now = self._clock()
        lines = [
            "National Pulse",
            f"- Summary: {snapshot.summary}",
            f"- Score: {snapshot.score if snapshot.score is not None else 'N/A'}",
            f"- Severity: {snapshot.severity.title}",
            f"- Confidence: {round_half_up(snapshot.confidence * 100)}%",
            f"- Last updated: {format_timestamp(snapshot.last_updated)}",
            f"- Checking: {'yes' if self.is_checking else 'no'}",
            f"- Backoff: x{self.backoff_multiplier}",
            f"- Last error: {self.latest_error or 'none'}",
            "",
            "Providers",
        ]
        if not snapshot.providers:
            lines.append("- none")
        for provider in snapshot.providers:
            score = provider.score if provider.score is not None else "N/A"
            age = (
                f"{int((now - provider.captured_at).total_seconds())}s ago"
                if provider.captured_at
                else "unknown"
            )
            lines.append(
                f"- {provider.source.title}: {provider.severity.title} · score {score} · "
                f"confidence {round_half_up(provider.confidence * 100)}% · "
                f"stale {'yes' if provider.stale else 'no'} · age {age} · "
                f"error {provider.error or 'none'}"
            )
        return "\n".join(lines)

    def _providers_for(self, settings: MonitorSettings) -> Sequence[PulseProvider]:
        if self._provider_factory is not None:
            return self._provider_factory(settings)
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return build_providers(settings, self._client, clock=self._clock)

    def _publish(self, snapshot: PulseSnapshot) -> PulseSnapshot:
        self.snapshot = snapshot
        try:
            self._state_store.set(KEY_PULSE_SNAPSHOT, snapshot.to_dict())
        except StateStoreError as exc:
            logger.warning("%s", exc)
        return snapshot

    def _load_snapshot(self) -> PulseSnapshot | None:
        data = self._state_store.get_dict(KEY_PULSE_SNAPSHOT)
        if data is None:
            return None
        snapshot = PulseSnapshot.from_dict(data)
        if snapshot is None:
            logger.warning("Stored pulse snapshot is invalid; starting fresh")
        return snapshot
