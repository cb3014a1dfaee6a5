"""Bounded transition/sample history and the 24 hour timeline summary."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from connwatch.core.models import (
    ConnectivityState,
    HealthSample,
    StateTransition,
    TimelineSummary,
    round_half_up,
)

MAX_TRANSITIONS = 40
MAX_SAMPLES = 2000
SAMPLE_RETENTION = timedelta(days=7)
TIMELINE_WINDOW = timedelta(hours=24)


def append_transition(
    history: Sequence[StateTransition], transition: StateTransition
) -> list[StateTransition]:
    return [transition, *history][:MAX_TRANSITIONS]


def prune_samples(samples: Iterable[HealthSample], now: datetime) -> list[HealthSample]:
    cutoff = now - SAMPLE_RETENTION
    return [sample for sample in samples if sample.timestamp >= cutoff][:MAX_SAMPLES]


def append_sample(
    samples: Sequence[HealthSample], sample: HealthSample, now: datetime
) -> list[HealthSample]:
    return prune_samples([sample, *samples], now)


def decode_transitions(raw: Iterable[Any]) -> list[StateTransition]:
    decoded = (StateTransition.from_dict(item) for item in raw if isinstance(item, dict))
    return [item for item in decoded if item is not None][:MAX_TRANSITIONS]


def decode_samples(raw: Iterable[Any], now: datetime) -> list[HealthSample]:
    decoded = (HealthSample.from_dict(item) for item in raw if isinstance(item, dict))
    return prune_samples((item for item in decoded if item is not None), now)


def summarize_timeline(samples: Sequence[HealthSample], now: datetime) -> TimelineSummary:
    """Uptime, drops, latency and recovery time over the last 24 hours.

    A drop is a usable -> not-usable change between consecutive samples; the
    recovery time is measured until the next usable sample.
    """
    cutoff = now - TIMELINE_WINDOW
    window = sorted(
        (s for s in samples if s.timestamp >= cutoff and s.state is not ConnectivityState.CHECKING),
        key=lambda s: s.timestamp,
    )
    if not window:
        return TimelineSummary.empty()

    usable_count = sum(1 for s in window if s.state is ConnectivityState.USABLE)
    latencies = [s.average_latency_ms for s in window if s.average_latency_ms is not None]

    drop_count = 0
    recoveries: list[float] = []
    dropped_at: datetime | None = None
    previous: HealthSample | None = None
    for sample in window:
        usable = sample.state is ConnectivityState.USABLE
        if previous is not None:
            was_usable = previous.state is ConnectivityState.USABLE
            if was_usable and not usable:
                drop_count += 1
                dropped_at = sample.timestamp
            elif not was_usable and usable and dropped_at is not None:
                recoveries.append((sample.timestamp - dropped_at).total_seconds())
                dropped_at = None
        previous = sample

    return TimelineSummary(
        uptime_percent=round_half_up(usable_count / len(window) * 100),
        drop_count=drop_count,
        average_latency_ms=round_half_up(sum(latencies) / len(latencies)) if latencies else None,
        mean_recovery_seconds=(
            round_half_up(sum(recoveries) / len(recoveries)) if recoveries else None
        ),
        sample_count=len(window),
    )
