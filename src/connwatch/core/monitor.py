"""Periodic connectivity monitoring.

``MonitorOrchestrator`` owns the check loop and everything it writes: the
current assessment, the transition and sample history, and the persisted last
state. Consumers observe it through ``subscribe()``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable

from connwatch.core.errors import StateStoreError
from connwatch.core.evaluator import evaluate
from connwatch.core.history import (
    append_sample,
    append_transition,
    decode_samples,
    decode_transitions,
    summarize_timeline,
)
from connwatch.core.models import (
    ConnectivityAssessment,
    ConnectivityState,
    HealthSample,
    ProbeSnapshot,
    RouteContext,
    StateTransition,
    TimelineSummary,
    format_route_summary,
    format_timestamp,
    utc_now,
)
from connwatch.core.notifications import LoggingNotifier, NotificationSink
from connwatch.core.probe_engine import ProbeEngine, ServiceProbeResult
from connwatch.core.route_inspector import RouteInspector
from connwatch.core.settings import MonitorSettings, SettingsStore
from connwatch.core.state_store import (
    KEY_HEALTH_SAMPLES,
    KEY_LAST_STATE,
    KEY_TRANSITION_HISTORY,
    StateStore,
)

logger = logging.getLogger(__name__)

RESTART_DEBOUNCE_S = 0.35


@dataclass(frozen=True, slots=True)
class Notification:
    title: str
    body: str


@dataclass(frozen=True, slots=True)
class MonitorUpdate:
    assessment: ConnectivityAssessment
    snapshot: ProbeSnapshot
    route: RouteContext
    services: tuple[ServiceProbeResult, ...]
    proxy_endpoint_connected: bool
    transition: StateTransition | None
    notification: Notification | None
    checked_at: datetime


MonitorListener = Callable[[MonitorUpdate], None]


def notification_for(
    previous: ConnectivityState,
    current: ConnectivityState,
    settings: MonitorSettings,
    *,
    first_cycle: bool,
) -> Notification | None:
    """Decide whether a state change is worth a notification.

    The first completed cycle only seeds the baseline. Cooldown and quiet
    hours are not consulted.
    """
    if first_cycle or not settings.notifications_enabled:
        return None
    if current.severity < previous.severity:
        return Notification(title="Connectivity degraded", body=current.detail)
    if current.severity > previous.severity and settings.notify_on_recovery:
        return Notification(title="Connectivity recovered", body=current.detail)
    return None


class MonitorOrchestrator:
    def __init__(
        self,
        settings_store: SettingsStore,
        state_store: StateStore,
        *,
        probe_engine: ProbeEngine | None = None,
        route_inspector: RouteInspector | None = None,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] = utc_now,
        restart_debounce_s: float = RESTART_DEBOUNCE_S,
    ) -> None:
        self._settings_store = settings_store
        self._state_store = state_store
        self._probe_engine = probe_engine or ProbeEngine()
        self._route_inspector = route_inspector or RouteInspector()
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._restart_debounce_s = restart_debounce_s

        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._pending_restart: asyncio.TimerHandle | None = None
        self._event_loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe_settings: Callable[[], None] | None = None
        self._listeners: list[MonitorListener] = []

        self.assessment = ConnectivityAssessment.initial()
        self.last_snapshot: ProbeSnapshot | None = None
        self.route: RouteContext | None = None
        self.services: tuple[ServiceProbeResult, ...] = ()
        self.last_checked_at: datetime | None = None
        self.completed_cycles = 0

        now = clock()
        self.last_state = (
            ConnectivityState.from_stored(state_store.get(KEY_LAST_STATE))
            or ConnectivityState.OFFLINE
        )
        self.transitions = decode_transitions(state_store.get_list(KEY_TRANSITION_HISTORY))
        self.samples = decode_samples(state_store.get_list(KEY_HEALTH_SAMPLES), now)

    @property
    def is_checking(self) -> bool:
        return self._lock.locked()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: MonitorListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        self._event_loop = asyncio.get_running_loop()
        if self._unsubscribe_settings is None:
            self._unsubscribe_settings = self._settings_store.subscribe(self._on_settings_changed)
        self._restart_loop()

    async def stop(self) -> None:
        if self._unsubscribe_settings is not None:
            self._unsubscribe_settings()
            self._unsubscribe_settings = None
        if self._pending_restart is not None:
            self._pending_restart.cancel()
            self._pending_restart = None
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
        await self._probe_engine.aclose()

    def _on_settings_changed(self, _settings: MonitorSettings) -> None:
        if self._event_loop is None or self._task is None:
            return
        self._event_loop.call_soon_threadsafe(self._schedule_restart)

    def _schedule_restart(self) -> None:
        if self._pending_restart is not None:
            self._pending_restart.cancel()
        loop = asyncio.get_running_loop()
        self._pending_restart = loop.call_later(self._restart_debounce_s, self._restart_loop)

    def _restart_loop(self) -> None:
        self._pending_restart = None
        if self._task is not None:
            self._task.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run_loop())

    async def _run_loop(self) -> None:
        while True:
            # A cancelled loop must not tear down a cycle that already started.
            self._inflight = asyncio.ensure_future(self.run_check())
            try:
                await asyncio.shield(self._inflight)
            except Exception:
                logger.exception("Connectivity check failed")
            await asyncio.sleep(self._settings_store.settings.normalized_interval)

    async def run_check(self) -> MonitorUpdate | None:
        if self._lock.locked():
            logger.debug("Connectivity check already running; skipping")
            return None

        async with self._lock:
            settings = self._settings_store.settings
            route, snapshot, endpoint_connected, services = await asyncio.gather(
                self._route_inspector.inspect(),
                self._probe_engine.run_snapshot(settings),
                self._probe_engine.is_proxy_endpoint_connected(settings),
                self._probe_engine.run_critical_services(settings),
            )

            proxy_working = (
                settings.proxy_enabled and endpoint_connected and snapshot.blocked_via_proxy.ok
            )
            assessment = evaluate(
                snapshot,
                route,
                proxy_active=proxy_working,
                proxy_endpoint_connected=endpoint_connected,
            )
            now = self._clock()
            first_cycle = self.completed_cycles == 0
            previous = self.last_state
            current = assessment.state

            self.assessment = assessment
            self.last_snapshot = snapshot
            self.route = route
            self.services = tuple(services)
            self.last_checked_at = now
            self.last_state = current
            self._persist(KEY_LAST_STATE, current.value)

            transition: StateTransition | None = None
            if not first_cycle and current is not previous:
                transition = StateTransition(from_state=previous, to_state=current, timestamp=now)
                self.transitions = append_transition(self.transitions, transition)
                self._persist(
                    KEY_TRANSITION_HISTORY, [item.to_dict() for item in self.transitions]
                )
                logger.info("Connectivity changed: %s", transition.label)

            sample = HealthSample(
                timestamp=now,
                state=current,
                average_latency_ms=snapshot.average_latency_ms,
                route_label=format_route_summary(
                    vpn_active=route.vpn_active, proxy_active=proxy_working
                ),
            )
            self.samples = append_sample(self.samples, sample, now)
            self._persist(KEY_HEALTH_SAMPLES, [item.to_dict() for item in self.samples])

            notification = notification_for(previous, current, settings, first_cycle=first_cycle)
            if notification is not None:
                await self._deliver(notification)

            self.completed_cycles += 1
            update = MonitorUpdate(
                assessment=assessment,
                snapshot=snapshot,
                route=route,
                services=self.services,
                proxy_endpoint_connected=endpoint_connected,
                transition=transition,
                notification=notification,
                checked_at=now,
            )
            self._emit(update)
            return update

    def clear_history(self) -> None:
        self.transitions = []
        self.samples = []
        self._persist(KEY_TRANSITION_HISTORY, [])
        self._persist(KEY_HEALTH_SAMPLES, [])

    def timeline_summary(self) -> TimelineSummary:
        return summarize_timeline(self.samples, self._clock())

    def diagnostics_report(self) -> str:
        assessment = self.assessment
        last_check = format_timestamp(self.last_checked_at) if self.last_checked_at else "never"
        lines = [
            "Monitor",
            f"- State: {assessment.state.short_label}",
            f"- Diagnosis: {assessment.diagnosis.title}",
            f"- {assessment.detail_line}",
            f"- Last check: {last_check}",
            f"- Checking: {'yes' if self.is_checking else 'no'}",
            f"- Completed cycles: {self.completed_cycles}",
        ]
        if self.route is not None and self.route.vpn_active:
            lines.append(f"- VPN client: {self.route.vpn_client_name or 'unknown'}")

        lines += ["", "Probes"]
        if self.last_snapshot is None:
            lines.append("- none yet")
        else:
            for result in self.last_snapshot.all_results:
                lines.append(f"- {result.kind.title}: {result.summary} [{result.target}]")

        if self.services:
            lines += ["", "Critical services"]
            for service in self.services:
                routes = []
                if service.direct is not None:
                    routes.append(f"direct {service.direct.summary}")
                if service.proxy is not None:
                    routes.append(f"proxy {service.proxy.summary}")
                status = "OK" if service.overall_ok else "FAIL"
                lines.append(f"- {service.name}: {status} ({', '.join(routes) or 'no routes'})")

        timeline = self.timeline_summary()
        lines += [
            "",
            "History",
            f"- Transitions stored: {len(self.transitions)}",
            f"- Samples stored: {len(self.samples)}",
            f"- 24h uptime: {timeline.uptime_percent}% over {timeline.sample_count} samples",
            f"- 24h drops: {timeline.drop_count}",
        ]
        for transition in self.transitions[:5]:
            lines.append(f"- {format_timestamp(transition.timestamp)} {transition.label}")
        return "\n".join(lines)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await asyncio.to_thread(self._notifier.notify, notification.title, notification.body)
        except Exception:
            logger.exception("Notification sink failed")

    def _emit(self, update: MonitorUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Monitor listener failed")

    def _persist(self, key: str, value: object) -> None:
        try:
            self._state_store.set(key, value)
        except StateStoreError as exc:
            logger.warning("%s", exc)
