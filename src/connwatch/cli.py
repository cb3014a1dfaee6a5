"""Command-line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from connwatch.core.correlator import correlate
from connwatch.core.diagnostics import collect_diagnostics
from connwatch.core.logging_setup import setup_logging
from connwatch.core.monitor import MonitorOrchestrator, MonitorUpdate
from connwatch.core.notifications import DesktopNotifier, LoggingNotifier
from connwatch.core.pulse import PulseMonitor
from connwatch.core.settings import SettingsPreset, SettingsStore
from connwatch.core.state_store import StateStore
from connwatch.core.storage import ensure_dirs

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="connwatch",
        description="Watch connectivity through direct, VPN and proxy routes.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Monitor until interrupted.")
    run.add_argument(
        "--preset",
        choices=[preset.value for preset in SettingsPreset],
        help="Apply a settings preset before starting.",
    )
    run.add_argument(
        "--no-desktop-notifications",
        action="store_true",
        help="Log notifications instead of showing them on the desktop.",
    )

    subparsers.add_parser("check", help="Run a single connectivity check.")
    subparsers.add_parser("pulse", help="Run a single national pulse check.")

    diagnostics = subparsers.add_parser("diagnostics", help="Print a diagnostics report.")
    diagnostics.add_argument(
        "--skip-checks",
        action="store_true",
        help="Report stored state only, without running a check first.",
    )
    return parser.parse_args(argv)


def _print_update(update: MonitorUpdate, pulse: PulseMonitor, settings_store: SettingsStore) -> None:
    assessment = update.assessment
    print(
        f"[{update.checked_at.astimezone():%H:%M:%S}] {assessment.state.short_label}: "
        f"{assessment.diagnosis.title} | {assessment.detail_line}"
    )
    if update.transition is not None:
        print(f"  changed: {update.transition.label}")
    hint = correlate(
        assessment.state,
        pulse.snapshot,
        pulse_enabled=settings_store.settings.pulse_enabled,
    )
    print(f"  national: {hint.title}. {hint.explanation}")


def _print_check(update: MonitorUpdate) -> None:
    assessment = update.assessment
    print(f"State: {assessment.state.short_label}")
    print(f"Diagnosis: {assessment.diagnosis.title}")
    print(f"  {assessment.diagnosis.explanation}")
    for action in assessment.diagnosis.actions:
        print(f"  - {action}")
    print(assessment.detail_line)
    print("")
    print("Probes")
    for result in update.snapshot.all_results:
        print(f"- {result.kind.title}: {result.summary} [{result.target}]")
    print(f"- Proxy endpoint: {'reachable' if update.proxy_endpoint_connected else 'unreachable'}")
    if update.services:
        print("")
        print("Critical services")
        for service in update.services:
            print(f"- {service.name}: {'OK' if service.overall_ok else 'FAIL'}")


async def _run(settings_store: SettingsStore, state_store: StateStore, desktop: bool) -> None:
    notifier = DesktopNotifier() if desktop else LoggingNotifier()
    monitor = MonitorOrchestrator(settings_store, state_store, notifier=notifier)
    pulse = PulseMonitor(settings_store, state_store)
    monitor.subscribe(lambda update: _print_update(update, pulse, settings_store))
    pulse.start()
    monitor.start()
    try:
        await asyncio.Event().wait()
    finally:
        await monitor.aclose()
        await pulse.aclose()


async def _check(settings_store: SettingsStore, state_store: StateStore) -> int:
    monitor = MonitorOrchestrator(settings_store, state_store)
    try:
        update = await monitor.run_check()
    finally:
        await monitor.aclose()
    if update is None:
        return 1
    _print_check(update)
    return 0


async def _pulse(settings_store: SettingsStore, state_store: StateStore) -> int:
    pulse = PulseMonitor(settings_store, state_store)
    try:
        await pulse.run_check(force_refresh=True)
        print(pulse.diagnostics_report())
    finally:
        await pulse.aclose()
    return 0 if pulse.latest_error is None else 1


async def _diagnostics(
    settings_store: SettingsStore, state_store: StateStore, skip_checks: bool
) -> int:
    monitor = MonitorOrchestrator(settings_store, state_store)
    pulse = PulseMonitor(settings_store, state_store)
    try:
        if not skip_checks:
            await asyncio.gather(monitor.run_check(), pulse.run_check())
        print(collect_diagnostics(settings_store, monitor=monitor, pulse=pulse))
    finally:
        await monitor.aclose()
        await pulse.aclose()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    ensure_dirs()
    log_path = setup_logging(verbose=args.verbose)
    logger.debug("Logging to %s", log_path)

    settings_store = SettingsStore()
    settings_store.load()
    state_store = StateStore()

    if args.command == "run":
        if args.preset:
            preset = SettingsPreset(args.preset)
            settings_store.apply_preset(preset)
            print(f"Preset: {preset.title}. {preset.subtitle}")
        try:
            asyncio.run(_run(settings_store, state_store, not args.no_desktop_notifications))
        except KeyboardInterrupt:
            print("Stopped.")
        return 0
    if args.command == "check":
        return asyncio.run(_check(settings_store, state_store))
    if args.command == "pulse":
        return asyncio.run(_pulse(settings_store, state_store))
    return asyncio.run(_diagnostics(settings_store, state_store, args.skip_checks))


if __name__ == "__main__":
    sys.exit(main())
