"""Monitor settings schema and its JSON-backed store.

Settings live in ``settings.json`` under the user config dir. Every field has a
default, so a partial or older file still loads; a corrupted file is moved
aside to ``settings.json.bak`` and the defaults are used instead.

Updates are explicit patches (``store.update(timeout_seconds=5)``) validated
against the schema. Subscribers are called after every effective change.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from connwatch.core.errors import SettingsError
from connwatch.core.storage import atomic_write_json, get_config_dir

logger = logging.getLogger(__name__)

SETTINGS_SCHEMA_VERSION = 1
SETTINGS_FILE = "settings.json"

SettingsListener = Callable[["MonitorSettings"], None]


class ProxyType(str, Enum):
    SOCKS5 = "socks5"
    HTTP = "http"

    @property
    def title(self) -> str:
        return "SOCKS5" if self is ProxyType.SOCKS5 else "HTTP"


class SettingsPreset(str, Enum):
    BALANCED = "balanced"
    RAPID_FAILOVER = "rapid_failover"
    STABLE_QUIET = "stable_quiet"

    @property
    def title(self) -> str:
        return _PRESET_TITLES[self][0]

    @property
    def subtitle(self) -> str:
        return _PRESET_TITLES[self][1]


_PRESET_TITLES = {
    SettingsPreset.BALANCED: ("Balanced", "30s checks, practical daily default."),
    SettingsPreset.RAPID_FAILOVER: ("Rapid Failover", "Fast detection for unstable sessions."),
    SettingsPreset.STABLE_QUIET: ("Stable + Quiet", "Lower noise, less frequent checks."),
}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def _as_float(raw: Any, default: float) -> float:
    if isinstance(raw, bool):
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _as_int(raw: Any, default: int) -> int:
    if isinstance(raw, bool):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _as_bool(raw: Any, default: bool) -> bool:
    return raw if isinstance(raw, bool) else default


def _as_str(raw: Any, default: str) -> str:
    return raw.strip() if isinstance(raw, str) else default


def _as_str_tuple(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(item.strip() for item in raw if isinstance(item, str) and item.strip())


@dataclass(frozen=True, slots=True)
class CriticalServiceConfig:
    name: str
    url: str
    enabled: bool = True
    check_direct: bool = True
    check_proxy: bool = True
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "enabled": self.enabled,
            "check_direct": self.check_direct,
            "check_proxy": self.check_proxy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CriticalServiceConfig | None":
        name = _as_str(data.get("name"), "")
        url = _as_str(data.get("url"), "")
        if not name and not url:
            return None
        return cls(
            id=_as_str(data.get("id"), "") or str(uuid4()),
            name=name or url,
            url=url,
            enabled=_as_bool(data.get("enabled"), True),
            check_direct=_as_bool(data.get("check_direct"), True),
            check_proxy=_as_bool(data.get("check_proxy"), True),
        )


DEFAULT_CRITICAL_SERVICES: tuple[CriticalServiceConfig, ...] = (
    CriticalServiceConfig(name="Telegram", url="https://web.telegram.org/", id="telegram"),
    CriticalServiceConfig(name="YouTube", url="https://www.youtube.com/", id="youtube"),
    CriticalServiceConfig(name="GitHub", url="https://github.com/", id="github", check_proxy=False),
)


@dataclass(frozen=True, slots=True)
class MonitorSettings:
    interval_seconds: float = 30
    timeout_seconds: float = 7
    domestic_url: str = "https://www.aparat.com/"
    domestic_extra_urls: tuple[str, ...] = ("https://www.digikala.com/",)
    global_url: str = "https://www.google.com/generate_204"
    global_extra_urls: tuple[str, ...] = ("https://www.cloudflare.com/cdn-cgi/trace",)
    blocked_url: str = "https://web.telegram.org/"
    blocked_extra_urls: tuple[str, ...] = ()
    proxy_enabled: bool = True
    proxy_type: ProxyType = ProxyType.SOCKS5
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 10808
    notifications_enabled: bool = True
    notify_on_recovery: bool = True
    # Stored for the settings UI; not consulted by the notification policy.
    notification_cooldown_minutes: float = 3
    quiet_hours_enabled: bool = False
    quiet_hours_start: int = 0
    quiet_hours_end: int = 7
    launch_at_login: bool = False
    critical_services: tuple[CriticalServiceConfig, ...] = DEFAULT_CRITICAL_SERVICES
    pulse_enabled: bool = True
    pulse_interval_seconds: float = 300
    pulse_radar_enabled: bool = True
    pulse_ooni_enabled: bool = True
    pulse_country_code: str = "IR"

    @property
    def normalized_interval(self) -> float:
        return _clamp(self.interval_seconds, 10, 600)

    @property
    def normalized_timeout(self) -> float:
        return _clamp(self.timeout_seconds, 2, 30)

    @property
    def normalized_notification_cooldown(self) -> float:
        return _clamp(self.notification_cooldown_minutes, 0, 120) * 60

    @property
    def normalized_quiet_hours_start(self) -> int:
        return int(_clamp(self.quiet_hours_start, 0, 23))

    @property
    def normalized_quiet_hours_end(self) -> int:
        return int(_clamp(self.quiet_hours_end, 0, 23))

    @property
    def normalized_pulse_interval(self) -> float:
        return _clamp(self.pulse_interval_seconds, 120, 3600)

    @property
    def normalized_country_code(self) -> str:
        code = self.pulse_country_code.strip().upper()
        return code if len(code) == 2 and code.isalpha() else "IR"

    def with_preset(self, preset: SettingsPreset) -> "MonitorSettings":
        if preset is SettingsPreset.BALANCED:
            return replace(
                self,
                interval_seconds=30,
                timeout_seconds=7,
                notifications_enabled=True,
                notify_on_recovery=True,
                notification_cooldown_minutes=3,
                quiet_hours_enabled=False,
            )
        if preset is SettingsPreset.RAPID_FAILOVER:
            return replace(
                self,
                interval_seconds=12,
                timeout_seconds=4,
                notifications_enabled=True,
                notify_on_recovery=True,
                notification_cooldown_minutes=1,
                quiet_hours_enabled=False,
            )
        return replace(
            self,
            interval_seconds=60,
            timeout_seconds=8,
            notifications_enabled=True,
            notify_on_recovery=False,
            notification_cooldown_minutes=10,
            quiet_hours_enabled=True,
            quiet_hours_start=0,
            quiet_hours_end=7,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SETTINGS_SCHEMA_VERSION,
            "interval_seconds": self.interval_seconds,
            "timeout_seconds": self.timeout_seconds,
            "domestic_url": self.domestic_url,
            "domestic_extra_urls": list(self.domestic_extra_urls),
            "global_url": self.global_url,
            "global_extra_urls": list(self.global_extra_urls),
            "blocked_url": self.blocked_url,
            "blocked_extra_urls": list(self.blocked_extra_urls),
            "proxy_enabled": self.proxy_enabled,
            "proxy_type": self.proxy_type.value,
            "proxy_host": self.proxy_host,
            "proxy_port": self.proxy_port,
            "notifications_enabled": self.notifications_enabled,
            "notify_on_recovery": self.notify_on_recovery,
            "notification_cooldown_minutes": self.notification_cooldown_minutes,
            "quiet_hours_enabled": self.quiet_hours_enabled,
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
            "launch_at_login": self.launch_at_login,
            "critical_services": [svc.to_dict() for svc in self.critical_services],
            "pulse_enabled": self.pulse_enabled,
            "pulse_interval_seconds": self.pulse_interval_seconds,
            "pulse_radar_enabled": self.pulse_radar_enabled,
            "pulse_ooni_enabled": self.pulse_ooni_enabled,
            "pulse_country_code": self.pulse_country_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MonitorSettings":
        defaults = cls()
        try:
            proxy_type = ProxyType(data.get("proxy_type", defaults.proxy_type.value))
        except ValueError:
            proxy_type = defaults.proxy_type

        raw_services = data.get("critical_services")
        if isinstance(raw_services, list):
            services = tuple(
                svc
                for svc in (
                    CriticalServiceConfig.from_dict(item)
                    for item in raw_services
                    if isinstance(item, dict)
                )
                if svc is not None
            )
        else:
            services = defaults.critical_services

        def extras(key: str) -> tuple[str, ...]:
            if key not in data:
                return getattr(defaults, key)
            return _as_str_tuple(data.get(key))

        return cls(
            interval_seconds=_as_float(data.get("interval_seconds"), defaults.interval_seconds),
            timeout_seconds=_as_float(data.get("timeout_seconds"), defaults.timeout_seconds),
            domestic_url=_as_str(data.get("domestic_url"), defaults.domestic_url),
            domestic_extra_urls=extras("domestic_extra_urls"),
            global_url=_as_str(data.get("global_url"), defaults.global_url),
            global_extra_urls=extras("global_extra_urls"),
            blocked_url=_as_str(data.get("blocked_url"), defaults.blocked_url),
            blocked_extra_urls=extras("blocked_extra_urls"),
            proxy_enabled=_as_bool(data.get("proxy_enabled"), defaults.proxy_enabled),
            proxy_type=proxy_type,
            proxy_host=_as_str(data.get("proxy_host"), defaults.proxy_host),
            proxy_port=_as_int(data.get("proxy_port"), defaults.proxy_port),
            notifications_enabled=_as_bool(
                data.get("notifications_enabled"), defaults.notifications_enabled
            ),
            notify_on_recovery=_as_bool(data.get("notify_on_recovery"), defaults.notify_on_recovery),
            notification_cooldown_minutes=_as_float(
                data.get("notification_cooldown_minutes"), defaults.notification_cooldown_minutes
            ),
            quiet_hours_enabled=_as_bool(data.get("quiet_hours_enabled"), defaults.quiet_hours_enabled),
            quiet_hours_start=_as_int(data.get("quiet_hours_start"), defaults.quiet_hours_start),
            quiet_hours_end=_as_int(data.get("quiet_hours_end"), defaults.quiet_hours_end),
            launch_at_login=_as_bool(data.get("launch_at_login"), defaults.launch_at_login),
            critical_services=services,
            pulse_enabled=_as_bool(data.get("pulse_enabled"), defaults.pulse_enabled),
            pulse_interval_seconds=_as_float(
                data.get("pulse_interval_seconds"), defaults.pulse_interval_seconds
            ),
            pulse_radar_enabled=_as_bool(data.get("pulse_radar_enabled"), defaults.pulse_radar_enabled),
            pulse_ooni_enabled=_as_bool(data.get("pulse_ooni_enabled"), defaults.pulse_ooni_enabled),
            pulse_country_code=_as_str(data.get("pulse_country_code"), defaults.pulse_country_code),
        )


_FIELD_NAMES = frozenset(f.name for f in fields(MonitorSettings))
_SERVICE_FIELD_NAMES = frozenset(f.name for f in fields(CriticalServiceConfig)) - {"id"}
_TUPLE_FIELDS = frozenset(
    {"domestic_extra_urls", "global_extra_urls", "blocked_extra_urls", "critical_services"}
)


class SettingsStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (get_config_dir() / SETTINGS_FILE)
        self.settings = MonitorSettings()
        self.last_load_error: str | None = None
        self._listeners: list[SettingsListener] = []

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def load(self) -> MonitorSettings:
        self.last_load_error = None
        if not self.path.exists():
            self.settings = MonitorSettings()
            return self.settings

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            backup_path = self.path.with_suffix(".json.bak")
            try:
                if backup_path.exists():
                    backup_path.unlink()
                os.replace(self.path, backup_path)
                backup_note = f" Backed up as {backup_path.name}."
            except OSError:
                logger.exception("Failed to back up corrupted settings file")
                backup_note = " Failed to create backup file."
            self.settings = MonitorSettings()
            self.last_load_error = (
                f"Settings file is corrupted ({exc}). Started with defaults.{backup_note}"
            )
            logger.warning(self.last_load_error)
            return self.settings

        if not isinstance(payload, dict):
            self.settings = MonitorSettings()
            self.last_load_error = "Settings file format is invalid. Started with defaults."
            logger.warning(self.last_load_error)
            return self.settings

        self.settings = MonitorSettings.from_dict(payload)
        return self.settings

    def save(self) -> None:
        atomic_write_json(self.path, self.settings.to_dict())

    def update(self, **changes: Any) -> MonitorSettings:
        unknown = sorted(set(changes) - _FIELD_NAMES)
        if unknown:
            raise SettingsError(
                f"Unknown settings field(s): {', '.join(unknown)}",
                user_message="That setting does not exist.",
            )
        if "proxy_type" in changes:
            try:
                changes["proxy_type"] = ProxyType(changes["proxy_type"])
            except ValueError as exc:
                raise SettingsError(
                    f"Invalid proxy type: {changes['proxy_type']!r}",
                    user_message="Proxy type must be SOCKS5 or HTTP.",
                ) from exc
        for name in _TUPLE_FIELDS & set(changes):
            changes[name] = tuple(changes[name])
        return self._commit(replace(self.settings, **changes))

    def apply_preset(self, preset: SettingsPreset | str) -> MonitorSettings:
        try:
            resolved = SettingsPreset(preset)
        except ValueError as exc:
            raise SettingsError(f"Unknown preset: {preset!r}") from exc
        return self._commit(self.settings.with_preset(resolved))

    def reset_to_defaults(self) -> MonitorSettings:
        return self._commit(MonitorSettings(launch_at_login=self.settings.launch_at_login))

    def add_critical_service(
        self, name: str = "New Service", url: str = "https://"
    ) -> CriticalServiceConfig:
        service = CriticalServiceConfig(name=name.strip(), url=url.strip())
        self._commit(
            replace(self.settings, critical_services=(*self.settings.critical_services, service))
        )
        return service

    def update_critical_service(self, service_id: str, **changes: Any) -> CriticalServiceConfig:
        unknown = sorted(set(changes) - _SERVICE_FIELD_NAMES)
        if unknown:
            raise SettingsError(f"Unknown service field(s): {', '.join(unknown)}")
        services = list(self.settings.critical_services)
        for idx, current in enumerate(services):
            if current.id == service_id:
                updated = replace(current, **changes)
                services[idx] = updated
                self._commit(replace(self.settings, critical_services=tuple(services)))
                return updated
        raise KeyError(f"Critical service not found: {service_id}")

    def remove_critical_service(self, service_id: str) -> None:
        remaining = tuple(s for s in self.settings.critical_services if s.id != service_id)
        self._commit(replace(self.settings, critical_services=remaining))

    def _commit(self, new_settings: MonitorSettings) -> MonitorSettings:
        if new_settings == self.settings:
            return self.settings
        self.settings = new_settings
        self.save()
        for listener in list(self._listeners):
            try:
                listener(new_settings)
            except Exception:
                logger.exception("Settings listener failed")
        return new_settings

