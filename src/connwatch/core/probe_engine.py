"""Reachability probes over the direct path and the configured local proxy.

Each probe is a HEAD request; any status in [200, 500) means the target was
reached (a 4xx still proves the route works, a 5xx does not). The four probe
kinds of a snapshot run concurrently and every failure is folded into a
``ProbeResult`` so one bad target never disturbs the others.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import errno
import logging
import socket
import threading
import time
from typing import Callable, Iterable, Sequence
from urllib.parse import urlparse

import httpx

from connwatch.core.logging_setup import redact
from connwatch.core.models import ProbeKind, ProbeResult, ProbeSnapshot, utc_now
from connwatch.core.settings import CriticalServiceConfig, MonitorSettings, ProxyType

logger = logging.getLogger(__name__)

USER_AGENT = "connwatch/0.1"
PROBE_HEADERS = {
    "User-Agent": USER_AGENT,
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}
PROXY_LIVENESS_MAX_TIMEOUT_S = 2.5

ERROR_INVALID_URL = "Invalid URL"
ERROR_TIMED_OUT = "Timed out"
ERROR_NOT_CONNECTED = "Not connected"
ERROR_HOST_NOT_FOUND = "Host not found"
ERROR_CONNECTION_REFUSED = "Connection refused"
ERROR_CONNECTION_LOST = "Connection lost"
ERROR_UNEXPECTED_RESPONSE = "Unexpected response"
ERROR_NO_TARGETS = "No websites configured"
ERROR_PROXY_DISABLED = "Proxy check disabled"

_NOT_CONNECTED_ERRNOS = {errno.ENETUNREACH, errno.ENETDOWN, errno.EHOSTUNREACH}

ClientFactory = Callable[[str | None], httpx.AsyncClient]


def _default_client_factory(proxy_url: str | None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        proxy=proxy_url,
        trust_env=False,
        follow_redirects=True,
        limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
    )


def candidate_targets(primary: str, extras: Iterable[str] = ()) -> list[str]:
    """Primary URL then extras, blanks dropped, case-insensitive duplicates removed."""
    seen: set[str] = set()
    out: list[str] = []
    for raw in (primary, *extras):
        url = (raw or "").strip()
        if not url:
            continue
        key = url.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(url)
    return out


def is_probe_success(status_code: int) -> bool:
    return 200 <= status_code < 500


def _is_valid_target(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.hostname)


def _exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def describe_error(exc: BaseException) -> str:
    """Map a transport exception onto the probe failure taxonomy."""
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return ERROR_INVALID_URL
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ERROR_TIMED_OUT

    for item in _exception_chain(exc):
        if isinstance(item, socket.gaierror):
            return ERROR_HOST_NOT_FOUND
        if isinstance(item, ConnectionRefusedError):
            return ERROR_CONNECTION_REFUSED
        if isinstance(item, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
            return ERROR_CONNECTION_LOST
        if isinstance(item, OSError) and item.errno in _NOT_CONNECTED_ERRNOS:
            return ERROR_NOT_CONNECTED

    if isinstance(exc, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
        return ERROR_CONNECTION_LOST

    text = str(exc).strip()
    lowered = text.lower()
    if "name or service not known" in lowered or "nodename nor servname" in lowered:
        return ERROR_HOST_NOT_FOUND
    if "connection refused" in lowered:
        return ERROR_CONNECTION_REFUSED
    if "network is unreachable" in lowered:
        return ERROR_NOT_CONNECTED
    return text or type(exc).__name__


def build_proxy_url(host: str, port: int, proxy_type: ProxyType) -> str:
    host = host.strip()
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    scheme = "socks5" if proxy_type is ProxyType.SOCKS5 else "http"
    return f"{scheme}://{host}:{port}"


class OneShot:
    """Claim primitive: the first ``claim()`` returns True, every later one False."""

    __slots__ = ("_lock", "_claimed")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        return self._claimed


async def tcp_connect(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP handshake with ``host:port`` completes within ``timeout``.

    The connect-done callback and the timeout callback race to resolve the
    result; both go through one ``OneShot`` so exactly one of them wins.
    """
    loop = asyncio.get_running_loop()
    outcome: asyncio.Future[bool] = loop.create_future()
    once = OneShot()

    def resolve(value: bool) -> None:
        if once.claim():
            outcome.set_result(value)

    def on_connect_done(task: asyncio.Task) -> None:
        if task.cancelled():
            resolve(False)
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Proxy endpoint %s:%s unreachable: %s", host, port, exc)
            resolve(False)
            return
        _reader, writer = task.result()
        writer.close()
        resolve(True)

    connect_task = asyncio.ensure_future(asyncio.open_connection(host, port))
    connect_task.add_done_callback(on_connect_done)
    timer = loop.call_later(timeout, resolve, False)
    try:
        return await outcome
    finally:
        # Late callbacks after this point (including our own cancellation) are no-ops.
        once.claim()
        timer.cancel()
        if not connect_task.done():
            connect_task.cancel()


@dataclass(frozen=True, slots=True)
class ProxyClientKey:
    host: str
    port: int
    proxy_type: ProxyType


@dataclass(frozen=True, slots=True)
class ServiceProbeResult:
    service_id: str
    name: str
    url: str
    direct: ProbeResult | None
    proxy: ProbeResult | None

    @property
    def overall_ok(self) -> bool:
        return bool((self.direct and self.direct.ok) or (self.proxy and self.proxy.ok))


class ProbeEngine:
    def __init__(
        self,
        *,
        client_factory: ClientFactory = _default_client_factory,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client_factory = client_factory
        self._clock = clock
        self._direct_client: httpx.AsyncClient | None = None
        self._proxy_client: httpx.AsyncClient | None = None
        self._proxy_key: ProxyClientKey | None = None

    @property
    def proxy_key(self) -> ProxyClientKey | None:
        return self._proxy_key

    async def aclose(self) -> None:
        clients = [c for c in (self._direct_client, self._proxy_client) if c is not None]
        self._direct_client = None
        self._proxy_client = None
        self._proxy_key = None
        for client in clients:
            await client.aclose()

    async def run_snapshot(self, settings: MonitorSettings) -> ProbeSnapshot:
        timeout = settings.normalized_timeout
        blocked_targets = candidate_targets(settings.blocked_url, settings.blocked_extra_urls)
        domestic, global_, blocked_direct, blocked_via_proxy = await asyncio.gather(
            self._probe_direct(
                ProbeKind.DOMESTIC,
                candidate_targets(settings.domestic_url, settings.domestic_extra_urls),
                timeout,
            ),
            self._probe_direct(
                ProbeKind.GLOBAL,
                candidate_targets(settings.global_url, settings.global_extra_urls),
                timeout,
            ),
            self._probe_direct(ProbeKind.BLOCKED_DIRECT, blocked_targets, timeout),
            self._probe_proxy(ProbeKind.BLOCKED_VIA_PROXY, blocked_targets, settings),
        )
        return ProbeSnapshot(
            timestamp=self._clock(),
            domestic=domestic,
            global_=global_,
            blocked_direct=blocked_direct,
            blocked_via_proxy=blocked_via_proxy,
        )

    async def is_proxy_endpoint_connected(self, settings: MonitorSettings) -> bool:
        if not settings.proxy_enabled:
            return False
        host = settings.proxy_host.strip()
        if not host or not 1 <= settings.proxy_port <= 65535:
            return False
        timeout = min(settings.normalized_timeout, PROXY_LIVENESS_MAX_TIMEOUT_S)
        return await tcp_connect(host, settings.proxy_port, timeout)

    async def run_critical_services(self, settings: MonitorSettings) -> list[ServiceProbeResult]:
        services = [s for s in settings.critical_services if s.enabled]
        if not services:
            return []
        return list(await asyncio.gather(*(self._probe_service(s, settings) for s in services)))

    async def _probe_service(
        self, service: CriticalServiceConfig, settings: MonitorSettings
    ) -> ServiceProbeResult:
        timeout = settings.normalized_timeout
        targets = candidate_targets(service.url)

        async def skipped() -> None:
            return None

        direct, proxy = await asyncio.gather(
            self._probe_direct(ProbeKind.BLOCKED_DIRECT, targets, timeout)
            if service.check_direct
            else skipped(),
            self._probe_proxy(ProbeKind.BLOCKED_VIA_PROXY, targets, settings)
            if service.check_proxy
            else skipped(),
        )
        return ServiceProbeResult(
            service_id=service.id,
            name=service.name,
            url=service.url,
            direct=direct,
            proxy=proxy,
        )

    async def _probe_direct(
        self, kind: ProbeKind, targets: Sequence[str], timeout: float
    ) -> ProbeResult:
        return await self._probe_candidates(kind, targets, self._direct(), timeout)

    async def _probe_proxy(
        self, kind: ProbeKind, targets: Sequence[str], settings: MonitorSettings
    ) -> ProbeResult:
        if not settings.proxy_enabled:
            return ProbeResult(
                kind=kind,
                target=targets[0] if targets else "",
                ok=False,
                error=ERROR_PROXY_DISABLED,
            )
        try:
            client = await self._proxy_for(settings)
        except (httpx.InvalidURL, ValueError) as exc:
            logger.warning(
                "Invalid proxy address %s:%s: %s", settings.proxy_host, settings.proxy_port, exc
            )
            return ProbeResult(
                kind=kind,
                target=targets[0] if targets else "",
                ok=False,
                error=ERROR_INVALID_URL,
            )
        return await self._probe_candidates(kind, targets, client, settings.normalized_timeout)

    async def _probe_candidates(
        self,
        kind: ProbeKind,
        targets: Sequence[str],
        client: httpx.AsyncClient,
        timeout: float,
    ) -> ProbeResult:
        if not targets:
            return ProbeResult(kind=kind, target="", ok=False, error=ERROR_NO_TARGETS)

        result = ProbeResult(kind=kind, target=targets[0], ok=False)
        for target in targets:
            result = await self._probe_once(kind, target, client, timeout)
            if result.ok:
                return result
        return result

    async def _probe_once(
        self,
        kind: ProbeKind,
        target: str,
        client: httpx.AsyncClient,
        timeout: float,
    ) -> ProbeResult:
        if not _is_valid_target(target):
            return ProbeResult(kind=kind, target=target, ok=False, error=ERROR_INVALID_URL)

        started = time.monotonic()
        try:
            response = await client.head(target, headers=PROBE_HEADERS, timeout=timeout)
        except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as exc:
            latency_ms = int((time.monotonic() - started) * 1000)
            error = describe_error(exc)
            logger.debug("Probe %s %s failed: %s", kind.value, redact(target), error)
            return ProbeResult(
                kind=kind,
                target=target,
                ok=False,
                latency_ms=latency_ms,
                error=error,
            )

        latency_ms = int((time.monotonic() - started) * 1000)
        ok = is_probe_success(response.status_code)
        return ProbeResult(
            kind=kind,
            target=target,
            ok=ok,
            status_code=response.status_code,
            latency_ms=latency_ms,
            error=None if ok else ERROR_UNEXPECTED_RESPONSE,
        )

    def _direct(self) -> httpx.AsyncClient:
        if self._direct_client is None:
            self._direct_client = self._client_factory(None)
        return self._direct_client

    async def _proxy_for(self, settings: MonitorSettings) -> httpx.AsyncClient:
        key = ProxyClientKey(
            host=settings.proxy_host.strip(),
            port=settings.proxy_port,
            proxy_type=settings.proxy_type,
        )
        if self._proxy_client is not None and self._proxy_key == key:
            return self._proxy_client

        previous = self._proxy_client
        proxy_url = build_proxy_url(key.host, key.port, key.proxy_type)
        logger.info("Building proxy transport for %s", redact(proxy_url))
        self._proxy_client = self._client_factory(proxy_url)
        self._proxy_key = key
        client = self._proxy_client
        if previous is not None:
            await previous.aclose()
        return client
