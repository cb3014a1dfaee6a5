from __future__ import annotations

import asyncio
from dataclasses import replace
import socket

import httpx
import pytest

import connwatch.core.probe_engine as probe_engine
from connwatch.core.models import ProbeKind
from connwatch.core.probe_engine import (
    ERROR_CONNECTION_REFUSED,
    ERROR_INVALID_URL,
    ERROR_NO_TARGETS,
    ERROR_PROXY_DISABLED,
    ERROR_TIMED_OUT,
    ERROR_UNEXPECTED_RESPONSE,
    OneShot,
    ProbeEngine,
    build_proxy_url,
    candidate_targets,
    describe_error,
    tcp_connect,
)
from connwatch.core.settings import CriticalServiceConfig, MonitorSettings, ProxyType


class _Router:
    """Maps URLs to status codes or exceptions; records every request."""

    def __init__(self, routes: dict[str, int | Exception], default: int = 204) -> None:
        self.routes = routes
        self.default = default
        self.requests: list[httpx.Request] = []
        self.proxy_urls: list[str | None] = []
        self.clients: list[httpx.AsyncClient] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.routes.get(str(request.url), self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)

    def factory(self, proxy_url: str | None) -> httpx.AsyncClient:
        self.proxy_urls.append(proxy_url)
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        self.clients.append(client)
        return client


def _settings(**overrides) -> MonitorSettings:
    base = MonitorSettings(
        domestic_url="https://domestic.test/",
        domestic_extra_urls=(),
        global_url="https://global.test/",
        global_extra_urls=(),
        blocked_url="https://blocked.test/",
        blocked_extra_urls=(),
        critical_services=(),
    )
    return replace(base, **overrides)


def _run_snapshot(engine: ProbeEngine, settings: MonitorSettings):
    async def scenario():
        try:
            return await engine.run_snapshot(settings)
        finally:
            await engine.aclose()

    return asyncio.run(scenario())


def test_candidate_targets_dedupes_case_insensitively() -> None:
    assert candidate_targets(
        "https://A.test/", ["", "https://a.test/", " https://b.test/ ", "HTTPS://B.TEST/"]
    ) == ["https://A.test/", "https://b.test/"]
    assert candidate_targets("  ", []) == []


def test_snapshot_has_one_result_per_kind_and_sends_probe_headers() -> None:
    router = _Router({})
    snapshot = _run_snapshot(ProbeEngine(client_factory=router.factory), _settings())

    assert [r.kind for r in snapshot.all_results] == list(ProbeKind)
    assert all(r.ok for r in snapshot.all_results)
    assert {r.method for r in router.requests} == {"HEAD"}
    headers = router.requests[0].headers
    assert headers["user-agent"] == probe_engine.USER_AGENT
    assert headers["cache-control"] == "no-cache"
    assert headers["pragma"] == "no-cache"


def test_first_successful_candidate_wins() -> None:
    router = _Router(
        {
            "https://domestic.test/": 503,
            "https://domestic-2.test/": 200,
        }
    )
    settings = _settings(domestic_extra_urls=("https://domestic-2.test/", "https://domestic-3.test/"))
    snapshot = _run_snapshot(ProbeEngine(client_factory=router.factory), settings)

    assert snapshot.domestic.ok is True
    assert snapshot.domestic.target == "https://domestic-2.test/"
    assert "https://domestic-3.test/" not in [str(r.url) for r in router.requests]


def test_last_failure_returned_when_no_candidate_succeeds() -> None:
    router = _Router(
        {
            "https://global.test/": 503,
            "https://global-2.test/": httpx.ConnectTimeout("slow"),
        }
    )
    settings = _settings(global_extra_urls=("https://global-2.test/",))
    snapshot = _run_snapshot(ProbeEngine(client_factory=router.factory), settings)

    assert snapshot.global_.ok is False
    assert snapshot.global_.target == "https://global-2.test/"
    assert snapshot.global_.error == ERROR_TIMED_OUT


def test_four_xx_counts_as_reachable_and_five_xx_does_not() -> None:
    router = _Router({"https://domestic.test/": 404, "https://global.test/": 500})
    snapshot = _run_snapshot(ProbeEngine(client_factory=router.factory), _settings())

    assert snapshot.domestic.ok is True
    assert snapshot.domestic.status_code == 404
    assert snapshot.global_.ok is False
    assert snapshot.global_.status_code == 500
    assert snapshot.global_.error == ERROR_UNEXPECTED_RESPONSE


def test_empty_and_invalid_targets() -> None:
    router = _Router({})
    settings = _settings(domestic_url="", global_url="ftp://global.test/")
    snapshot = _run_snapshot(ProbeEngine(client_factory=router.factory), settings)

    assert snapshot.domestic.ok is False
    assert snapshot.domestic.error == ERROR_NO_TARGETS
    assert snapshot.global_.error == ERROR_INVALID_URL


def test_malformed_bracket_url_is_invalid_not_raised() -> None:
    router = _Router({})
    settings = _settings(
        domestic_url="http://[bad",
        global_url="http://[::1",
        global_extra_urls=("https://global.test/",),
    )
    snapshot = _run_snapshot(ProbeEngine(client_factory=router.factory), settings)

    assert snapshot.domestic.ok is False
    assert snapshot.domestic.error == ERROR_INVALID_URL
    assert snapshot.global_.ok is True
    assert snapshot.global_.target == "https://global.test/"
    assert snapshot.blocked_direct.ok is True


def test_proxy_probe_disabled() -> None:
    router = _Router({})
    snapshot = _run_snapshot(
        ProbeEngine(client_factory=router.factory), _settings(proxy_enabled=False)
    )

    assert snapshot.blocked_via_proxy.ok is False
    assert snapshot.blocked_via_proxy.error == ERROR_PROXY_DISABLED
    assert router.proxy_urls == [None]


def test_one_failing_probe_does_not_affect_others() -> None:
    router = _Router({"https://blocked.test/": httpx.ConnectError("Connection refused")})
    snapshot = _run_snapshot(ProbeEngine(client_factory=router.factory), _settings())

    assert snapshot.domestic.ok is True
    assert snapshot.global_.ok is True
    assert snapshot.blocked_direct.error == ERROR_CONNECTION_REFUSED
    assert snapshot.blocked_via_proxy.error == ERROR_CONNECTION_REFUSED


def test_proxy_client_rebuilt_only_when_key_changes() -> None:
    router = _Router({})
    engine = ProbeEngine(client_factory=router.factory)
    settings = _settings()

    async def scenario() -> None:
        await engine.run_snapshot(settings)
        await engine.run_snapshot(settings)
        assert router.proxy_urls.count("socks5://127.0.0.1:10808") == 1

        first_proxy_client = router.clients[router.proxy_urls.index("socks5://127.0.0.1:10808")]
        await engine.run_snapshot(replace(settings, proxy_port=2080, proxy_type=ProxyType.HTTP))
        assert router.proxy_urls[-1] == "http://127.0.0.1:2080"
        assert first_proxy_client.is_closed
        assert engine.proxy_key is not None
        assert engine.proxy_key.port == 2080

        await engine.aclose()
        assert all(client.is_closed for client in router.clients)

    asyncio.run(scenario())
    assert router.proxy_urls.count(None) == 1


def test_critical_services_follow_per_route_flags() -> None:
    router = _Router({"https://svc-b.test/": 503})
    services = (
        CriticalServiceConfig(name="A", url="https://svc-a.test/", check_proxy=False, id="a"),
        CriticalServiceConfig(name="B", url="https://svc-b.test/", id="b"),
        CriticalServiceConfig(name="C", url="https://svc-c.test/", enabled=False, id="c"),
    )
    engine = ProbeEngine(client_factory=router.factory)

    async def scenario():
        try:
            return await engine.run_critical_services(_settings(critical_services=services))
        finally:
            await engine.aclose()

    results = asyncio.run(scenario())

    assert [r.service_id for r in results] == ["a", "b"]
    assert results[0].proxy is None
    assert results[0].overall_ok is True
    assert results[1].direct is not None and results[1].direct.ok is False
    assert results[1].overall_ok is False


def test_describe_error_taxonomy() -> None:
    request = httpx.Request("HEAD", "https://x.test/")
    gai = httpx.ConnectError("dns", request=request)
    gai.__cause__ = socket.gaierror(-2, "Name or service not known")
    assert describe_error(gai) == "Host not found"

    reset = httpx.ReadError("reset", request=request)
    reset.__cause__ = ConnectionResetError(104, "Connection reset by peer")
    assert describe_error(reset) == "Connection lost"

    unreachable = httpx.ConnectError("[Errno 101] Network is unreachable", request=request)
    assert describe_error(unreachable) == "Not connected"

    assert describe_error(httpx.ReadTimeout("slow", request=request)) == "Timed out"
    assert describe_error(httpx.UnsupportedProtocol("gopher")) == "Invalid URL"
    assert describe_error(httpx.ProxyError("proxy said no")) == "proxy said no"


def test_build_proxy_url() -> None:
    assert build_proxy_url(" 127.0.0.1 ", 1080, ProxyType.SOCKS5) == "socks5://127.0.0.1:1080"
    assert build_proxy_url("::1", 8080, ProxyType.HTTP) == "http://[::1]:8080"


def test_one_shot_claims_once() -> None:
    once = OneShot()
    assert once.claimed is False
    assert once.claim() is True
    assert once.claim() is False
    assert once.claimed is True


def test_tcp_connect_success_and_refusal() -> None:
    async def scenario() -> tuple[bool, bool]:
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            reachable = await tcp_connect("127.0.0.1", port, 2.0)

        with socket.socket() as probe:
            probe.bind(("127.0.0.1", 0))
            closed_port = probe.getsockname()[1]
        refused = await tcp_connect("127.0.0.1", closed_port, 2.0)
        return reachable, refused

    reachable, refused = asyncio.run(scenario())
    assert reachable is True
    assert refused is False


def test_tcp_connect_times_out_and_cancels_connect(monkeypatch) -> None:
    cancelled = []

    async def never_connects(host, port):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append((host, port))
            raise

    monkeypatch.setattr(probe_engine.asyncio, "open_connection", never_connects)

    async def scenario() -> bool:
        result = await tcp_connect("10.255.255.1", 9, 0.05)
        await asyncio.sleep(0)
        return result

    assert asyncio.run(scenario()) is False
    assert cancelled == [("10.255.255.1", 9)]


def test_proxy_endpoint_check_short_circuits(monkeypatch) -> None:
    calls = []

    async def fake_connect(host, port, timeout):
        calls.append((host, port, timeout))
        return True

    monkeypatch.setattr(probe_engine, "tcp_connect", fake_connect)
    engine = ProbeEngine(client_factory=_Router({}).factory)

    assert asyncio.run(engine.is_proxy_endpoint_connected(_settings(proxy_enabled=False))) is False
    assert asyncio.run(engine.is_proxy_endpoint_connected(_settings(proxy_port=0))) is False
    assert asyncio.run(engine.is_proxy_endpoint_connected(_settings(timeout_seconds=20))) is True
    assert calls == [("127.0.0.1", 10808, pytest.approx(2.5))]
