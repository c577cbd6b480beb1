"""Tests for the Dispatcher and handler behaviours.

Covers:
- Handler selection and breaker route naming
- Fan-out to every endpoint with the payload and Content-Type
- Per-endpoint failure isolation
- Retryable routes use the retrying client, others the plain client
- Breaker rejection reported as an endpoint failure
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from src.clients.http_client import HTTPClient
from src.clients.retry_client import RetryingHTTPClient
from src.core.errors import BreakerOpenError, HTTPStatusError, TransportError
from src.dispatch.router import (
    DEADLINE_MARGIN_SECONDS,
    Dispatcher,
    GeneralEventHandler,
    NotificationServiceHandler,
    create_handler,
)
from src.models.message import Message
from src.models.schemas import DEFAULT_ROUTE_NAME, DispatchRoute, HandlerKind
from src.resilience.circuit_breaker import CircuitBreakerManager

EP_A = "http://svc-a.local/events"
EP_B = "http://svc-b.local/events"


def _route(**overrides) -> DispatchRoute:
    values = {"name": "orders", "source": "orders-topic", "endpoints": [EP_A, EP_B]}
    values.update(overrides)
    return DispatchRoute(**values)


class Recorder:
    """MockTransport handler recording requests; status per host."""

    def __init__(self, statuses: dict[str, list[int]] | None = None) -> None:
        self.statuses = statuses or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scripted = self.statuses.get(request.url.host)
        status = scripted.pop(0) if scripted and len(scripted) > 1 else (scripted[0] if scripted else 200)
        return httpx.Response(status, content=f"{request.url.host}:{status}".encode())

    def hosts(self) -> list[str]:
        return [r.url.host for r in self.requests]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
async def clients(recorder):
    transport = httpx.MockTransport(recorder)
    http_client = HTTPClient(transport=transport)
    retry_client = RetryingHTTPClient(transport=transport, wait_min=0.0)
    yield http_client, retry_client
    await http_client.aclose()
    await retry_client.aclose()


def _dispatcher(route, manager, clients, **kwargs) -> Dispatcher:
    http_client, retry_client = clients
    return Dispatcher(route, manager, http_client, retry_client, **kwargs)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Handler behaviours
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHandlers:
    def test_empty_handler_selects_general(self):
        handler = create_handler(_route(handler=""))
        assert isinstance(handler, GeneralEventHandler)
        assert handler.name == HandlerKind.GENERAL_EVENT.value

    def test_general_uses_default_route_without_bucket(self):
        assert create_handler(_route()).breaker_route() == DEFAULT_ROUTE_NAME

    def test_general_lowercases_configured_bucket(self):
        assert create_handler(_route(breaker="Billing")).breaker_route() == "billing"

    def test_notification_uses_lowercased_own_name(self):
        handler = create_handler(_route(handler="NotificationServiceHandler"))
        assert isinstance(handler, NotificationServiceHandler)
        assert handler.breaker_route() == "notificationservicehandler"

    def test_notification_lowercases_configured_bucket(self):
        handler = create_handler(_route(handler="NotificationServiceHandler", breaker="Push-Gateway"))
        assert handler.breaker_route() == "push-gateway"

    def test_unknown_handler_is_rejected(self):
        with pytest.raises(ValueError):
            _route(handler="SomethingElse")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Dispatch
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDispatch:
    async def test_posts_payload_to_every_endpoint(self, recorder, clients):
        dispatcher = _dispatcher(_route(), CircuitBreakerManager(), clients)
        report = await dispatcher.dispatch(Message("orders-topic", b'{"id":42}'))

        assert report.delivered == 2
        assert report.failed == 0
        assert sorted(recorder.hosts()) == ["svc-a.local", "svc-b.local"]
        for request in recorder.requests:
            assert request.method == "POST"
            assert request.content == b'{"id":42}'
            assert request.headers["Content-Type"] == "application/json"

    async def test_results_follow_endpoint_order(self, clients):
        dispatcher = _dispatcher(_route(), CircuitBreakerManager(), clients)
        report = await dispatcher.dispatch(Message("orders-topic", b"{}"))
        assert [r.endpoint for r in report.results] == [EP_A, EP_B]
        assert report.results[0].body == b"svc-a.local:200"
        assert report.results[0].route_name == DEFAULT_ROUTE_NAME

    async def test_custom_content_type(self, recorder, clients):
        dispatcher = _dispatcher(_route(content_type="text/plain"), CircuitBreakerManager(), clients)
        await dispatcher.dispatch(Message("orders-topic", b"hello"))
        assert all(r.headers["Content-Type"] == "text/plain" for r in recorder.requests)

    async def test_failure_on_one_endpoint_does_not_stop_others(self, recorder, clients, caplog):
        recorder.statuses["svc-a.local"] = [500]
        dispatcher = _dispatcher(_route(), CircuitBreakerManager(), clients)

        with caplog.at_level(logging.ERROR, logger="src.dispatch.router"):
            report = await dispatcher.dispatch(Message("orders-topic", b"{}"))

        assert report.delivered == 1
        assert report.failed == 1
        assert isinstance(report.results[0].error, HTTPStatusError)
        assert report.results[1].ok
        assert "[HANDLER][FAIL]" in caplog.text
        assert "code=HTTP_STATUS" in caplog.text

    async def test_non_retryable_route_makes_single_attempt(self, recorder, clients):
        recorder.statuses["svc-a.local"] = [503, 200]
        dispatcher = _dispatcher(_route(endpoints=[EP_A]), CircuitBreakerManager(), clients)
        report = await dispatcher.dispatch(Message("orders-topic", b"{}"))
        assert report.failed == 1
        assert len(recorder.requests) == 1

    async def test_retryable_route_uses_retrying_client(self, make_route, recorder, clients):
        recorder.statuses["svc-a.local"] = [503, 200]
        manager = CircuitBreakerManager({"payments": make_route("payments", retryable=True)})
        dispatcher = _dispatcher(_route(endpoints=[EP_A], breaker="payments"), manager, clients)

        report = await dispatcher.dispatch(Message("orders-topic", b"{}"))

        assert report.delivered == 1
        assert len(recorder.requests) == 2
        assert report.results[0].route_name == "payments"

    async def test_unknown_bucket_falls_back_to_default_policy(self, recorder, clients):
        dispatcher = _dispatcher(_route(breaker="not-configured"), CircuitBreakerManager(), clients)
        report = await dispatcher.dispatch(Message("orders-topic", b"{}"))
        assert report.delivered == 2

    async def test_open_circuit_is_reported_per_endpoint(self, make_route, recorder, clients):
        manager = CircuitBreakerManager({"svc": make_route("svc", volume_threshold=1)})

        async def fail() -> bytes:
            raise TransportError("http://svc", "down")

        with pytest.raises(TransportError):
            await manager.execute("svc", fail)

        dispatcher = _dispatcher(_route(breaker="svc"), manager, clients)
        report = await dispatcher.dispatch(Message("orders-topic", b"{}"))

        assert report.failed == 2
        assert all(isinstance(r.error, BreakerOpenError) for r in report.results)
        assert recorder.requests == []

    async def test_endpoints_are_delivered_concurrently(self, make_route):
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200)

        transport = httpx.MockTransport(handler)
        http_client = HTTPClient(transport=transport)
        retry_client = RetryingHTTPClient(transport=transport)
        dispatcher = Dispatcher(_route(), CircuitBreakerManager(), http_client, retry_client)

        await dispatcher.dispatch(Message("orders-topic", b"{}"))
        assert peak == 2
        await http_client.aclose()
        await retry_client.aclose()


class TestRetryDeadline:
    async def test_deadline_is_breaker_timeout_minus_margin(self, clients):
        dispatcher = _dispatcher(_route(), CircuitBreakerManager(), clients)
        assert dispatcher._retry_deadline(6000) == pytest.approx(6.0 - DEADLINE_MARGIN_SECONDS)

    async def test_disabled_deadline(self, clients):
        dispatcher = _dispatcher(_route(), CircuitBreakerManager(), clients, use_deadline=False)
        assert dispatcher._retry_deadline(6000) is None

    async def test_no_deadline_without_breaker_timeout(self, clients):
        dispatcher = _dispatcher(_route(), CircuitBreakerManager(), clients)
        assert dispatcher._retry_deadline(0) is None
