"""Structured error tests.

Covers the error hierarchy, message formats and the mapping to
machine-readable codes used by the diagnostics API and handler logs.
"""

import pytest

from src.core.errors import (
    BodyReadError,
    BreakerOpenError,
    BreakerTimeoutError,
    DeadlineExceededError,
    HermesError,
    HTTPStatusError,
    OverloadedError,
    RequestConstructionError,
    RouteNotFoundError,
    StructuredErrorResponse,
    TransportError,
    error_code,
)

# ── Error hierarchy ────────────────────────────────────────────────────


class TestErrorHierarchy:
    """All custom errors inherit from HermesError."""

    @pytest.mark.parametrize(
        "exc_type",
        [
            TransportError,
            HTTPStatusError,
            BodyReadError,
            RequestConstructionError,
            DeadlineExceededError,
            BreakerOpenError,
            OverloadedError,
            BreakerTimeoutError,
            RouteNotFoundError,
        ],
    )
    def test_inherits_from_base(self, exc_type) -> None:
        assert issubclass(exc_type, HermesError)

    def test_deadline_is_a_timeout(self) -> None:
        assert issubclass(DeadlineExceededError, TimeoutError)

    def test_overloaded_is_a_rejection(self) -> None:
        assert issubclass(OverloadedError, BreakerOpenError)


class TestMessages:
    def test_http_status_format(self) -> None:
        err = HTTPStatusError("503 Service Unavailable", 503, "http://svc")
        assert str(err) == "[HTTP::ERROR] [Status:503 Service Unavailable] [StatusCode:503]"
        assert err.status_code == 503
        assert err.url == "http://svc"

    def test_transport_error(self) -> None:
        err = TransportError("http://svc", "connection refused")
        assert "http://svc" in str(err)
        assert "connection refused" in str(err)

    def test_breaker_open_clamps_retry_after(self) -> None:
        err = BreakerOpenError("svc-a", -3.0)
        assert err.retry_after == 0.0
        assert err.route_name == "svc-a"

    def test_overloaded(self) -> None:
        err = OverloadedError("svc-a", 5)
        assert err.route_name == "svc-a"
        assert err.max_concurrent == 5
        assert err.retry_after == 0.0
        assert "overloaded" in str(err)

    def test_breaker_timeout(self) -> None:
        err = BreakerTimeoutError("svc-a", 250)
        assert "250ms" in str(err)


# ── Error codes and structured response ────────────────────────────────


class TestErrorCodes:
    @pytest.mark.parametrize(
        "exc,code",
        [
            (OverloadedError("r", 1), "OVERLOADED"),
            (BreakerOpenError("r", 1.0), "CIRCUIT_OPEN"),
            (BreakerTimeoutError("r", 1), "BREAKER_TIMEOUT"),
            (DeadlineExceededError("u", 1.0), "DEADLINE_EXCEEDED"),
            (HTTPStatusError("500", 500), "HTTP_STATUS"),
            (TransportError("u"), "TRANSPORT_ERROR"),
            (BodyReadError("u"), "BODY_READ_ERROR"),
            (RequestConstructionError("bad"), "BAD_REQUEST"),
            (RouteNotFoundError("r"), "ROUTE_NOT_FOUND"),
            (HermesError("x"), "HERMES_ERROR"),
            (RuntimeError("x"), "INTERNAL_ERROR"),
        ],
    )
    def test_error_code(self, exc, code) -> None:
        assert error_code(exc) == code


class TestStructuredErrorResponse:
    def test_from_hermes_error(self) -> None:
        resp = StructuredErrorResponse.from_exception(RouteNotFoundError("svc-x"), "req-1")
        assert resp.model_dump() == {"error": "Unknown route: svc-x", "code": "ROUTE_NOT_FOUND", "request_id": "req-1"}

    def test_unknown_error_hides_details(self) -> None:
        resp = StructuredErrorResponse.from_exception(RuntimeError("secret path /etc/x"), "req-2")
        assert resp.code == "INTERNAL_ERROR"
        assert "secret" not in resp.error
