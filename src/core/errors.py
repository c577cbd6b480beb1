"""Structured errors for the hermes bridge.

Exception hierarchy shared by the HTTP clients, the circuit breaker
manager and the dispatcher.  Every error the bridge raises on purpose
derives from ``HermesError`` so the dispatcher can catch exactly those
per endpoint and let anything else reach the worker boundary.
"""

from __future__ import annotations

from pydantic import BaseModel


class HermesError(Exception):
    """Base exception for all hermes errors."""


# ── HTTP execution errors ───────────────────────────────────────────────


class TransportError(HermesError):
    """Raised when the request never produced a response (network/DNS/TLS)."""

    def __init__(self, url: str, detail: str = "") -> None:
        self.url = url
        self.detail = detail
        msg = f"Transport failure for {url}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class HTTPStatusError(HermesError):
    """Raised when a downstream endpoint answers with a non-200 status."""

    def __init__(self, status: str, status_code: int, url: str = "") -> None:
        self.status = status
        self.status_code = status_code
        self.url = url
        super().__init__(f"[HTTP::ERROR] [Status:{status}] [StatusCode:{status_code}]")


class BodyReadError(HermesError):
    """Raised when the response body cannot be read to completion."""

    def __init__(self, url: str, detail: str = "") -> None:
        self.url = url
        self.detail = detail
        msg = f"Failed to read response body from {url}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class RequestConstructionError(HermesError):
    """Raised when an outbound request is malformed (bad method or URL)."""


class DeadlineExceededError(HermesError, TimeoutError):
    """Raised when a retrying request runs past its overall deadline."""

    def __init__(self, url: str, deadline: float) -> None:
        self.url = url
        self.deadline = deadline
        super().__init__(f"Deadline of {deadline}s exceeded for {url}")


# ── Circuit breaker errors ──────────────────────────────────────────────


class BreakerOpenError(HermesError):
    """Raised when a call is rejected because the route's circuit is open.

    The wrapped work is never invoked.
    """

    def __init__(self, route_name: str, retry_after: float) -> None:
        self.route_name = route_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit open for '{route_name}', retry after {self.retry_after:.1f}s")


class OverloadedError(BreakerOpenError):
    """Raised when a route already runs ``max_concurrent`` calls."""

    def __init__(self, route_name: str, max_concurrent: int) -> None:
        self.max_concurrent = max_concurrent
        HermesError.__init__(self, f"Route '{route_name}' overloaded: {max_concurrent} calls in flight")
        self.route_name = route_name
        self.retry_after = 0.0


class BreakerTimeoutError(HermesError):
    """Raised when work under a breaker route exceeds the route timeout."""

    def __init__(self, route_name: str, timeout_ms: int) -> None:
        self.route_name = route_name
        self.timeout_ms = timeout_ms
        super().__init__(f"Route '{route_name}' timed out after {timeout_ms}ms")


class RouteNotFoundError(HermesError):
    """Raised when a lookup names a route that was never configured."""

    def __init__(self, route_name: str) -> None:
        self.route_name = route_name
        super().__init__(f"Unknown route: {route_name}")


# ── Structured response ─────────────────────────────────────────────────

_ERROR_CODES: list[tuple[type[Exception], str]] = [
    (OverloadedError, "OVERLOADED"),
    (BreakerOpenError, "CIRCUIT_OPEN"),
    (BreakerTimeoutError, "BREAKER_TIMEOUT"),
    (DeadlineExceededError, "DEADLINE_EXCEEDED"),
    (HTTPStatusError, "HTTP_STATUS"),
    (TransportError, "TRANSPORT_ERROR"),
    (BodyReadError, "BODY_READ_ERROR"),
    (RequestConstructionError, "BAD_REQUEST"),
    (RouteNotFoundError, "ROUTE_NOT_FOUND"),
    (HermesError, "HERMES_ERROR"),
]


def error_code(exc: BaseException) -> str:
    """Return the machine-readable code for *exc*."""
    for exc_type, code in _ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return "INTERNAL_ERROR"


class StructuredErrorResponse(BaseModel):
    """Structured error body returned by the diagnostics API.

    Returns ``{"error": str, "code": str, "request_id": str}``, no stack traces.
    """

    error: str
    code: str
    request_id: str

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> StructuredErrorResponse:
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        code = error_code(exc)
        if code == "INTERNAL_ERROR":
            return cls(error="An internal error occurred", code=code, request_id=request_id)
        return cls(error=str(exc), code=code, request_id=request_id)
