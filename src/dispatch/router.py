"""Dispatcher: fan a message out to its endpoints under a breaker route.

Each consumer binding (``DispatchRoute``) gets one ``Dispatcher``.  The
binding's ``HandlerKind`` selects the handler behaviour, which decides
the breaker route name; the breaker route's ``retryable`` flag selects
the plain or the retrying HTTP client.  Every endpoint is delivered
independently and concurrently: a failure on one endpoint is logged and
recorded, never retried here, and never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, assert_never

from src.clients.http_client import HTTPClient
from src.clients.retry_client import RetryingHTTPClient
from src.core.errors import HermesError, error_code
from src.models.message import Message
from src.models.schemas import DEFAULT_ROUTE_NAME, DispatchRoute, HandlerKind
from src.resilience.circuit_breaker import CircuitBreakerManager

logger = logging.getLogger(__name__)

# Retry deadlines end this much before the breaker timeout fires.
DEADLINE_MARGIN_SECONDS = 0.1

# ── Results ─────────────────────────────────────────────────────────────


@dataclass
class EndpointResult:
    """Outcome of delivering one message to one endpoint.

    Attributes:
        endpoint:   Destination URL.
        route_name: Breaker route the call ran under.
        body:       Response body on success.
        error:      The error raised on failure.
        elapsed_ms: Wall time of the delivery in milliseconds.
    """

    endpoint: str
    route_name: str
    body: bytes | None = None
    error: Exception | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DispatchReport:
    """Outcome of one ``dispatch`` call, one result per endpoint in order."""

    handler: str
    source: str
    results: list[EndpointResult] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


# ── Handler behaviours ──────────────────────────────────────────────────


class MessageHandler(ABC):
    """Behaviour attached to a consumer binding."""

    kind: ClassVar[HandlerKind]

    def __init__(self, route: DispatchRoute) -> None:
        self.route = route

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    def breaker_route(self) -> str:
        """Return the breaker route name used for every endpoint call."""


class GeneralEventHandler(MessageHandler):
    """Forwards under the binding's breaker bucket, or the default route."""

    kind = HandlerKind.GENERAL_EVENT

    def breaker_route(self) -> str:
        return self.route.breaker.lower() if self.route.breaker else DEFAULT_ROUTE_NAME


class NotificationServiceHandler(MessageHandler):
    """Forwards under the lower-cased bucket name (its own name by default)."""

    kind = HandlerKind.NOTIFICATION_SERVICE

    def breaker_route(self) -> str:
        return (self.route.breaker or self.kind.value).lower()


def create_handler(route: DispatchRoute) -> MessageHandler:
    """Return the handler behaviour selected by *route*."""
    match route.handler:
        case HandlerKind.GENERAL_EVENT:
            return GeneralEventHandler(route)
        case HandlerKind.NOTIFICATION_SERVICE:
            return NotificationServiceHandler(route)
        case _:
            assert_never(route.handler)


# ── Dispatcher ──────────────────────────────────────────────────────────


class Dispatcher:
    """Delivers messages of one consumer binding to its endpoints.

    Args:
        route:        The consumer binding.
        manager:      Breaker manager every endpoint call runs under.
        http_client:  Single-shot client for non-retryable routes.
        retry_client: Retrying client for retryable routes.
        use_deadline: Bound retrying calls by the breaker route timeout.
    """

    def __init__(
        self,
        route: DispatchRoute,
        manager: CircuitBreakerManager,
        http_client: HTTPClient,
        retry_client: RetryingHTTPClient,
        *,
        use_deadline: bool = True,
    ) -> None:
        self.route = route
        self.handler = create_handler(route)
        self._manager = manager
        self._http_client = http_client
        self._retry_client = retry_client
        self._use_deadline = use_deadline

    def _retry_deadline(self, timeout_ms: int) -> float | None:
        if not self._use_deadline or timeout_ms <= 0:
            return None
        return max(timeout_ms / 1000 - DEADLINE_MARGIN_SECONDS, 0.0)

    async def dispatch(self, message: Message) -> DispatchReport:
        """Deliver *message* to every endpoint of the binding concurrently."""
        route_name = self.handler.breaker_route()
        breaker_route = self._manager.route(route_name)
        logger.debug(
            "Dispatching message source=%s handler=%s route=%s endpoints=%d retryable=%s",
            message.source,
            self.handler.name,
            route_name,
            len(self.route.endpoints),
            breaker_route.retryable,
        )

        results = await asyncio.gather(
            *(
                self._deliver(endpoint, route_name, breaker_route.retryable, breaker_route.timeout_ms, message)
                for endpoint in self.route.endpoints
            )
        )
        return DispatchReport(handler=self.handler.name, source=message.source, results=list(results))

    async def _deliver(
        self,
        endpoint: str,
        route_name: str,
        retryable: bool,
        timeout_ms: int,
        message: Message,
    ) -> EndpointResult:
        headers = {"Content-Type": self.route.content_type}
        if retryable:
            deadline = self._retry_deadline(timeout_ms)

            def work():
                return self._retry_client.request("POST", endpoint, headers, message.payload, deadline=deadline)

        else:

            def work():
                return self._http_client.request("POST", endpoint, headers, message.payload)

        start = time.monotonic()
        try:
            body = await self._manager.execute(route_name, work)
        except HermesError as exc:
            elapsed_ms = round((time.monotonic() - start) * 1000, 2)
            logger.error(
                "[HANDLER][FAIL] handler=%s url=%s code=%s error=%s",
                self.handler.name,
                endpoint,
                error_code(exc),
                exc,
            )
            return EndpointResult(endpoint, route_name, error=exc, elapsed_ms=elapsed_ms)
        except Exception as exc:
            elapsed_ms = round((time.monotonic() - start) * 1000, 2)
            logger.exception("[HANDLER][FAIL] handler=%s url=%s unexpected error", self.handler.name, endpoint)
            return EndpointResult(endpoint, route_name, error=exc, elapsed_ms=elapsed_ms)

        elapsed_ms = round((time.monotonic() - start) * 1000, 2)
        logger.info(
            "[HANDLER][SUCCESS] handler=%s url=%s elapsed_ms=%.2f response=%s",
            self.handler.name,
            endpoint,
            elapsed_ms,
            body[:200],
        )
        return EndpointResult(endpoint, route_name, body=body, elapsed_ms=elapsed_ms)
