"""Retrying HTTP client.

Wraps attempts in a bounded retry loop that consults a retry policy
(``src.resilience.retry_policy.decide`` by default) after each attempt.
The connection pool is tuned so sustained retry traffic cannot grow it
without bound: the limits are global ceilings shared by every worker
using this client.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from src.clients.http_client import CLIENT_TIMEOUT_SECONDS, MAX_REDIRECTS, read_body, status_text
from src.core.config import Settings
from src.core.errors import (
    DeadlineExceededError,
    HTTPStatusError,
    RequestConstructionError,
    TransportError,
)
from src.models.message import OutboundRequest
from src.resilience.retry_policy import RetryPolicy, decide, is_terminal_error

logger = logging.getLogger(__name__)

DEFAULT_RETRY_MAX = 2
DEFAULT_WAIT_MIN = 1.0
DEFAULT_WAIT_MAX = 30.0
DEFAULT_MAX_CONNECTIONS = 100
DEFAULT_MAX_KEEPALIVE_CONNECTIONS = 75
DEFAULT_KEEPALIVE_EXPIRY = 45.0


def backoff_delay(attempt: int, response: httpx.Response | None, wait_min: float, wait_max: float) -> float:
    """Exponential backoff honouring ``Retry-After`` on 429/503."""
    if response is not None and response.status_code in (429, 503):
        retry_after = response.headers.get("Retry-After", "")
        if retry_after.isdigit():
            return float(retry_after)
    delay = wait_min * (2**attempt)
    return min(delay, wait_max)


class RetryingHTTPClient:
    """HTTP client with policy-driven retries.

    Args:
        timeout:    Per-attempt client timeout in seconds.
        retry_max:  Extra attempts allowed after the first one.
        wait_min:   Base backoff in seconds.
        wait_max:   Backoff ceiling in seconds.
        policy:     Retry decision callable.
        limits:     Connection pool limits.
        transport:  Optional httpx transport (tests inject ``MockTransport``).
    """

    def __init__(
        self,
        *,
        timeout: float = CLIENT_TIMEOUT_SECONDS,
        retry_max: int = DEFAULT_RETRY_MAX,
        wait_min: float = DEFAULT_WAIT_MIN,
        wait_max: float = DEFAULT_WAIT_MAX,
        policy: RetryPolicy = decide,
        limits: httpx.Limits | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.retry_max = retry_max
        self.wait_min = wait_min
        self.wait_max = wait_max
        self.policy = policy
        self.limits = limits or httpx.Limits(
            max_connections=DEFAULT_MAX_CONNECTIONS,
            max_keepalive_connections=DEFAULT_MAX_KEEPALIVE_CONNECTIONS,
            keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
        )
        self._client = httpx.AsyncClient(
            timeout=timeout,
            limits=self.limits,
            transport=transport,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> RetryingHTTPClient:
        return cls(
            timeout=settings.HTTP_CLIENT_TIMEOUT_SECONDS,
            retry_max=settings.RETRY_MAX,
            wait_min=settings.RETRY_WAIT_MIN_SECONDS,
            wait_max=settings.RETRY_WAIT_MAX_SECONDS,
            limits=httpx.Limits(
                max_connections=settings.MAX_CONNECTIONS,
                max_keepalive_connections=settings.MAX_KEEPALIVE_CONNECTIONS,
                keepalive_expiry=settings.KEEPALIVE_EXPIRY_SECONDS,
            ),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        *,
        deadline: float | None = None,
    ) -> bytes:
        """Send a request with retries and return the response body.

        A request that cannot be constructed is logged and dropped: the
        call returns an empty body instead of raising.

        Args:
            deadline: Overall budget in seconds across all attempts and
                      backoff sleeps; ``None`` means attempts are bounded
                      only by the per-attempt timeout.

        Raises:
            DeadlineExceededError: If *deadline* ran out.
            TransportError: On a non-retryable or exhausted transport failure.
            HTTPStatusError: On a non-200 terminal or exhausted response.
            BodyReadError: If the final body could not be read.
        """
        try:
            req = OutboundRequest(method, url, headers or {}, body)
        except RequestConstructionError as exc:
            logger.error("Cannot create request method=%s url=%s error=%s", method, url, exc)
            return b""
        return await self.send(req, deadline=deadline)

    async def send(self, req: OutboundRequest, *, deadline: float | None = None) -> bytes:
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + deadline if deadline is not None else None
        attempts = 1 + self.retry_max
        error: BaseException | None = None
        response: httpx.Response | None = None

        for attempt in range(attempts):
            error, response = await self._attempt(req, attempt, attempts, deadline_at, deadline)
            if error is not None and deadline_at is not None and loop.time() >= deadline_at:
                if not isinstance(error, DeadlineExceededError):
                    exc = DeadlineExceededError(req.url, deadline)
                    exc.__cause__ = error
                    error = exc

            decision = self.policy(error, response)
            if not decision.should_retry:
                if is_terminal_error(error):
                    await self._discard(response)
                    raise error
                if error is not None:
                    raise TransportError(req.url, str(error) or type(error).__name__) from error
                return await self._finish(req, response)

            if attempt == attempts - 1:
                break

            wait = backoff_delay(attempt, response, self.wait_min, self.wait_max)
            await self._discard(response)
            if deadline_at is not None and loop.time() + wait >= deadline_at:
                raise DeadlineExceededError(req.url, deadline) from error
            logger.warning(
                "HTTP %s url=%s attempt %d/%d failed (%s), retrying in %.1fs",
                req.method,
                req.url,
                attempt + 1,
                attempts,
                self._describe(error, response),
                wait,
            )
            await asyncio.sleep(wait)

        logger.error("HTTP %s url=%s giving up after %d attempt(s)", req.method, req.url, attempts)
        if response is not None:
            status, status_code = status_text(response), response.status_code
            await self._discard(response)
            raise HTTPStatusError(status, status_code, req.url)
        raise TransportError(req.url, f"giving up after {attempts} attempt(s): {error}") from error

    async def _attempt(
        self,
        req: OutboundRequest,
        attempt: int,
        attempts: int,
        deadline_at: float | None,
        deadline: float | None,
    ) -> tuple[BaseException | None, httpx.Response | None]:
        """Run one attempt; return ``(error, response)`` with exactly one set."""
        timeout = self.timeout
        if deadline_at is not None:
            remaining = deadline_at - asyncio.get_running_loop().time()
            if remaining <= 0:
                return DeadlineExceededError(req.url, deadline), None
            timeout = min(timeout, remaining)

        logger.debug("HTTP %s url=%s attempt %d/%d", req.method, req.url, attempt + 1, attempts)
        request = self._client.build_request(
            req.method,
            req.url,
            headers=req.headers,
            content=req.body or None,
            timeout=timeout,
        )
        try:
            return None, await self._client.send(request, stream=True)
        except httpx.RequestError as exc:
            return exc, None

    async def _finish(self, req: OutboundRequest, response: httpx.Response) -> bytes:
        """Turn a terminal response into a body or an ``HTTPStatusError``."""
        try:
            if response.status_code != 200:
                logger.error(
                    "HTTP %s failed url=%s status_code=%d status=%s",
                    req.method,
                    req.url,
                    response.status_code,
                    status_text(response),
                )
                raise HTTPStatusError(status_text(response), response.status_code, req.url)
            body = await read_body(response, req.url)
        finally:
            await response.aclose()
        logger.info("HTTP %s succeeded url=%s response=%s", req.method, req.url, body[:200])
        return body

    @staticmethod
    async def _discard(response: httpx.Response | None) -> None:
        if response is not None:
            await response.aclose()

    @staticmethod
    def _describe(error: BaseException | None, response: httpx.Response | None) -> str:
        if error is not None:
            return repr(error)
        if response is not None:
            return status_text(response)
        return "no response"

    async def aclose(self) -> None:
        """Release pooled connections."""
        await self._client.aclose()
