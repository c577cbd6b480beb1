"""Single-shot HTTP client.

One attempt per call with a fixed client timeout.  The timeout is kept
below every breaker route timeout so the client gives up before the
breaker does and the two never race on the same request.

Redirects are followed up to ``MAX_REDIRECTS`` hops; the final response
is the one judged.  Every response is streamed inside a context manager,
so the connection is released on success, on non-200 status and on
body-read failure.
"""

from __future__ import annotations

import logging

import httpx

from src.core.errors import BodyReadError, HTTPStatusError, TransportError
from src.models.message import OutboundRequest

logger = logging.getLogger(__name__)

# Seconds; must stay below the breaker route timeouts.
CLIENT_TIMEOUT_SECONDS = 4.0

# Redirects followed before giving up with ``httpx.TooManyRedirects``.
MAX_REDIRECTS = 10


def status_text(response: httpx.Response) -> str:
    """Return ``"503 Service Unavailable"`` style status text."""
    return f"{response.status_code} {response.reason_phrase}".strip()


async def read_body(response: httpx.Response, url: str) -> bytes:
    """Read the full body of a streamed *response*.

    Raises:
        BodyReadError: If the stream breaks or cannot be decoded.
    """
    try:
        return await response.aread()
    except httpx.HTTPError as exc:
        logger.error("HTTP body read failed url=%s error=%s", url, exc)
        raise BodyReadError(url, str(exc)) from exc


class HTTPClient:
    """Plain HTTP client: one attempt, non-200 is an error.

    Args:
        timeout:   Client timeout in seconds (connect, read, write, pool).
        transport: Optional httpx transport (tests inject ``MockTransport``).
    """

    def __init__(
        self,
        timeout: float = CLIENT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
        )

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
    ) -> bytes:
        """Send one request and return the response body.

        Raises:
            RequestConstructionError: If *method* or *url* is unusable.
            TransportError: If no response was received.
            HTTPStatusError: If the status is not 200.
            BodyReadError: If the body could not be read.
        """
        return await self.send(OutboundRequest(method, url, headers or {}, body))

    async def send(self, req: OutboundRequest) -> bytes:
        logger.debug("HTTP %s url=%s headers=%s", req.method, req.url, req.headers)
        try:
            async with self._client.stream(
                req.method,
                req.url,
                headers=req.headers,
                content=req.body or None,
            ) as response:
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
        except httpx.RequestError as exc:
            logger.error("HTTP %s failed url=%s error=%r", req.method, req.url, exc)
            raise TransportError(req.url, str(exc) or type(exc).__name__) from exc

        logger.info("HTTP %s succeeded url=%s response=%s", req.method, req.url, body[:200])
        return body

    async def aclose(self) -> None:
        """Release pooled connections."""
        await self._client.aclose()
