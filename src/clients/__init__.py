"""HTTP execution clients: single-shot and retrying.

Both expose ``request(method, url, headers, body) -> bytes`` and
``aclose()`` so the dispatcher can pick either per breaker route.
"""

from src.clients.http_client import CLIENT_TIMEOUT_SECONDS, HTTPClient
from src.clients.retry_client import RetryingHTTPClient

__all__ = [
    "CLIENT_TIMEOUT_SECONDS",
    "HTTPClient",
    "RetryingHTTPClient",
]
