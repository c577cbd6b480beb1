"""Message and outbound request value objects."""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx

from src.core.errors import RequestConstructionError

SUPPORTED_METHODS = frozenset({"GET", "POST", "DELETE"})


@dataclass(frozen=True)
class Message:
    """A single inbound message.

    Attributes:
        source:  Topic or queue name the message was read from.
        payload: Opaque body forwarded verbatim to every endpoint.
        key:     Optional partition/routing key (informational only).
        headers: Optional source metadata (informational only).
    """

    source: str
    payload: bytes
    key: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OutboundRequest:
    """One HTTP call to a downstream endpoint.

    Validated on construction: the method must be GET, POST or DELETE and
    the URL must be an absolute http(s) URL.

    Raises:
        RequestConstructionError: If the method or URL is unusable.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    route_name: str = ""

    def __post_init__(self) -> None:
        method = self.method.upper()
        if method not in SUPPORTED_METHODS:
            raise RequestConstructionError(f"invalid method {self.method!r}")
        object.__setattr__(self, "method", method)

        try:
            parsed = httpx.URL(self.url)
        except (httpx.InvalidURL, TypeError) as exc:
            raise RequestConstructionError(f"invalid url {self.url!r}: {exc}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise RequestConstructionError(f"invalid url {self.url!r}: absolute http(s) URL required")

        object.__setattr__(self, "headers", dict(self.headers))
        object.__setattr__(self, "body", bytes(self.body or b""))
