"""Configuration and response models.

Pydantic models for the two configuration tables the bridge runs on:
breaker routes (per-bucket resilience policy) and dispatch routes
(message source → handler + endpoints).  Both are built once at startup
by ``RouteRegistry`` and never mutated afterwards.
"""

from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Reserved breaker route used whenever a requested route name is unknown.
DEFAULT_ROUTE_NAME = "GeneralEventHandler"

# Fixed values of the reserved default route.
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MAX_CONCURRENT = 50
DEFAULT_VOLUME_THRESHOLD = 20
DEFAULT_SLEEP_WINDOW_MS = 5000
DEFAULT_ERROR_PERCENT_THRESHOLD = 50


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: str
    uptime_seconds: float
    routes: int


# ── Breaker routes ──────────────────────────────────────────────────────


class BreakerRoute(BaseModel):
    """Named resilience policy for a class of outbound calls.

    Field names accept both the snake_case spelling and the flat
    lower-case keys used by older route files (``maxconcurrentrequests``,
    ``sleepwindow`` ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        ge=0,
        validation_alias=AliasChoices("timeout_ms", "timeout"),
    )
    max_concurrent: int = Field(
        default=DEFAULT_MAX_CONCURRENT,
        ge=0,
        validation_alias=AliasChoices("max_concurrent", "maxconcurrentrequests"),
    )
    volume_threshold: int = Field(
        default=DEFAULT_VOLUME_THRESHOLD,
        ge=0,
        validation_alias=AliasChoices("volume_threshold", "requestvolumethreshold"),
    )
    sleep_window_ms: int = Field(
        default=DEFAULT_SLEEP_WINDOW_MS,
        ge=0,
        validation_alias=AliasChoices("sleep_window_ms", "sleepwindow"),
    )
    error_percent_threshold: int = Field(
        default=DEFAULT_ERROR_PERCENT_THRESHOLD,
        ge=0,
        le=100,
        validation_alias=AliasChoices("error_percent_threshold", "errorpercentthreshold"),
    )
    retryable: bool = False


def default_breaker_route() -> BreakerRoute:
    """Return the reserved default route with its fixed values."""
    return BreakerRoute(
        name=DEFAULT_ROUTE_NAME,
        timeout_ms=DEFAULT_TIMEOUT_MS,
        max_concurrent=DEFAULT_MAX_CONCURRENT,
        volume_threshold=DEFAULT_VOLUME_THRESHOLD,
        sleep_window_ms=DEFAULT_SLEEP_WINDOW_MS,
        error_percent_threshold=DEFAULT_ERROR_PERCENT_THRESHOLD,
        retryable=False,
    )


# ── Dispatch routes ─────────────────────────────────────────────────────


class HandlerKind(str, Enum):
    """Closed set of message handling behaviours."""

    GENERAL_EVENT = "GeneralEventHandler"
    NOTIFICATION_SERVICE = "NotificationServiceHandler"


class DispatchRoute(BaseModel):
    """Binding of a message source to a handler and its endpoints.

    Attributes:
        name:         Consumer key from the route file.
        source:       Topic or queue name the messages come from.
        handler:      Handler behaviour; ``GeneralEventHandler`` when unset.
        breaker:      Breaker bucket name; the handler decides the fallback.
        endpoints:    Ordered destination URLs.
        content_type: ``Content-Type`` header sent with every payload.
        concurrency:  Number of workers pulling from this route's queue.
        queue_size:   Capacity of the route's bounded queue.
        connection:   Source-specific connection descriptor (opaque here).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1, validation_alias=AliasChoices("source", "topic", "queue"))
    handler: HandlerKind = Field(
        default=HandlerKind.GENERAL_EVENT,
        validation_alias=AliasChoices("handler", "handleFuncName"),
    )
    breaker: str | None = None
    endpoints: tuple[str, ...] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("endpoints", "endPoints"),
    )
    content_type: str = "application/json"
    concurrency: int = Field(default=1, ge=1)
    queue_size: int = Field(default=100, ge=1)
    connection: dict = Field(default_factory=dict)

    @field_validator("handler", mode="before")
    @classmethod
    def default_handler(cls, v: object) -> object:
        """An empty handler name selects the general behaviour."""
        if v is None or v == "":
            return HandlerKind.GENERAL_EVENT
        return v

    @field_validator("endpoints")
    @classmethod
    def check_endpoints(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"Endpoint must be an http(s) URL: {url!r}")
        return v
