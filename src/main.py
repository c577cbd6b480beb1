"""Diagnostics API for the hermes bridge.

Read-only FastAPI app exposing per-route breaker statistics: a
``/health`` endpoint, JSON snapshots under ``/circuits`` and
``/consumers``, and ``/hystrix.stream``, a server-sent event stream
that emits one snapshot per route every ``STREAM_INTERVAL_SECONDS``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Sequence

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from src.core.config import Settings
from src.core.errors import HermesError, RouteNotFoundError, StructuredErrorResponse
from src.dispatch.workers import WorkerPool
from src.models.schemas import HealthResponse
from src.resilience.circuit_breaker import CircuitBreakerManager

logger = logging.getLogger(__name__)


def create_app(
    manager: CircuitBreakerManager,
    settings: Settings | None = None,
    pools: Sequence[WorkerPool] = (),
) -> FastAPI:
    """Build the diagnostics app around an existing breaker manager."""
    settings = settings or Settings()
    start_time = time.monotonic()

    app = FastAPI(
        title=f"{settings.SERVICE_NAME}-diagnostics",
        version=settings.SERVICE_VERSION,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(HermesError)
    async def hermes_error_handler(request: Request, exc: HermesError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "")
        body = StructuredErrorResponse.from_exception(exc, request_id)
        status_code = 404 if isinstance(exc, RouteNotFoundError) else 500
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Return service health with name, version, status, and uptime."""
        return HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status="healthy",
            uptime_seconds=round(time.monotonic() - start_time, 2),
            routes=len(manager.route_names),
        )

    @app.get("/circuits")
    async def circuits() -> list[dict]:
        return manager.snapshots()

    @app.get("/circuits/{name}")
    async def circuit(name: str) -> dict:
        return manager.snapshot(name)

    @app.get("/consumers")
    async def consumers() -> list[dict]:
        return [pool.stats() for pool in pools]

    @app.get("/hystrix.stream")
    async def stream(rounds: int | None = Query(default=None, ge=1)) -> StreamingResponse:
        """Stream breaker snapshots as server-sent events.

        ``rounds`` bounds the number of snapshot batches; the stream is
        endless by default.
        """
        logger.info("Diagnostics stream opened rounds=%s", rounds)
        return StreamingResponse(
            _snapshot_events(manager, settings.STREAM_INTERVAL_SECONDS, rounds),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    return app


async def _snapshot_events(
    manager: CircuitBreakerManager,
    interval: float,
    rounds: int | None,
) -> AsyncIterator[str]:
    sent = 0
    while rounds is None or sent < rounds:
        if sent:
            await asyncio.sleep(interval)
        for snapshot in manager.snapshots():
            yield f"data: {json.dumps(snapshot)}\n\n"
        sent += 1
