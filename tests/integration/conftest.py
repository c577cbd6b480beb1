"""Integration test configuration.

Fixtures that run real uvicorn servers on loopback ports so the bridge
talks to downstream endpoints over actual sockets.
All integration tests are marked with ``@pytest.mark.integration``.
Run them with: ``INTEGRATION=1 pytest tests/integration/ -m integration``
"""

import asyncio
import contextlib
import os
import socket

import pytest
import uvicorn
from fastapi import FastAPI, Request, Response

# ── Auto-skip when INTEGRATION env not set ──────────────────────────────────


def pytest_collection_modifyitems(config, items):
    """Auto-skip integration tests when INTEGRATION env var is not set."""
    if os.environ.get("INTEGRATION", "").lower() in ("1", "true", "yes"):
        return
    skip_marker = pytest.mark.skip(reason="Set INTEGRATION=1 to run integration tests over loopback sockets")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


# ── Helpers ─────────────────────────────────────────────────────────────────


def free_port() -> int:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class Downstream:
    """Recording downstream service.

    ``POST /ok`` answers 200, ``POST /fail`` answers 500 and
    ``POST /flaky`` answers 503 until ``flaky_failures`` is used up.
    """

    def __init__(self, flaky_failures: int = 1) -> None:
        self.received: dict[str, list[bytes]] = {"ok": [], "fail": [], "flaky": []}
        self.flaky_failures = flaky_failures
        self.app = FastAPI()

        @self.app.post("/{kind}")
        async def receive(kind: str, request: Request) -> Response:
            body = await request.body()
            self.received.setdefault(kind, []).append(body)
            if kind == "fail":
                return Response(status_code=500)
            if kind == "flaky" and self.flaky_failures > 0:
                self.flaky_failures -= 1
                return Response(status_code=503)
            return Response(content=b'{"accepted":true}', media_type="application/json")


@contextlib.asynccontextmanager
async def serve(app, port: int):
    """Run *app* on 127.0.0.1:*port* for the duration of the block."""
    config = uvicorn.Config(app, host="127.0.0.1", port=port, log_config=None, lifespan="off")
    server = uvicorn.Server(config)
    task = asyncio.create_task(server.serve())
    while not server.started:
        await asyncio.sleep(0.01)
    try:
        yield server
    finally:
        server.should_exit = True
        await task


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
async def downstream():
    """A running downstream service and its base URL."""
    service = Downstream()
    port = free_port()
    async with serve(service.app, port):
        yield service, f"http://127.0.0.1:{port}"


@pytest.fixture
def diagnostics_port() -> int:
    """A free loopback port for the bridge's diagnostics server."""
    return free_port()
