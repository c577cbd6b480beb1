"""Hermes bridge process.

Wires the explicit runtime objects together: one breaker manager, one
plain and one retrying HTTP client shared by every worker, one
dispatcher + worker pool per consumer binding, and the diagnostics
server.  Nothing is global; everything a component needs is passed to
its constructor.

Shutdown order: stop feeding, drain queued messages, stop workers, stop
the diagnostics server, and only then close the HTTP connection pools.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

import httpx
import uvicorn

from src.clients.http_client import HTTPClient
from src.clients.retry_client import RetryingHTTPClient
from src.core.config import Settings
from src.core.log_config import configure_logging
from src.dispatch.router import Dispatcher
from src.dispatch.sources import MessageSource
from src.dispatch.workers import WorkerPool
from src.main import create_app
from src.models.message import Message
from src.resilience.circuit_breaker import CircuitBreakerManager
from src.route_registry import RouteRegistry

logger = logging.getLogger(__name__)


class _DiagnosticsServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the bridge."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class Bridge:
    """Runtime container for one hermes process.

    Args:
        settings:  Process settings.
        registry:  Loaded breaker and consumer routes.
        transport: Optional httpx transport shared by both clients
                   (tests inject ``MockTransport``).
    """

    def __init__(
        self,
        settings: Settings,
        registry: RouteRegistry,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry

        self.manager = CircuitBreakerManager()
        self.manager.configure(registry.breaker_routes)

        self.http_client = HTTPClient(timeout=settings.HTTP_CLIENT_TIMEOUT_SECONDS, transport=transport)
        self.retry_client = RetryingHTTPClient.from_settings(settings, transport=transport)

        self.pools: dict[str, WorkerPool] = {}
        for route in registry.dispatch_routes:
            dispatcher = Dispatcher(
                route,
                self.manager,
                self.http_client,
                self.retry_client,
                use_deadline=settings.RETRY_USE_ROUTE_DEADLINE,
            )
            self.pools[route.name] = WorkerPool(dispatcher)

        self.app = create_app(self.manager, settings, list(self.pools.values()))
        self._server: _DiagnosticsServer | None = None
        self._server_task: asyncio.Task | None = None
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> Bridge:
        """Load the route file named by *settings* and build the bridge."""
        registry = RouteRegistry(settings.ROUTES_CONFIG_PATH, client_timeout=settings.HTTP_CLIENT_TIMEOUT_SECONDS)
        return cls(settings, registry)

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Start every worker pool and the diagnostics server."""
        if self._started:
            return
        self._started = True
        for pool in self.pools.values():
            pool.start()

        if self.settings.DIAGNOSTICS_ENABLED:
            config = uvicorn.Config(
                self.app,
                host=self.settings.DIAGNOSTICS_HOST,
                port=self.settings.DIAGNOSTICS_PORT,
                log_config=None,
                lifespan="off",
            )
            self._server = _DiagnosticsServer(config)
            self._server_task = asyncio.create_task(self._server.serve(), name="diagnostics")
            logger.info(
                "Diagnostics stream on %s:%d",
                self.settings.DIAGNOSTICS_HOST,
                self.settings.DIAGNOSTICS_PORT,
            )
        logger.info("Hermes started with %d consumers", len(self.pools))

    async def stop(self) -> None:
        """Drain and stop the pools, the server, then the HTTP clients."""
        if not self._started:
            return
        self._started = False
        grace = self.settings.SHUTDOWN_GRACE_SECONDS
        await asyncio.gather(*(pool.stop(grace=grace) for pool in self.pools.values()))

        if self._server is not None and self._server_task is not None:
            self._server.should_exit = True
            await self._server_task
            self._server = None
            self._server_task = None

        await self.http_client.aclose()
        await self.retry_client.aclose()
        logger.info("Hermes stopped")

    # ── Feeding ─────────────────────────────────────────────────────

    def attach(self, consumer: str, source: MessageSource) -> asyncio.Task:
        """Feed *source* into the pool of consumer binding *consumer*.

        Raises:
            KeyError: If *consumer* is not configured.
        """
        return self.pools[consumer].attach(source)

    async def publish(self, message: Message) -> int:
        """Enqueue *message* on every pool bound to its source.

        Returns the number of pools that accepted it.
        """
        pools = [pool for pool in self.pools.values() if pool.dispatcher.route.source == message.source]
        if not pools:
            logger.warning("No consumer bound to source=%s, dropping message", message.source)
        for pool in pools:
            await pool.submit(message)
        return len(pools)


async def run(settings: Settings, stop_event: asyncio.Event | None = None) -> None:
    """Run a bridge until *stop_event* is set or SIGINT/SIGTERM arrives."""
    stop_event = stop_event or asyncio.Event()
    bridge = Bridge.from_settings(settings)

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)

    await bridge.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await bridge.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)


def main() -> None:
    """Console entry point."""
    settings = Settings()
    configure_logging(settings)
    logger.info("Starting %s %s", settings.SERVICE_NAME, settings.SERVICE_VERSION)
    try:
        asyncio.run(run(settings))
    except (FileNotFoundError, ValueError) as exc:
        logger.critical("Failed to start: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
