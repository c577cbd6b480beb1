"""Route registry: breaker routes and dispatch routes from YAML.

Loads the route file once at startup.  The file has two top-level
sections::

    circuitbreaker:
      registers:
        <route-name>: {timeout_ms, max_concurrent, volume_threshold,
                       sleep_window_ms, error_percent_threshold, retryable}
    consumers:
      <consumer-name>: {source, handler, breaker, endpoints, content_type,
                        concurrency, queue_size, connection}

Breaker route names are case-insensitive and stored in lower case, as
are the ``breaker`` names consumers refer to them by.

Any problem with the file is a startup error: ``FileNotFoundError`` for
a missing file and ``ValueError`` for everything else.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from src.clients.http_client import CLIENT_TIMEOUT_SECONDS
from src.models.schemas import DEFAULT_ROUTE_NAME, BreakerRoute, DispatchRoute

logger = logging.getLogger(__name__)


class RouteRegistry:
    """Breaker and dispatch routes loaded from a YAML file.

    Args:
        config_path:    Path to the route file.
        client_timeout: HTTP client timeout in seconds; every breaker
                        route timeout must be strictly larger.

    Raises:
        FileNotFoundError: If the YAML file does not exist.
        ValueError: If the YAML is invalid, a route fails validation, or a
                    breaker timeout does not exceed the client timeout.
    """

    def __init__(self, config_path: str | Path, client_timeout: float = CLIENT_TIMEOUT_SECONDS) -> None:
        self.client_timeout = client_timeout
        self._breakers: dict[str, BreakerRoute] = {}
        self._consumers: dict[str, DispatchRoute] = {}
        self._load(Path(config_path))

    @classmethod
    def from_dict(cls, data: dict[str, Any], client_timeout: float = CLIENT_TIMEOUT_SECONDS) -> RouteRegistry:
        """Build a registry from already-parsed configuration."""
        registry = cls.__new__(cls)
        registry.client_timeout = client_timeout
        registry._breakers = {}
        registry._consumers = {}
        registry._parse(data, "<dict>")
        return registry

    # ── Loading ─────────────────────────────────────────────────────

    def _load(self, path: Path) -> None:
        if not path.exists():
            raise FileNotFoundError(f"Route config not found: {path}")

        raw = path.read_text(encoding="utf-8")
        try:
            data: Any = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError(f"Route config must be a mapping in {path}")
        self._parse(data, str(path))
        logger.info(
            "Loaded %d breaker routes and %d consumers from %s",
            len(self._breakers),
            len(self._consumers),
            path,
        )

    def _parse(self, data: dict[str, Any], origin: str) -> None:
        registers = (data.get("circuitbreaker") or {}).get("registers") or {}
        if not isinstance(registers, dict):
            raise ValueError(f"'circuitbreaker.registers' must be a mapping in {origin}")
        for name, item in registers.items():
            self._register_breaker(str(name), item or {}, origin)

        consumers = data.get("consumers") or {}
        if not isinstance(consumers, dict):
            raise ValueError(f"'consumers' must be a mapping in {origin}")
        for name, item in consumers.items():
            self._register_consumer(str(name), item or {}, origin)

    def _register_breaker(self, name: str, item: dict[str, Any], origin: str) -> None:
        key = name.lower()
        if key == DEFAULT_ROUTE_NAME.lower():
            logger.warning("Breaker route '%s' is reserved; its values are fixed and will be ignored", name)
            return
        if key != name:
            logger.info("Breaker route '%s' registered as '%s'", name, key)
        try:
            route = BreakerRoute.model_validate({**item, "name": key})
        except ValidationError as exc:
            raise ValueError(f"Invalid breaker route '{name}' in {origin}: {exc}") from exc

        if route.timeout_ms and route.timeout_ms <= self.client_timeout * 1000:
            raise ValueError(
                f"Breaker route '{name}' timeout {route.timeout_ms}ms must exceed the HTTP client "
                f"timeout of {int(self.client_timeout * 1000)}ms in {origin}"
            )
        self._breakers[key] = route

    def _register_consumer(self, name: str, item: dict[str, Any], origin: str) -> None:
        try:
            route = DispatchRoute.model_validate({**item, "name": name})
        except ValidationError as exc:
            raise ValueError(f"Invalid consumer '{name}' in {origin}: {exc}") from exc
        self._consumers[name] = route

    # ── Access ──────────────────────────────────────────────────────

    @property
    def breaker_routes(self) -> dict[str, BreakerRoute]:
        """Configured breaker routes keyed by name (default route excluded)."""
        return dict(self._breakers)

    @property
    def dispatch_routes(self) -> list[DispatchRoute]:
        """All consumer bindings in file order."""
        return list(self._consumers.values())

    def get_dispatch(self, name: str) -> DispatchRoute | None:
        """Return the consumer binding called *name*, or ``None``."""
        return self._consumers.get(name)

    def for_source(self, source: str) -> list[DispatchRoute]:
        """Return every consumer binding reading from *source*."""
        return [route for route in self._consumers.values() if route.source == source]
