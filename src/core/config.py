"""Settings for the hermes bridge.

Process-level configuration loaded from environment variables with the
``HERMES_`` prefix.  Per-route breaker policies and consumer bindings
live in the YAML route file named by ``ROUTES_CONFIG_PATH`` and are
loaded by ``src.route_registry.RouteRegistry``.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Hermes configuration.

    All fields can be overridden by environment variables prefixed with
    ``HERMES_``.  For example, ``HERMES_DIAGNOSTICS_PORT=9999`` moves the
    breaker statistics stream to another port.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "hermes"
    SERVICE_VERSION: str = "0.1.0"

    # ── Route configuration ─────────────────────────────────────────
    ROUTES_CONFIG_PATH: str = "config/hermes.yaml"

    # ── Diagnostics stream ──────────────────────────────────────────
    DIAGNOSTICS_ENABLED: bool = True
    DIAGNOSTICS_HOST: str = "0.0.0.0"
    DIAGNOSTICS_PORT: int = 8092
    STREAM_INTERVAL_SECONDS: float = 1.0

    # ── Logging ─────────────────────────────────────────────────────
    LOG_LEVEL: str = "DEBUG"
    LOG_FORMAT: str = "text"  # "text" or "json"

    # ── HTTP clients ────────────────────────────────────────────────
    # Must stay below every breaker route timeout.
    HTTP_CLIENT_TIMEOUT_SECONDS: float = 4.0
    RETRY_MAX: int = 2  # Extra attempts after the first
    RETRY_WAIT_MIN_SECONDS: float = 1.0
    RETRY_WAIT_MAX_SECONDS: float = 30.0
    RETRY_USE_ROUTE_DEADLINE: bool = True  # Bound retries by the breaker timeout
    MAX_CONNECTIONS: int = 100
    MAX_KEEPALIVE_CONNECTIONS: int = 75
    KEEPALIVE_EXPIRY_SECONDS: float = 45.0

    # ── Workers ─────────────────────────────────────────────────────
    SHUTDOWN_GRACE_SECONDS: float = 10.0

    model_config = {
        "env_prefix": "HERMES_",
    }
