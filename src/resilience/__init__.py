"""Resilience patterns: per-route circuit breaking and retry decisions.

Every outbound call runs under a named breaker route managed by
``CircuitBreakerManager``; the retrying HTTP client consults
``decide`` after each attempt.
"""

from src.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    CircuitState,
    RollingWindow,
)
from src.resilience.retry_policy import RetryDecision, RetryPolicy, decide, is_terminal_error

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerManager",
    "CircuitState",
    "RetryDecision",
    "RetryPolicy",
    "RollingWindow",
    "decide",
    "is_terminal_error",
]
