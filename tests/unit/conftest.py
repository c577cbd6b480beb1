"""Shared fixtures for unit tests."""

from __future__ import annotations

import pytest

from src.models.schemas import BreakerRoute


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_route():
    """Factory for breaker routes with test-friendly defaults."""

    def _make(name: str = "svc-a", **overrides) -> BreakerRoute:
        values = {
            "timeout_ms": 5000,
            "max_concurrent": 10,
            "volume_threshold": 4,
            "sleep_window_ms": 5000,
            "error_percent_threshold": 50,
            "retryable": False,
        }
        values.update(overrides)
        return BreakerRoute(name=name, **values)

    return _make
