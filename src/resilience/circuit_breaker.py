"""Async circuit breaker manager.

Every outbound call runs under a named breaker route.  Each route owns a
``CircuitBreaker`` with a rolling window of outcomes and the standard
three-state machine:

    CLOSED    →  (error % > threshold over >= volume requests)  →  OPEN
    OPEN      →  (sleep window elapsed)                          →  HALF_OPEN
    HALF_OPEN →  (single probe succeeds)                         →  CLOSED
    HALF_OPEN →  (single probe fails)                            →  OPEN

Admission never waits: a call is rejected immediately when the circuit
is open or when the route already runs ``max_concurrent`` calls.  State
changes for a route are serialized by that route's lock, while the work
itself runs outside the lock so up to ``max_concurrent`` calls proceed
in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from src.core.errors import (
    BreakerOpenError,
    BreakerTimeoutError,
    OverloadedError,
    RouteNotFoundError,
)
from src.models.schemas import DEFAULT_ROUTE_NAME, BreakerRoute, default_breaker_route

logger = logging.getLogger(__name__)

# Length of the rolling statistics window, in one-second buckets.
ROLLING_WINDOW_SECONDS = 10

Work = Callable[[], Awaitable[bytes]]
Fallback = Callable[[Exception], Exception]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Outcome(str, Enum):
    """Events recorded in the rolling window."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    SHORT_CIRCUIT = "short_circuit"


# Outcomes that count as a request / as an error for tripping purposes.
_REQUEST_OUTCOMES = frozenset({Outcome.SUCCESS, Outcome.FAILURE, Outcome.TIMEOUT, Outcome.REJECTED})
_ERROR_OUTCOMES = frozenset({Outcome.FAILURE, Outcome.TIMEOUT, Outcome.REJECTED})


@dataclass
class _Bucket:
    second: int
    counts: dict[Outcome, int]


class RollingWindow:
    """Outcome counters bucketed by whole seconds.

    Only the last ``window_seconds`` buckets contribute to the totals.
    """

    def __init__(
        self,
        window_seconds: int = ROLLING_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: deque[_Bucket] = deque()

    def _prune(self, now_second: int) -> None:
        oldest = now_second - self.window_seconds + 1
        while self._buckets and self._buckets[0].second < oldest:
            self._buckets.popleft()

    def record(self, outcome: Outcome) -> None:
        now_second = int(self._clock())
        self._prune(now_second)
        if not self._buckets or self._buckets[-1].second != now_second:
            self._buckets.append(_Bucket(now_second, {}))
        counts = self._buckets[-1].counts
        counts[outcome] = counts.get(outcome, 0) + 1

    def counts(self) -> dict[Outcome, int]:
        """Return per-outcome totals over the window."""
        self._prune(int(self._clock()))
        totals = {outcome: 0 for outcome in Outcome}
        for bucket in self._buckets:
            for outcome, n in bucket.counts.items():
                totals[outcome] += n
        return totals

    def requests(self) -> int:
        counts = self.counts()
        return sum(counts[o] for o in _REQUEST_OUTCOMES)

    def errors(self) -> int:
        counts = self.counts()
        return sum(counts[o] for o in _ERROR_OUTCOMES)

    def error_percentage(self) -> int:
        """Integer error percentage over the window (0 when idle)."""
        counts = self.counts()
        requests = sum(counts[o] for o in _REQUEST_OUTCOMES)
        if requests == 0:
            return 0
        errors = sum(counts[o] for o in _ERROR_OUTCOMES)
        return int(errors * 100 / requests)

    def reset(self) -> None:
        self._buckets.clear()


class CircuitBreaker:
    """Async-safe circuit breaker for a single breaker route.

    Args:
        route: The route policy (timeouts, limits, thresholds).
        clock: Monotonic clock in seconds; injectable for tests.
    """

    def __init__(self, route: BreakerRoute, clock: Callable[[], float] = time.monotonic) -> None:
        self.route = route
        self._clock = clock
        self._window = RollingWindow(clock=clock)
        self._state = CircuitState.CLOSED
        self._opened_at: float = 0.0
        self._probe_in_flight = False
        self._in_flight = 0
        self._lock = asyncio.Lock()

        # Lifetime counters
        self.total_calls = 0
        self.total_successes = 0
        self.total_failures = 0
        self.total_timeouts = 0
        self.total_rejections = 0
        self.total_short_circuits = 0

    @property
    def name(self) -> str:
        return self.route.name

    @property
    def state(self) -> CircuitState:
        """Return the current state, auto-transitioning OPEN → HALF_OPEN."""
        if self._state == CircuitState.OPEN and self._sleep_window_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _sleep_window_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self.route.sleep_window_ms / 1000

    def _retry_after(self) -> float:
        return self.route.sleep_window_ms / 1000 - (self._clock() - self._opened_at)

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning(
            "Circuit opened route=%s error_percentage=%d requests=%d",
            self.name,
            self._window.error_percentage(),
            self._window.requests(),
        )

    def _maybe_trip(self) -> None:
        if self._state != CircuitState.CLOSED:
            return
        if self._window.requests() < self.route.volume_threshold:
            return
        if self._window.error_percentage() > self.route.error_percent_threshold:
            self._trip()

    # ── Admission and outcome recording ─────────────────────────────

    async def admit(self) -> bool:
        """Admit one call or raise; return True if the call is the probe.

        Raises:
            BreakerOpenError: The circuit is open, or half-open with the
                              probe already in flight.
            OverloadedError:  ``max_concurrent`` calls are already running.
        """
        async with self._lock:
            current = self.state

            if current == CircuitState.OPEN or (current == CircuitState.HALF_OPEN and self._probe_in_flight):
                self.total_short_circuits += 1
                self._window.record(Outcome.SHORT_CIRCUIT)
                raise BreakerOpenError(self.name, self._retry_after())

            if self._in_flight >= self.route.max_concurrent:
                self.total_rejections += 1
                self._window.record(Outcome.REJECTED)
                self._maybe_trip()
                raise OverloadedError(self.name, self.route.max_concurrent)

            probe = current == CircuitState.HALF_OPEN
            if probe:
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info("Circuit half-open route=%s, admitting probe", self.name)

            self._in_flight += 1
            self.total_calls += 1
            return probe

    async def on_success(self, probe: bool = False) -> None:
        """Record a successful call; a successful probe closes the circuit."""
        async with self._lock:
            self._in_flight -= 1
            self.total_successes += 1
            self._window.record(Outcome.SUCCESS)
            if probe:
                self._state = CircuitState.CLOSED
                self._probe_in_flight = False
                self._window.reset()
                logger.info("Circuit closed route=%s", self.name)

    async def on_failure(self, probe: bool = False, timed_out: bool = False) -> None:
        """Record a failed call; a failed probe reopens the circuit."""
        async with self._lock:
            self._in_flight -= 1
            if timed_out:
                self.total_timeouts += 1
                self._window.record(Outcome.TIMEOUT)
            else:
                self.total_failures += 1
                self._window.record(Outcome.FAILURE)
            if probe:
                self._trip()
            else:
                self._maybe_trip()

    async def on_cancel(self, probe: bool = False) -> None:
        """Release a call that was cancelled before it finished."""
        async with self._lock:
            self._in_flight -= 1
            if probe:
                # Nothing was learned; let the next caller probe.
                self._probe_in_flight = False

    async def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._probe_in_flight = False
            self._window.reset()

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for diagnostics."""
        counts = self._window.counts()
        return {
            "name": self.name,
            "state": self.state.value,
            "is_open": self.state != CircuitState.CLOSED,
            "in_flight": self._in_flight,
            "request_count": sum(counts[o] for o in _REQUEST_OUTCOMES),
            "error_count": sum(counts[o] for o in _ERROR_OUTCOMES),
            "error_percentage": self._window.error_percentage(),
            "rolling": {outcome.value: n for outcome, n in counts.items()},
            "total_calls": self.total_calls,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_timeouts": self.total_timeouts,
            "total_rejections": self.total_rejections,
            "total_short_circuits": self.total_short_circuits,
            "config": {
                "timeout_ms": self.route.timeout_ms,
                "max_concurrent": self.route.max_concurrent,
                "volume_threshold": self.route.volume_threshold,
                "sleep_window_ms": self.route.sleep_window_ms,
                "error_percent_threshold": self.route.error_percent_threshold,
                "retryable": self.route.retryable,
            },
        }


def _passthrough(exc: Exception) -> Exception:
    return exc


class CircuitBreakerManager:
    """Runs work under named breaker routes.

    The reserved default route always exists; ``execute`` uses it for any
    route name that was never configured.

    Usage::

        manager = CircuitBreakerManager()
        manager.configure(routes)
        body = await manager.execute("svc-a", lambda: client.request("POST", url, headers, payload))
    """

    def __init__(
        self,
        routes: Mapping[str, BreakerRoute] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._configured = False
        self._register(default_breaker_route())
        if routes is not None:
            self.configure(routes)

    def _register(self, route: BreakerRoute) -> None:
        self._breakers[route.name] = CircuitBreaker(route, clock=self._clock)

    def configure(self, routes: Mapping[str, BreakerRoute]) -> None:
        """Register every route; later calls are no-ops.

        The mapping key is the route name.  The reserved default route is
        always (re)installed with its fixed values.
        """
        if self._configured:
            logger.debug("Circuit breaker manager already configured, ignoring")
            return
        for name, route in routes.items():
            if route.name != name:
                route = route.model_copy(update={"name": name})
            self._register(route)
        self._register(default_breaker_route())
        self._configured = True
        logger.info("Circuit breaker manager configured with %d routes", len(self._breakers))

    # ── Lookup ──────────────────────────────────────────────────────

    def resolve(self, route_name: str) -> str:
        """Return *route_name* if configured, else the default route name."""
        return route_name if route_name in self._breakers else DEFAULT_ROUTE_NAME

    def get(self, route_name: str) -> CircuitBreaker:
        """Return the breaker for *route_name*, falling back to the default."""
        return self._breakers[self.resolve(route_name)]

    def route(self, route_name: str) -> BreakerRoute:
        return self.get(route_name).route

    @property
    def route_names(self) -> list[str]:
        return list(self._breakers)

    # ── Execution ───────────────────────────────────────────────────

    async def execute(self, route_name: str, work: Work, fallback: Fallback | None = None) -> bytes:
        """Run *work* under *route_name*'s breaker and return its result.

        Args:
            route_name: Breaker route; unknown names use the default route.
            work:       Zero-argument coroutine factory performing the call.
            fallback:   Converts the underlying error into the error the
                        caller sees; identity by default.

        Raises:
            BreakerOpenError:    Circuit open; *work* was not invoked.
            OverloadedError:     Concurrency limit hit; *work* was not invoked.
            BreakerTimeoutError: *work* exceeded the route timeout.
            Exception:           Whatever *work* raised, after *fallback*.
        """
        fallback = fallback or _passthrough
        breaker = self.get(route_name)

        try:
            probe = await breaker.admit()
        except BreakerOpenError as exc:
            logger.warning("[CIRCUITBREAKER][REJECT] route=%s error=%s", breaker.name, exc)
            raise self._convert(fallback, exc)

        timeout = breaker.route.timeout_ms / 1000 if breaker.route.timeout_ms > 0 else None
        try:
            async with asyncio.timeout(timeout) as scope:
                result = await work()
        except asyncio.CancelledError:
            await breaker.on_cancel(probe)
            raise
        except TimeoutError as exc:
            if scope.expired():
                await breaker.on_failure(probe, timed_out=True)
                error: Exception = BreakerTimeoutError(breaker.name, breaker.route.timeout_ms)
                error.__cause__ = exc
            else:
                await breaker.on_failure(probe)
                error = exc
            self._log_failure(breaker.name, error)
            raise self._convert(fallback, error)
        except Exception as exc:
            await breaker.on_failure(probe)
            self._log_failure(breaker.name, exc)
            raise self._convert(fallback, exc)

        await breaker.on_success(probe)
        return result

    @staticmethod
    def _convert(fallback: Fallback, exc: Exception) -> Exception:
        converted = fallback(exc)
        if converted is not exc and converted.__cause__ is None:
            converted.__cause__ = exc
        return converted

    @staticmethod
    def _log_failure(route_name: str, exc: Exception) -> None:
        logger.error("[CIRCUITBREAKER][FAIL] route=%s error_type=%s error=%s", route_name, type(exc).__name__, exc)

    # ── Diagnostics ─────────────────────────────────────────────────

    def snapshot(self, route_name: str) -> dict:
        """Return the snapshot of a configured route.

        Raises:
            RouteNotFoundError: If *route_name* was never configured.
        """
        if route_name not in self._breakers:
            raise RouteNotFoundError(route_name)
        return self._breakers[route_name].snapshot()

    def snapshots(self) -> list[dict]:
        """Return snapshots for every registered route."""
        return [cb.snapshot() for cb in self._breakers.values()]

    async def reset(self, route_name: str) -> None:
        if route_name not in self._breakers:
            raise RouteNotFoundError(route_name)
        await self._breakers[route_name].reset()

    async def reset_all(self) -> None:
        """Reset every circuit breaker to CLOSED."""
        for cb in self._breakers.values():
            await cb.reset()
