"""Retry decision policy for the retrying HTTP client.

``decide`` classifies the outcome of a single attempt.  It is pure: the
same (error, response) pair always yields the same decision, and the
retrying client owns every side effect (sleeping, closing responses,
raising).

Rules, first match wins:

1. cancelled or past the deadline      → NO_RETRY (error returned unchanged)
2. redirect limit exceeded             → NO_RETRY
3. TLS certificate verification failed → NO_RETRY
4. client timeout awaiting a response  → NO_RETRY
5. any other transport error           → RETRY
6. status 0 or 5xx except 501          → RETRY, anything else NO_RETRY
"""

from __future__ import annotations

import asyncio
import ssl
from enum import Enum
from typing import Protocol

import httpx


class RetryDecision(str, Enum):
    """Outcome of one attempt as seen by the retry loop."""

    RETRY = "retry"
    NO_RETRY = "no_retry"

    @property
    def should_retry(self) -> bool:
        return self is RetryDecision.RETRY


class RetryPolicy(Protocol):
    """Callable deciding whether an attempt should be retried."""

    def __call__(self, error: BaseException | None, response: httpx.Response | None) -> RetryDecision: ...


def _exception_chain(error: BaseException):
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def is_certificate_error(error: BaseException) -> bool:
    """Return True if *error* was caused by certificate verification."""
    for exc in _exception_chain(error):
        if isinstance(exc, ssl.SSLCertVerificationError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(exc):
            return True
    return False


def is_terminal_error(error: BaseException | None) -> bool:
    """Return True for cancellation and deadline errors.

    These end the retry loop and reach the caller as the same object.
    """
    return isinstance(error, (asyncio.CancelledError, TimeoutError))


def decide(error: BaseException | None, response: httpx.Response | None) -> RetryDecision:
    """Classify one attempt of the retrying client."""
    if error is not None:
        if is_terminal_error(error):
            return RetryDecision.NO_RETRY
        if isinstance(error, httpx.TooManyRedirects):
            return RetryDecision.NO_RETRY
        if is_certificate_error(error):
            return RetryDecision.NO_RETRY
        if isinstance(error, httpx.TimeoutException):
            return RetryDecision.NO_RETRY
        # Likely recoverable.
        return RetryDecision.RETRY

    if response is None:
        return RetryDecision.NO_RETRY

    # 501 Not Implemented is permanent; other 5xx usually relate to outages.
    status = response.status_code
    if status == 0 or (status >= 500 and status != 501):
        return RetryDecision.RETRY
    return RetryDecision.NO_RETRY
