"""Backoff for idempotent SEFAZ calls.

A batch submission is never replayed: the authority may already have
registered it, and a second enviNFe would come back as a duplicate. Only
read-only queries (the receipt lookup) go through :func:`retry_call`.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import requests.exceptions

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]
    # HTTPErrors carrying one of these statuses are retried too
    retryable_status_codes: frozenset[int] = field(default_factory=frozenset)

    def should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, self.retryable_exceptions):
            return True
        response = getattr(exc, "response", None)
        return (
            isinstance(exc, requests.exceptions.HTTPError)
            and response is not None
            and response.status_code in self.retryable_status_codes
        )


RECEIPT_QUERY = RetryPolicy(
    name="consulta de recibo",
    max_attempts=3,
    base_delay=1.0,
    max_delay=8.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
    ),
    # Overloaded authorizers answer with an empty 502/503/504
    retryable_status_codes=frozenset({502, 503, 504}),
)


def backoff_delay(policy: RetryPolicy, failures: int) -> float:
    """Seconds to wait after the *failures*-th consecutive failure (1-based)."""
    delay = min(policy.base_delay * policy.backoff_factor ** (failures - 1), policy.max_delay)
    spread = delay * policy.jitter
    return max(0.0, delay + random.uniform(-spread, spread))


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Call *func* until it succeeds or *policy* gives up, then re-raise."""
    failures = 0
    while True:
        try:
            return func()
        except requests.exceptions.RequestException as exc:
            failures += 1
            if failures >= policy.max_attempts or not policy.should_retry(exc):
                raise
            delay = backoff_delay(policy, failures)
            logger.warning(
                "%s: tentativa %d/%d falhou (%s), repetindo em %.1fs",
                policy.name,
                failures,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            sleep_func(delay)
