from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import requests.exceptions

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...] = ()
    full_jitter: bool = False


# Short in-call retry for idempotent backend reads
BACKEND_READ = RetryPolicy(
    max_attempts=3,
    base_delay=0.5,
    max_delay=4.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
)

# Reachability probing while offline; attempts are unbounded
PROBE_BACKOFF = RetryPolicy(
    max_attempts=0,
    base_delay=2.0,
    max_delay=60.0,
    backoff_factor=2.0,
    jitter=1.0,
    full_jitter=True,
)


def probe_policy(base_delay: float, max_delay: float) -> RetryPolicy:
    """Build a full-jitter probing policy with configured bounds."""
    return RetryPolicy(
        max_attempts=0,
        base_delay=base_delay,
        max_delay=max_delay,
        backoff_factor=PROBE_BACKOFF.backoff_factor,
        jitter=1.0,
        full_jitter=True,
    )


def calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate delay with exponential backoff and jitter.

    *attempt* is 0-indexed (0 = delay after first failure). With
    ``full_jitter`` the delay is drawn uniformly from ``[0, capped]``.
    """
    delay = policy.base_delay * (policy.backoff_factor**attempt)
    delay = min(delay, policy.max_delay)
    if policy.full_jitter:
        return random.uniform(0.0, delay)
    jitter_range = delay * policy.jitter
    delay += random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay)


def linear_delay(attempt: int, step: float) -> float:
    """Linear backoff: *attempt* is 1-indexed (1 = after first failure)."""
    return max(0.0, step * attempt)


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Execute *func()* with retry per *policy*, re-raising on exhaustion."""
    last_exc: Exception | None = None
    for attempt in range(policy.max_attempts):
        try:
            return func()
        except policy.retryable_exceptions as exc:
            last_exc = exc
            if attempt < policy.max_attempts - 1:
                delay = calc_delay(attempt, policy)
                logger.warning(
                    "Retry %d/%d after %s (%.1fs delay)",
                    attempt + 1,
                    policy.max_attempts,
                    type(exc).__name__,
                    delay,
                )
                sleep_func(delay)
    raise last_exc  # type: ignore[misc]
