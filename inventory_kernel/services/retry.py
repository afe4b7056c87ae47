"""
Caller-level retry for coordinator calls that lost a concurrency race.

The kernel never retries on its own: a ConcurrentModification failure is
returned to the caller, who may re-run the whole call.  ``run_with_retry``
is that loop.  It re-invokes ``fn`` while the returned CoreResult carries a
retryable error, sleeping with exponential backoff and full jitter between
attempts, and returns the last result when attempts run out.

Usage:
    result = run_with_retry(lambda: coordinator.apply(dto), policy)
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from inventory_kernel.domain.results import CoreResult
from inventory_kernel.logging_config import get_logger

logger = get_logger("services.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_ms: int = 50
    max_delay_ms: int = 2000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError("retry delays must satisfy 0 <= base <= max")

    def delay_seconds(self, attempt: int, rng: random.Random | None = None) -> float:
        """Jittered delay before retry number ``attempt`` (1-based)."""
        ceiling = min(self.max_delay_ms, self.base_delay_ms * (2 ** (attempt - 1)))
        return (rng or random).uniform(0, ceiling) / 1000.0


def run_with_retry(
    fn: Callable[[], CoreResult[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> CoreResult[T]:
    policy = policy or RetryPolicy()
    result = fn()
    attempt = 1
    while (
        result.error is not None
        and result.error.retryable
        and attempt < policy.max_attempts
    ):
        delay = policy.delay_seconds(attempt, rng)
        logger.warning(
            "coordinator_call_retrying",
            extra={
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                "delay_seconds": round(delay, 4),
                "error_code": result.error.code,
            },
        )
        sleep(delay)
        attempt += 1
        result = fn()

    if result.error is not None and result.error.retryable:
        logger.error(
            "coordinator_call_retries_exhausted",
            extra={"attempts": attempt, "error_code": result.error.code},
        )
    return result
