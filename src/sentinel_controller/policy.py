from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ApplyConflict, ApplyExhausted

T = TypeVar("T")


def default_retry_classifier(exc: Exception) -> bool:
    """Only version conflicts are retried in place; everything else waits for the next pass."""
    return isinstance(exc, ApplyConflict)


@dataclass
class RetryPolicy:
    """Exponential backoff with a cap and optional jitter.

    ``next_backoff_ms(1)`` is the delay after the first failure. With jitter
    the delay is drawn from 50-100% of the computed value.
    """

    max_attempts: int = 5
    initial_backoff_ms: int = 50
    max_backoff_ms: int = 2_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    classify_retryable: Callable[[Exception], bool] = field(default=default_retry_classifier)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff_ms < 0 or self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("backoff bounds must satisfy 0 <= initial <= max")

    def next_backoff_ms(self, attempt: int) -> int:
        exp = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        base = int(min(self.max_backoff_ms, exp))
        if not self.jitter:
            return base
        return random.randint(base // 2, base) if base > 1 else base

    def next_backoff(self, attempt: int) -> float:
        """Same as next_backoff_ms, in seconds."""
        return self.next_backoff_ms(attempt) / 1000.0


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: Optional[Callable[[int, Exception], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or the policy gives up.

    Non-retryable errors propagate unchanged. Running out of attempts on a
    retryable error raises ApplyExhausted chained to the last error.
    """
    last_exc: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation(attempt)
        except Exception as exc:
            if not policy.classify_retryable(exc):
                raise
            last_exc = exc
            if on_retry is not None:
                await on_retry(attempt, exc)
            if attempt < policy.max_attempts:
                await sleep(policy.next_backoff(attempt))
    raise ApplyExhausted(policy.max_attempts, last_exc) from last_exc
