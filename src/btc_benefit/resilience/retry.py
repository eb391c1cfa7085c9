"""Jitter-free exponential backoff retry policy.

Delays grow as base_delay * multiplier**attempt and are capped at max_delay.
With the CoinGecko defaults (base 5s, cap 60s) the waits are 5s, 10s, 20s.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from btc_benefit.exceptions import RequestAborted
from btc_benefit.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _always(_: Exception) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Args:
        max_attempts: Total attempts including the first call (>= 1).
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for any single delay.
        multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given zero-based failed attempt."""
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        should_retry: Callable[[Exception], bool] = _always,
        abort: asyncio.Event | None = None,
        label: str = "operation",
    ) -> T:
        """Await operation(), retrying failures accepted by should_retry.

        Re-raises the last error once attempts are exhausted or when the
        error is not retryable. Raises RequestAborted if `abort` is set
        before an attempt.
        """
        for attempt in range(self.max_attempts):
            if abort is not None and abort.is_set():
                raise RequestAborted(f"{label} aborted")
            try:
                return await operation()
            except Exception as e:
                last_attempt = attempt == self.max_attempts - 1
                if last_attempt or not should_retry(e):
                    if last_attempt:
                        logger.warning(
                            "retries_exhausted",
                            label=label,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                    raise

                delay = self.delay_for(attempt)
                logger.info(
                    "retry_scheduled",
                    label=label,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")  # loop always returns or raises
