"""Outbound request pacing for rate-limited upstream APIs.

Serializes calls and enforces both a minimum interval between requests and
a requests-per-minute ceiling. Callers await acquire() immediately before
issuing the HTTP request.
"""

import asyncio
import time
from collections import deque
from collections.abc import Callable

from btc_benefit.logging import get_logger

logger = get_logger(__name__)

_WINDOW_SECONDS = 60.0
_WINDOW_BUFFER_SECONDS = 1.0


class RequestPacer:
    """Client-side throttle shared by every caller of one upstream.

    Args:
        min_interval: Minimum seconds between two consecutive requests.
        max_per_minute: Maximum requests in any rolling 60s window.
        clock: Monotonic seconds source; injectable for tests.
    """

    def __init__(
        self,
        min_interval: float,
        max_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = min_interval
        self._max_per_minute = max_per_minute
        self._clock = clock
        self._request_times: deque[float] = deque()
        self._last_request: float | None = None
        self._lock = asyncio.Lock()

    @property
    def requests_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._request_times)

    async def acquire(self) -> None:
        """Wait until a request may be sent, then record it."""
        async with self._lock:
            now = self._clock()
            self._prune(now)

            if len(self._request_times) >= self._max_per_minute:
                oldest = self._request_times[0]
                wait = _WINDOW_SECONDS - (now - oldest) + _WINDOW_BUFFER_SECONDS
                logger.info("pacer_minute_cap_wait", wait_seconds=round(wait, 2))
                await asyncio.sleep(wait)
                now = self._clock()
                self._prune(now)

            if self._last_request is not None:
                since_last = now - self._last_request
                if since_last < self._min_interval:
                    await asyncio.sleep(self._min_interval - since_last)
                    now = self._clock()

            self._request_times.append(now)
            self._last_request = now

    def reset(self) -> None:
        """Forget request history (used when clearing queues in tests)."""
        self._request_times.clear()
        self._last_request = None

    def _prune(self, now: float) -> None:
        cutoff = now - _WINDOW_SECONDS
        while self._request_times and self._request_times[0] <= cutoff:
            self._request_times.popleft()
