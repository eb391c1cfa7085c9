"""Tests for RetryPolicy backoff and RequestPacer throttling.

asyncio.sleep is patched so no test waits on real time.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from btc_benefit.exceptions import RateLimitedError, RequestAborted, UpstreamError
from btc_benefit.resilience.pacer import RequestPacer
from btc_benefit.resilience.retry import RetryPolicy
from conftest import FakeClock


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_delays_grow_and_cap(self) -> None:
        policy = RetryPolicy(max_attempts=6, base_delay=5, max_delay=30)
        assert [policy.delay_for(i) for i in range(5)] == [5, 10, 20, 30, 30]

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_delay": -1}])
    def test_invalid_configuration(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    @pytest.mark.asyncio
    async def test_returns_after_transient_failures(self) -> None:
        op = AsyncMock(side_effect=[RateLimitedError(), RateLimitedError(), "ok"])
        policy = RetryPolicy(max_attempts=4, base_delay=1)

        with patch("btc_benefit.resilience.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await policy.run(op) == "ok"

        assert op.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self) -> None:
        op = AsyncMock(side_effect=RateLimitedError())
        policy = RetryPolicy(max_attempts=3, base_delay=0)

        with pytest.raises(RateLimitedError):
            await policy.run(op)
        assert op.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self) -> None:
        op = AsyncMock(side_effect=UpstreamError("HTTP 400", 400))
        policy = RetryPolicy(max_attempts=5, base_delay=0)

        with pytest.raises(UpstreamError):
            await policy.run(op, should_retry=lambda e: isinstance(e, RateLimitedError))
        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_abort_stops_before_next_attempt(self) -> None:
        abort = asyncio.Event()

        async def op() -> None:
            abort.set()
            raise RateLimitedError()

        with pytest.raises(RequestAborted, match="prices aborted"):
            await RetryPolicy(max_attempts=5, base_delay=0).run(op, abort=abort, label="prices")


# ---------------------------------------------------------------------------
# RequestPacer
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_sleep(clock: FakeClock):
    """Patch the pacer's sleep so waiting advances the fake clock."""

    async def advance(seconds: float) -> None:
        clock.advance(seconds)

    with patch(
        "btc_benefit.resilience.pacer.asyncio.sleep", new=AsyncMock(side_effect=advance)
    ) as sleep:
        yield sleep


class TestRequestPacer:
    @pytest.mark.asyncio
    async def test_first_request_is_immediate(self, clock: FakeClock, fake_sleep: AsyncMock) -> None:
        pacer = RequestPacer(min_interval=3, max_per_minute=10, clock=clock)
        await pacer.acquire()
        fake_sleep.assert_not_awaited()
        assert pacer.requests_in_window == 1

    @pytest.mark.asyncio
    async def test_enforces_min_interval(self, clock: FakeClock, fake_sleep: AsyncMock) -> None:
        pacer = RequestPacer(min_interval=3, max_per_minute=10, clock=clock)
        await pacer.acquire()
        clock.advance(1)

        await pacer.acquire()

        fake_sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_no_wait_when_interval_elapsed(self, clock: FakeClock, fake_sleep: AsyncMock) -> None:
        pacer = RequestPacer(min_interval=3, max_per_minute=10, clock=clock)
        await pacer.acquire()
        clock.advance(5)
        await pacer.acquire()
        fake_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enforces_per_minute_cap(self, clock: FakeClock, fake_sleep: AsyncMock) -> None:
        pacer = RequestPacer(min_interval=0, max_per_minute=2, clock=clock)
        await pacer.acquire()
        clock.advance(10)
        await pacer.acquire()
        clock.advance(10)

        await pacer.acquire()

        # oldest request is 20s old: wait out the rest of the minute plus 1s buffer
        fake_sleep.assert_awaited_once_with(41)
        assert pacer.requests_in_window == 2

    @pytest.mark.asyncio
    async def test_reset_forgets_history(self, clock: FakeClock, fake_sleep: AsyncMock) -> None:
        pacer = RequestPacer(min_interval=3, max_per_minute=1, clock=clock)
        await pacer.acquire()
        pacer.reset()

        await pacer.acquire()

        fake_sleep.assert_not_awaited()
