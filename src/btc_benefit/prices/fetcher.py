"""Per-date BTC price fetcher with caching, request coalescing, and fallback.

Two entry points share one cache:

- fetch_price_for_date(): single lookups are queued for a short window and
  flushed together, so concurrent callers asking for the same date cost one
  upstream request. Failures propagate to every waiter of that date.
- fetch_batch_prices(): bulk lookups walk uncached dates sequentially with a
  fixed delay between requests, and substitute the static fallback price
  for any date that fails.

All upstream calls are paced by a shared RequestPacer and retried on HTTP
429 with exponential backoff (5s, 10s, 20s by default). The optional
circuit breaker wraps the whole retry sequence, so one exhausted date
counts as a single breaker failure.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from btc_benefit.config import PriceFetchSettings
from btc_benefit.exceptions import (
    PriceUnavailableError,
    RateLimitedError,
    RequestAborted,
    ValidationError,
)
from btc_benefit.logging import get_logger
from btc_benefit.models import RawTransaction
from btc_benefit.prices.cache import PriceCache
from btc_benefit.prices.client import PriceSource
from btc_benefit.prices.fallback import (
    DEFAULT_FALLBACK_PRICE,
    fallback_price_for_date,
    iter_fallback_days,
)
from btc_benefit.resilience.circuit_breaker import CircuitBreaker
from btc_benefit.resilience.pacer import RequestPacer
from btc_benefit.resilience.retry import RetryPolicy

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], None]


def parse_date(value: date | str) -> date:
    """Accept a date or an ISO "YYYY-MM-DD" string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}. Expected YYYY-MM-DD.") from None


def _is_rate_limited(error: Exception) -> bool:
    return isinstance(error, RateLimitedError)


def _check_abort(abort: asyncio.Event | None) -> None:
    if abort is not None and abort.is_set():
        raise RequestAborted("Price fetch aborted")


class PriceFetcher:
    """Historical BTC price lookups by calendar date.

    Args:
        source: Upstream price source (CoinGeckoClient in production).
        settings: Batching, pacing, retry, and fallback parameters.
        cache: Shared price cache; a fresh one with the configured TTL if omitted.
        pacer: Outbound throttle; a fresh one from settings if omitted.
        breaker: Optional "coingecko" breaker around each retry sequence.
    """

    def __init__(
        self,
        source: PriceSource,
        settings: PriceFetchSettings,
        cache: PriceCache | None = None,
        pacer: RequestPacer | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._source = source
        self._breaker = breaker
        self._settings = settings
        self._cache = cache if cache is not None else PriceCache(settings.cache_ttl_seconds)
        self._pacer = pacer or RequestPacer(
            min_interval=settings.min_request_interval,
            max_per_minute=settings.max_requests_per_minute,
        )
        self._retry = RetryPolicy(
            max_attempts=settings.max_retries + 1,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

        self._queue: list[tuple[date, asyncio.Future[Decimal]]] = []
        self._flush_task: asyncio.Task[None] | None = None
        self._batch_tasks: dict[asyncio.Task[None], list[asyncio.Future[Decimal]]] = {}

        if settings.seed_fallback:
            self.seed_fallback_cache()

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def fetch_price_for_date(self, day: date | str) -> Decimal:
        """Price for one date, served from cache or coalesced with concurrent lookups.

        Raises:
            PriceUnavailableError: the upstream failed after all retries or
                its circuit is open (the underlying error is the __cause__).
            RequestAborted: the batch queue was cleared while waiting.
        """
        day = parse_date(day)
        cached = self._cache.get(day.isoformat())
        if cached is not None:
            return cached

        future: asyncio.Future[Decimal] = asyncio.get_running_loop().create_future()
        self._queue.append((day, future))
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_after_window())
        return await future

    async def fetch_batch_prices(
        self,
        dates: Iterable[date | str],
        progress_callback: ProgressCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> dict[str, Decimal]:
        """Prices for many dates, keyed by ISO date.

        Dates that fail upstream get the fallback price; dates with neither
        an upstream nor a fallback price are omitted from the result.

        Args:
            dates: Dates to look up; duplicates are fetched once.
            progress_callback: Called as (processed, total, date) before each fetch.
            abort: When set, the next check raises RequestAborted.
        """
        _check_abort(abort)

        unique = list(dict.fromkeys(parse_date(d) for d in dates))
        results: dict[str, Decimal] = {}
        uncached: list[date] = []
        for day in unique:
            cached = self._cache.get(day.isoformat())
            if cached is not None:
                results[day.isoformat()] = cached
            else:
                uncached.append(day)

        if not uncached:
            return results

        total = len(unique)
        processed = total - len(uncached)
        chunk_size = max(1, self._settings.max_batch_size)

        for start in range(0, len(uncached), chunk_size):
            chunk = uncached[start : start + chunk_size]
            for i, day in enumerate(chunk):
                _check_abort(abort)
                key = day.isoformat()
                if progress_callback is not None:
                    progress_callback(processed, total, key)

                try:
                    price = await self._fetch_single(day, abort)
                except RequestAborted:
                    raise
                except Exception as e:
                    logger.warning("batch_price_fetch_failed", date=key, error=str(e))
                    if _is_rate_limited(e):
                        await asyncio.sleep(self._settings.rate_limit_pause)
                    fallback = fallback_price_for_date(day)
                    if fallback is not None:
                        results[key] = fallback
                        self._cache.set(key, fallback)
                    processed += 1
                    continue

                results[key] = price
                self._cache.set(key, price)
                processed += 1

                if i < len(chunk) - 1:
                    await asyncio.sleep(self._settings.inter_request_delay)

        logger.info(
            "batch_prices_fetched",
            requested=total,
            fetched=len(uncached),
            resolved=len(results),
        )
        return results

    @staticmethod
    def optimize_price_requests(transactions: Iterable[RawTransaction]) -> list[str]:
        """Sorted unique UTC dates of confirmed transactions."""
        dates = {
            datetime.fromtimestamp(tx.status.block_time, tz=timezone.utc).date().isoformat()
            for tx in transactions
            if tx.status.confirmed and tx.status.block_time
        }
        return sorted(dates)

    def cache_stats(self) -> dict[str, Any]:
        stats = self._cache.stats()
        return {"size": stats["size"], "dates": stats["keys"]}

    def clear_cache(self) -> None:
        self._cache.clear()

    def clear_batch_queue(self) -> None:
        """Abort queued and in-flight single-date lookups and reset outbound pacing.

        Every waiter that has not been answered yet gets RequestAborted.
        """
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None

        waiters = [future for _, future in self._queue]
        self._queue = []
        for task, futures in list(self._batch_tasks.items()):
            task.cancel()
            waiters.extend(futures)

        for future in waiters:
            if not future.done():
                future.set_exception(RequestAborted("Price request queue cleared"))
        self._pacer.reset()

    async def close(self) -> None:
        """Abort outstanding lookups and wait for in-flight batches to unwind."""
        tasks = list(self._batch_tasks)
        self.clear_batch_queue()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("price_fetcher_closed", cancelled_batches=len(tasks))

    def seed_fallback_cache(self, until: date | None = None) -> int:
        """Cache the fallback average for every day of each tabulated year."""
        count = 0
        for day, price in iter_fallback_days(until):
            self._cache.set(day.isoformat(), price)
            count += 1
        logger.info("fallback_cache_seeded", entries=count)
        return count

    # ──────────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────────

    async def _flush_after_window(self) -> None:
        await asyncio.sleep(self._settings.batch_window_seconds)
        batch, self._queue = self._queue, []
        self._flush_task = None

        # Detached so a later window can open while this batch is in flight
        task = asyncio.create_task(self._process_batch(batch))
        self._batch_tasks[task] = [future for _, future in batch]
        task.add_done_callback(lambda t: self._batch_tasks.pop(t, None))

    async def _process_batch(self, batch: list[tuple[date, asyncio.Future[Decimal]]]) -> None:
        waiters: dict[date, list[asyncio.Future[Decimal]]] = {}
        for day, future in batch:
            waiters.setdefault(day, []).append(future)

        logger.debug("price_batch_flush", requests=len(batch), unique_dates=len(waiters))

        for day, futures in waiters.items():
            live = [f for f in futures if not f.done()]
            if not live:
                continue

            key = day.isoformat()
            price = self._cache.get(key)
            if price is None:
                try:
                    price = await self._fetch_single(day)
                except Exception as e:
                    price = self._single_date_fallback(day, e)
                    if price is None:
                        error = PriceUnavailableError(
                            f"Failed to fetch price for {key}: {e}"
                        )
                        error.__cause__ = e
                        for future in live:
                            if not future.done():
                                future.set_exception(error)
                        continue
                self._cache.set(key, price)

            for future in live:
                if not future.done():
                    future.set_result(price)

    def _single_date_fallback(self, day: date, error: Exception) -> Decimal | None:
        logger.warning("price_fetch_failed", date=day.isoformat(), error=str(error))
        if not self._settings.single_date_fallback:
            return None
        return fallback_price_for_date(day)

    async def _fetch_single(self, day: date, abort: asyncio.Event | None = None) -> Decimal:
        if self._settings.use_fallback_only:
            fallback = fallback_price_for_date(day)
            return fallback if fallback is not None else DEFAULT_FALLBACK_PRICE

        async def attempt() -> Decimal:
            await self._pacer.acquire()
            return await self._source.fetch_price_for_day(day)

        async def with_retry() -> Decimal:
            return await self._retry.run(
                attempt,
                should_retry=_is_rate_limited,
                abort=abort,
                label=f"price_{day.isoformat()}",
            )

        if self._breaker is not None:
            return await self._breaker.execute(with_retry)
        return await with_retry()
