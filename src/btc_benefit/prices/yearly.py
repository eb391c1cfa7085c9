"""Yearly BTC price aggregates (high, low, average, open, close).

Feeds the historical vesting calculator. Each year is fetched once per day;
when CoinGecko fails the service answers from the stale cache entry if one
exists, otherwise from the static fallback table.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from btc_benefit.calculators.precision import round_usd
from btc_benefit.config import PriceFetchSettings
from btc_benefit.exceptions import UpstreamError, ValidationError
from btc_benefit.logging import get_logger
from btc_benefit.models import YearlyPriceRecord
from btc_benefit.prices.client import PriceSource
from btc_benefit.prices.fallback import fallback_yearly_record
from btc_benefit.resilience.circuit_breaker import CircuitBreaker
from btc_benefit.resilience.pacer import RequestPacer

logger = get_logger(__name__)

FIRST_YEAR = 2015
CURRENT_YEAR_AVERAGE_POINTS = 30


def format_range(
    points: list[tuple[int, Decimal]], year: int, current_year: int
) -> YearlyPriceRecord:
    """Aggregate chronological (timestamp_ms, price) points into a yearly record.

    For the current (incomplete) year the average covers only the last 30
    points, which tracks today's price more closely than a year-to-date mean.
    """
    if not points:
        raise UpstreamError(f"No price data available for year {year}")

    prices = [price for _, price in points]
    sample = prices[-CURRENT_YEAR_AVERAGE_POINTS:] if year == current_year else prices
    average = sum(sample, Decimal("0")) / len(sample)

    return YearlyPriceRecord(
        year=year,
        high=round_usd(max(prices)),
        low=round_usd(min(prices)),
        average=round_usd(average),
        open=round_usd(prices[0]),
        close=round_usd(prices[-1]),
    )


class YearlyPriceService:
    """Cached yearly price records for FIRST_YEAR through the current year.

    Args:
        source: Upstream price source.
        settings: Cache TTL and fallback-only switch.
        pacer: Optional outbound throttle shared with the per-date fetcher.
        clock: Wall-clock seconds source; also decides the current year.
        breaker: Optional "coingecko" breaker around each range request.
    """

    def __init__(
        self,
        source: PriceSource,
        settings: PriceFetchSettings,
        pacer: RequestPacer | None = None,
        clock: Callable[[], float] = time.time,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._source = source
        self._breaker = breaker
        self._settings = settings
        self._pacer = pacer
        self._clock = clock
        self._cache: dict[int, tuple[YearlyPriceRecord, float]] = {}

    def current_year(self) -> int:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).year

    async def get_yearly_price(self, year: int) -> YearlyPriceRecord:
        """Record for one year.

        Raises:
            ValidationError: year outside FIRST_YEAR..current year.
        """
        current_year = self.current_year()
        if isinstance(year, bool) or not isinstance(year, int) or not (
            FIRST_YEAR <= year <= current_year
        ):
            raise ValidationError(
                f"Year {year} is outside the valid range ({FIRST_YEAR}-{current_year})"
            )

        cached = self._cache.get(year)
        if cached is not None and self._clock() - cached[1] < self._settings.cache_ttl_seconds:
            return cached[0]

        if self._settings.use_fallback_only:
            return fallback_yearly_record(year, current_year)

        try:
            record = await self._fetch_year(year, current_year)
        except Exception as e:
            logger.warning("yearly_price_fallback", year=year, error=str(e))
            if cached is not None:
                return cached[0]
            return fallback_yearly_record(year, current_year)

        self._cache[year] = (record, self._clock())
        return record

    async def get_yearly_prices(self, start_year: int, end_year: int) -> dict[int, YearlyPriceRecord]:
        """Records for a year range, clamped to FIRST_YEAR..current year."""
        current_year = self.current_year()
        start = max(FIRST_YEAR, min(start_year, current_year))
        end = max(start, min(end_year, current_year))
        years = list(range(start, end + 1))

        records = await asyncio.gather(*(self.get_yearly_price(y) for y in years))
        return dict(zip(years, records))

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return {"size": len(self._cache), "years": sorted(self._cache)}

    async def _fetch_year(self, year: int, current_year: int) -> YearlyPriceRecord:
        from_ts = int(datetime(year, 1, 1, tzinfo=timezone.utc).timestamp())
        year_end = int(datetime(year, 12, 31, 23, 59, 59, tzinfo=timezone.utc).timestamp())
        to_ts = min(year_end, int(self._clock()))

        async def request() -> list[tuple[int, Decimal]]:
            if self._pacer is not None:
                await self._pacer.acquire()
            return await self._source.fetch_range(from_ts, to_ts)

        if self._breaker is not None:
            points = await self._breaker.execute(request)
        else:
            points = await request()
        return format_range(points, year, current_year)
