"""Price source interface and the CoinGecko implementation.

PriceFetcher and YearlyPriceService depend only on PriceSource, keeping the
CoinGecko HTTP details isolated here. They apply the "coingecko" circuit
breaker around their own retry loops, so fetch_range() and
fetch_price_for_day() are single unguarded requests. Only the
fetch_market_chart() passthrough used by the proxy route is guarded here.

Prices are parsed straight into Decimal (json parse_float) so no float
rounding leaks into cost basis.
"""

import json
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from functools import partial
from typing import Any

import aiohttp

from btc_benefit.calculators.precision import round_usd
from btc_benefit.config import PriceFetchSettings
from btc_benefit.exceptions import RateLimitedError, UpstreamError
from btc_benefit.logging import get_logger
from btc_benefit.resilience.circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

_loads = partial(json.loads, parse_float=Decimal)


def day_start(day: date) -> datetime:
    """Midnight UTC of day."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def closest_price(points: list[tuple[int, Decimal]], target_ms: int) -> Decimal:
    """Price of the point whose timestamp is nearest target_ms (first wins ties)."""
    if not points:
        raise ValueError("points must not be empty")
    _, price = min(points, key=lambda p: abs(p[0] - target_ms))
    return price


def parse_price_points(payload: Any) -> list[tuple[int, Decimal]]:
    """Extract [(timestamp_ms, price)] from a market_chart payload.

    Raises:
        UpstreamError: payload has no `prices` list or malformed points.
    """
    prices = payload.get("prices") if isinstance(payload, dict) else None
    if not isinstance(prices, list):
        raise UpstreamError("Invalid response format from CoinGecko API")
    points: list[tuple[int, Decimal]] = []
    for item in prices:
        if not isinstance(item, list | tuple) or len(item) < 2:
            raise UpstreamError("Invalid price point in CoinGecko response")
        timestamp, price = item[0], item[1]
        points.append((int(timestamp), Decimal(str(price))))
    return points


class PriceSource(ABC):
    """Abstract source of historical BTC/USD prices."""

    @abstractmethod
    async def fetch_price_for_day(self, day: date) -> Decimal:
        """Return the USD price closest to midnight UTC of day."""
        ...

    @abstractmethod
    async def fetch_range(self, from_ts: int, to_ts: int) -> list[tuple[int, Decimal]]:
        """Return (timestamp_ms, price) points between two Unix timestamps (seconds)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...


class CoinGeckoClient(PriceSource):
    """CoinGecko market_chart/range client over aiohttp.

    Args:
        settings: Base URL, API key, and timeout.
        breaker: Optional circuit breaker for the fetch_market_chart() passthrough.
        session: Optional shared aiohttp session (not closed by close()).
    """

    def __init__(
        self,
        settings: PriceFetchSettings,
        breaker: CircuitBreaker | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._breaker = breaker
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("coingecko_session_closed")

    async def fetch_market_chart(
        self, from_ts: int, to_ts: int, vs_currency: str = "usd"
    ) -> dict[str, Any]:
        """Raw market_chart/range payload for the given window."""
        if self._breaker is not None:
            return await self._breaker.execute(
                lambda: self._request_market_chart(from_ts, to_ts, vs_currency)
            )
        return await self._request_market_chart(from_ts, to_ts, vs_currency)

    async def _request_market_chart(
        self, from_ts: int, to_ts: int, vs_currency: str
    ) -> dict[str, Any]:
        url = f"{self._settings.coingecko_base_url}/coins/bitcoin/market_chart/range"
        params = {"vs_currency": vs_currency, "from": str(from_ts), "to": str(to_ts)}
        api_key = self._settings.api_key.get_secret_value()
        if api_key:
            params["x_cg_demo_api_key"] = api_key

        try:
            async with self._get_session().get(url, params=params) as resp:
                if resp.status == 429:
                    logger.warning("coingecko_rate_limited", from_ts=from_ts, to_ts=to_ts)
                    raise RateLimitedError()
                if resp.status >= 400:
                    raise UpstreamError(
                        f"HTTP error! status: {resp.status}",
                        status_code=resp.status,
                        retryable=resp.status >= 500,
                    )
                return await resp.json(loads=_loads, content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise UpstreamError(f"CoinGecko request failed: {e}", retryable=True) from e

    async def fetch_range(self, from_ts: int, to_ts: int) -> list[tuple[int, Decimal]]:
        return parse_price_points(await self._request_market_chart(from_ts, to_ts, "usd"))

    async def fetch_price_for_day(self, day: date) -> Decimal:
        target = day_start(day)
        from_ts = int((target - timedelta(days=1)).timestamp())
        to_ts = int((target + timedelta(days=1)).timestamp())

        points = await self.fetch_range(from_ts, to_ts)
        if not points:
            raise UpstreamError(f"No price data available for date {day.isoformat()}")

        price = closest_price(points, int(target.timestamp() * 1000))
        return round_usd(price)
