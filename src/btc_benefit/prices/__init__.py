"""Historical BTC price data: CoinGecko client, per-date fetcher, yearly aggregates."""

from btc_benefit.prices.cache import PriceCache
from btc_benefit.prices.client import CoinGeckoClient, PriceSource
from btc_benefit.prices.fallback import (
    FALLBACK_YEARLY_PRICES,
    fallback_price_for_date,
    fallback_yearly_record,
)
from btc_benefit.prices.fetcher import PriceFetcher
from btc_benefit.prices.yearly import YearlyPriceService

__all__ = [
    "FALLBACK_YEARLY_PRICES",
    "CoinGeckoClient",
    "PriceCache",
    "PriceFetcher",
    "PriceSource",
    "YearlyPriceService",
    "fallback_price_for_date",
    "fallback_yearly_record",
]
