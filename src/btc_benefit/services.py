"""Service container: builds and owns every long-lived collaborator.

Component wiring order (in build_services):
1. CircuitBreakerRegistry (default profile + external-API profile)
2. RequestPacer (shared by every CoinGecko caller)
3. CoinGeckoClient (behind the "coingecko" breaker)
4. PriceFetcher and YearlyPriceService
5. MempoolClient (behind the "mempool" breaker) and the AddressTracker over it
6. Rate limiters (per-client default, per-client mempool, server-wide coingecko)
7. RequestSigner
"""

import asyncio
from dataclasses import dataclass

from btc_benefit.config import AppSettings, CircuitBreakerSettings
from btc_benefit.exceptions import NotFoundError, RequestAborted, ValidationError
from btc_benefit.logging import get_logger
from btc_benefit.onchain.mempool import MempoolClient
from btc_benefit.onchain.tracker import AddressTracker
from btc_benefit.prices.cache import PriceCache
from btc_benefit.prices.client import CoinGeckoClient
from btc_benefit.prices.fetcher import PriceFetcher
from btc_benefit.prices.yearly import YearlyPriceService
from btc_benefit.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from btc_benefit.resilience.pacer import RequestPacer
from btc_benefit.resilience.rate_limiter import RateLimiter, RateLimitStore, create_rate_limit_store
from btc_benefit.security.signing import RequestSigner

logger = get_logger(__name__)

COINGECKO = "coingecko"
MEMPOOL = "mempool"


def default_breaker_config(settings: CircuitBreakerSettings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=settings.failure_threshold,
        success_threshold=settings.success_threshold,
        timeout=settings.timeout_seconds,
        max_timeout=settings.max_timeout_seconds,
    )


def external_breaker_config(settings: CircuitBreakerSettings) -> CircuitBreakerConfig:
    """Tighter profile for third-party APIs.

    Lookups of unknown data and caller aborts don't count as failures.
    """
    return CircuitBreakerConfig(
        failure_threshold=settings.external_failure_threshold,
        success_threshold=settings.external_success_threshold,
        timeout=settings.external_timeout_seconds,
        max_timeout=settings.external_max_timeout_seconds,
        excluded_exceptions=(NotFoundError, ValidationError, RequestAborted),
    )


@dataclass
class BenefitServices:
    """Everything the API routes need, built once per process."""

    settings: AppSettings
    breakers: CircuitBreakerRegistry
    pacer: RequestPacer
    coingecko: CoinGeckoClient
    price_fetcher: PriceFetcher
    yearly_prices: YearlyPriceService
    mempool: MempoolClient
    tracker: AddressTracker
    rate_limit_store: RateLimitStore
    default_limiter: RateLimiter
    mempool_limiter: RateLimiter
    coingecko_limiter: RateLimiter
    signer: RequestSigner

    async def close(self) -> None:
        """Close HTTP sessions. Safe to call more than once.

        In-flight price batches are cancelled before the sessions close, so
        nothing reopens a session afterwards.
        """
        await self.price_fetcher.close()
        await self.coingecko.close()
        await self.mempool.close()
        await self.rate_limit_store.close()
        logger.info("services_closed")

    def run_maintenance_once(self) -> None:
        """Reset stale breakers and drop expired rate limit windows."""
        reset = self.breakers.reset_stale(self.settings.breaker.stale_reset_seconds)
        if reset:
            logger.info("stale_breakers_reset", services=reset)
        purged = self.rate_limit_store.purge_expired()
        if purged:
            logger.debug("rate_limit_windows_purged", count=purged)

    async def run_maintenance(self, interval: float) -> None:
        """Run run_maintenance_once() every interval seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.run_maintenance_once()


def build_services(settings: AppSettings) -> BenefitServices:
    """Build the full dependency graph from settings.

    Does not open any network connection; sessions are created lazily on
    first request.
    """
    breakers = CircuitBreakerRegistry(default_breaker_config(settings.breaker))
    external = external_breaker_config(settings.breaker)

    prices = settings.prices
    pacer = RequestPacer(
        min_interval=prices.min_request_interval,
        max_per_minute=prices.max_requests_per_minute,
    )
    coingecko_breaker = breakers.get_breaker(COINGECKO, external)
    coingecko = CoinGeckoClient(prices, breaker=coingecko_breaker)
    price_fetcher = PriceFetcher(
        coingecko,
        prices,
        cache=PriceCache(prices.cache_ttl_seconds),
        pacer=pacer,
        breaker=coingecko_breaker,
    )
    yearly_prices = YearlyPriceService(coingecko, prices, pacer=pacer, breaker=coingecko_breaker)

    mempool = MempoolClient(settings.mempool, breaker=breakers.get_breaker(MEMPOOL, external))

    limits = settings.rate_limit
    store = create_rate_limit_store(limits)
    default_limiter = RateLimiter(limits.window_seconds, limits.max_requests, store=store)
    mempool_limiter = RateLimiter(limits.window_seconds, limits.mempool_max, store=store)
    coingecko_limiter = RateLimiter(
        limits.window_seconds,
        limits.coingecko_max,
        store=store,
        message="Server rate limit exceeded. Please wait before making another request.",
    )

    logger.info(
        "services_built",
        rate_limit_backend=limits.backend,
        use_fallback_only=prices.use_fallback_only,
        skip_mempool_calls=settings.mempool.skip_api_calls,
    )

    return BenefitServices(
        settings=settings,
        breakers=breakers,
        pacer=pacer,
        coingecko=coingecko,
        price_fetcher=price_fetcher,
        yearly_prices=yearly_prices,
        mempool=mempool,
        tracker=AddressTracker(mempool, price_fetcher),
        rate_limit_store=store,
        default_limiter=default_limiter,
        mempool_limiter=mempool_limiter,
        coingecko_limiter=coingecko_limiter,
        signer=RequestSigner(settings.security),
    )
