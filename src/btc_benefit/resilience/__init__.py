"""Resilience layer -- retry policy, circuit breakers, rate limiting, and request pacing."""

from btc_benefit.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerEvent,
    CircuitBreakerRegistry,
    CircuitState,
)
from btc_benefit.resilience.pacer import RequestPacer
from btc_benefit.resilience.rate_limiter import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitResult,
    RateLimitStore,
    RedisRateLimitStore,
    client_key,
    create_rate_limit_store,
)
from btc_benefit.resilience.retry import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerEvent",
    "CircuitBreakerRegistry",
    "CircuitState",
    "MemoryRateLimitStore",
    "RateLimitResult",
    "RateLimitStore",
    "RateLimiter",
    "RedisRateLimitStore",
    "RequestPacer",
    "RetryPolicy",
    "client_key",
    "create_rate_limit_store",
]
