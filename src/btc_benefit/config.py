"""Configuration system using pydantic-settings with environment variable loading."""

from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class PriceFetchSettings(BaseSettings):
    """CoinGecko price fetching, caching, and batching parameters.

    Defaults are deliberately conservative: the free CoinGecko tier starts
    returning 429s well below its documented limit.
    """

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    api_key: SecretStr = SecretStr("")
    cache_ttl_seconds: float = 86_400  # 24h
    batch_window_seconds: float = 0.2  # coalescing window for single-date lookups
    max_batch_size: int = 3
    inter_request_delay: float = 2.0  # pause between dates inside a batch
    rate_limit_pause: float = 20.0  # extra pause after a 429 inside a batch
    min_request_interval: float = 3.0
    max_requests_per_minute: int = 10
    use_fallback_only: bool = False
    single_date_fallback: bool = False  # answer single-date misses from the fallback table
    max_retries: int = 3
    retry_base_delay: float = 5.0
    retry_max_delay: float = 60.0
    request_timeout: float = 30.0
    seed_fallback: bool = False


class CircuitBreakerSettings(BaseSettings):
    """Default circuit breaker thresholds plus the tighter external-API profile."""

    model_config = SettingsConfigDict(env_prefix="BREAKER_")

    failure_threshold: int = 3
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    max_timeout_seconds: float = 180.0

    # coingecko / mempool are more sensitive and recover faster
    external_failure_threshold: int = 2
    external_success_threshold: int = 1
    external_timeout_seconds: float = 20.0
    external_max_timeout_seconds: float = 60.0

    stale_reset_seconds: float = 300.0


class RateLimitSettings(BaseSettings):
    """Inbound per-client rate limiting for the proxy API."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    window_seconds: float = 60.0
    max_requests: int = 100
    coingecko_max: int = 10
    mempool_max: int = 30
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://127.0.0.1:6379/0"


class MempoolSettings(BaseSettings):
    """mempool.space explorer client settings."""

    model_config = SettingsConfigDict(env_prefix="MEMPOOL_")

    base_url: str = "https://mempool.space/api"
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    skip_api_calls: bool = False


class SecuritySettings(BaseSettings):
    """Internal API gateway secrets.

    Secrets are optional at startup; the feature that needs one raises
    ConfigurationError when it is invoked without it.
    """

    model_config = SettingsConfigDict(env_prefix="SECURITY_")

    jwt_secret: SecretStr = SecretStr("")
    jwt_issuer: str = "bitcoin-benefit-app"
    jwt_audience: str = "bitcoin-benefit-api"
    jwt_max_age_seconds: int = 86_400
    request_signature_secret: SecretStr = SecretStr("")
    signature_max_age_seconds: float = 300.0
    require_signature: bool = False


class ApiSettings(BaseSettings):
    """HTTP proxy server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    cache_max_age: int = 60


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"
    prices: PriceFetchSettings = PriceFetchSettings()
    breaker: CircuitBreakerSettings = CircuitBreakerSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()
    mempool: MempoolSettings = MempoolSettings()
    security: SecuritySettings = SecuritySettings()
    api: ApiSettings = ApiSettings()
