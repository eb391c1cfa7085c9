"""Custom exceptions for the Bitcoin benefit price and vesting services.

All validation, upstream, and resilience-layer exceptions live here
to avoid circular imports between modules.
"""

import math


class BenefitError(Exception):
    """Base exception for all btc_benefit errors."""


class ValidationError(BenefitError, ValueError):
    """Raised for malformed input: bad year, method, scheme, address, or txid.

    Validation errors are surfaced immediately and never retried.
    """


class InvalidPriceDataError(ValidationError):
    """Raised when a yearly price record is malformed or internally inconsistent."""


class MissingPriceDataError(BenefitError):
    """Raised when a calculation needs a year that has no price record."""


class ConfigurationError(BenefitError):
    """Raised when a feature is invoked without its required secret or setting."""


class AuthenticationError(BenefitError):
    """Raised when a request signature or bearer token fails verification."""


class RequestAborted(BenefitError):
    """Raised when a caller-supplied abort event is set mid-operation."""


class UpstreamError(BenefitError):
    """Raised when an external API (CoinGecko, mempool.space) returns an error.

    Args:
        message: Human-readable description.
        status_code: HTTP status from the upstream, or None for network errors.
        retryable: Whether a retry may succeed (timeouts, 429, 5xx, network).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class RateLimitedError(UpstreamError):
    """Raised when an upstream answers HTTP 429."""

    def __init__(self, message: str = "HTTP 429: rate limited") -> None:
        super().__init__(message, status_code=429, retryable=True)


class NotFoundError(UpstreamError):
    """Raised when an upstream answers HTTP 404."""

    def __init__(self, message: str = "HTTP 404: not found") -> None:
        super().__init__(message, status_code=404, retryable=False)


class PriceUnavailableError(BenefitError):
    """Raised when a single-date price cannot be fetched after all retries."""


class CircuitOpenError(BenefitError):
    """Raised when a call is rejected because the service's circuit is open."""

    def __init__(self, service: str, retry_after: float) -> None:
        self.service = service
        self.retry_after = retry_after
        seconds = max(0, math.ceil(retry_after))
        super().__init__(
            f"Circuit breaker is open for {service}. Retry in {seconds}s"
        )
