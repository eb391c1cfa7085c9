"""CoinGecko market_chart/range proxy."""

from fastapi import APIRouter, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from btc_benefit.api.responses import cached_response, error_response
from btc_benefit.exceptions import CircuitOpenError, RateLimitedError, UpstreamError
from btc_benefit.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

MAX_RANGE_SECONDS = 365 * 24 * 60 * 60
SERVER_LIMIT_KEY = "coingecko:server"


def _parse_timestamp(value: str) -> int | None:
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


@router.get("/coingecko")
async def coingecko_range(
    request: Request,
    from_ts: str | None = Query(default=None, alias="from"),
    to_ts: str | None = Query(default=None, alias="to"),
    vs_currency: str = "usd",
) -> JSONResponse:
    """Proxy a bounded historical price range, limited server-wide to protect our CoinGecko quota."""
    services = request.app.state.services

    if not from_ts or not to_ts:
        return error_response("Missing required parameters: from and to timestamps", 400)

    start, end = _parse_timestamp(from_ts), _parse_timestamp(to_ts)
    if start is None or end is None:
        return error_response("Invalid timestamp format. Use Unix timestamps.", 400)
    if start >= end:
        return error_response("From timestamp must be before to timestamp", 400)
    if end - start > MAX_RANGE_SECONDS:
        return error_response("Date range too large. Maximum 1 year allowed.", 400)

    limit = await services.coingecko_limiter.check(SERVER_LIMIT_KEY)
    if not limit.allowed:
        return error_response(limit.error or "Server rate limit exceeded", 429, headers=limit.headers)

    try:
        data = await services.coingecko.fetch_market_chart(start, end, vs_currency)
    except CircuitOpenError as e:
        return error_response(str(e), 503, headers={"Retry-After": str(max(1, int(e.retry_after)))})
    except RateLimitedError:
        return error_response("Rate limit exceeded. Please try again later.", 429)
    except UpstreamError as e:
        logger.warning("coingecko_proxy_error", status=e.status_code, error=str(e))
        if e.status_code == 408 or "timeout" in str(e).lower():
            return error_response("Request timeout - CoinGecko API is not responding", 408)
        if e.status_code is not None:
            return error_response(f"CoinGecko API error: {e.status_code}", e.status_code)
        return error_response("Failed to fetch price data from CoinGecko API", 500)

    if not isinstance(data, dict) or not isinstance(data.get("prices"), list):
        return error_response("Invalid response format from CoinGecko API", 502)

    return cached_response(jsonable_encoder(data), services.settings.api.cache_max_age)
