"""Historical BTC price endpoints backed by the shared fetcher and yearly service."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from btc_benefit.api.responses import cached_response, decimal_to_str
from btc_benefit.prices.fetcher import parse_date

router = APIRouter()


@router.get("/prices/yearly")
async def yearly_prices(request: Request, start: int = 2015, end: int | None = None) -> JSONResponse:
    """Yearly high/low/average/open/close, clamped to the supported range."""
    services = request.app.state.services
    yearly = services.yearly_prices
    records = await yearly.get_yearly_prices(start, end if end is not None else yearly.current_year())
    return cached_response(
        {str(year): decimal_to_str(record) for year, record in records.items()},
        services.settings.api.cache_max_age,
    )


@router.get("/prices/{day}")
async def price_for_date(day: str, request: Request) -> JSONResponse:
    services = request.app.state.services
    parsed = parse_date(day)
    price = await services.price_fetcher.fetch_price_for_date(parsed)
    return cached_response(
        {"date": parsed.isoformat(), "price": str(price)},
        services.settings.api.cache_max_age,
    )


@router.get("/prices/cache/stats")
async def price_cache_stats(request: Request) -> JSONResponse:
    services = request.app.state.services
    return JSONResponse(
        content={
            "daily": services.price_fetcher.cache_stats(),
            "yearly": services.yearly_prices.cache_stats(),
        }
    )
