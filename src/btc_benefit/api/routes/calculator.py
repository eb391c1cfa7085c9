"""Vesting calculator endpoints: schemes, historical replay, projection, and tax."""

from decimal import Decimal

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from btc_benefit.api.responses import decimal_to_str
from btc_benefit.calculators import historical, projection, tax
from btc_benefit.calculators.schemes import HISTORICAL_VESTING_SCHEMES, VESTING_SCHEMES, get_scheme
from btc_benefit.logging import get_logger
from btc_benefit.models import CostBasisMethod, FilingStatus

logger = get_logger(__name__)

router = APIRouter()


class HistoricalCalculationRequest(BaseModel):
    """Body of POST /historical/calculate.

    When current_bitcoin_price is omitted, the close of the current year's
    price record is used.
    """

    scheme_id: str
    starting_year: int
    cost_basis_method: CostBasisMethod = CostBasisMethod.AVERAGE
    current_bitcoin_price: Decimal | None = Field(default=None, gt=0)


@router.get("/schemes")
async def list_schemes() -> JSONResponse:
    return JSONResponse(
        content={
            "default": decimal_to_str(list(VESTING_SCHEMES)),
            "historical": decimal_to_str(list(HISTORICAL_VESTING_SCHEMES)),
        }
    )


@router.post("/historical/calculate")
async def calculate_historical(body: HistoricalCalculationRequest, request: Request) -> JSONResponse:
    services = request.app.state.services
    yearly = services.yearly_prices

    scheme = get_scheme(body.scheme_id, historical=True)
    current_year = yearly.current_year()
    prices = await yearly.get_yearly_prices(body.starting_year, current_year)

    current_price = body.current_bitcoin_price
    if current_price is None:
        current_price = (await yearly.get_yearly_price(current_year)).close

    result = historical.calculate(
        scheme,
        body.starting_year,
        body.cost_basis_method,
        prices,
        current_price,
    )
    logger.info(
        "historical_calculation_completed",
        scheme=scheme.id,
        starting_year=body.starting_year,
        method=body.cost_basis_method.value,
        grants=len(result.grant_breakdown),
    )
    return JSONResponse(content=decimal_to_str(result))


class ProjectionRequest(BaseModel):
    """Body of POST /projection.

    When current_bitcoin_price is omitted, the close of the current year's
    price record is used.
    """

    scheme_id: str
    annual_growth_percent: Decimal = Decimal("15")
    current_bitcoin_price: Decimal | None = Field(default=None, gt=0)
    state: str | None = None
    filing_status: FilingStatus = FilingStatus.SINGLE


class TaxRequest(BaseModel):
    btc_amount: Decimal = Field(ge=0)
    btc_price: Decimal = Field(ge=0)
    cost_basis: Decimal = Field(ge=0)
    holding_period_days: int = Field(ge=0)
    state: str | None = None
    filing_status: FilingStatus = FilingStatus.SINGLE
    annual_income: Decimal | None = Field(default=None, ge=0)


@router.post("/projection")
async def project_scheme(body: ProjectionRequest, request: Request) -> JSONResponse:
    scheme = get_scheme(body.scheme_id, historical=False)

    current_price = body.current_bitcoin_price
    if current_price is None:
        yearly = request.app.state.services.yearly_prices
        current_price = (await yearly.get_yearly_price(yearly.current_year())).close

    result = projection.project(
        scheme,
        current_price,
        body.annual_growth_percent,
        state=body.state,
        filing_status=body.filing_status,
    )
    logger.info(
        "projection_completed",
        scheme=scheme.id,
        growth=str(body.annual_growth_percent),
        months=len(result.timeline) - 1,
    )
    return JSONResponse(content=decimal_to_str(result))


@router.post("/tax")
async def estimate_tax(body: TaxRequest) -> JSONResponse:
    """Tax on a sale, its quarterly estimates, and NIIT when income is given."""
    result = tax.calculate_tax(
        body.btc_amount,
        body.btc_price,
        body.cost_basis,
        body.holding_period_days,
        state=body.state,
        filing_status=body.filing_status,
    )
    niit = None
    if body.annual_income is not None:
        niit = tax.calculate_niit(
            body.annual_income, max(result.gain, Decimal("0")), body.filing_status
        )
    return JSONResponse(
        content=decimal_to_str(
            {
                "tax": result,
                "quarterly_payments": tax.estimate_quarterly_payments(result.total_tax),
                "niit": niit,
            }
        )
    )
