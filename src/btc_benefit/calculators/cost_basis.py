"""Cost basis computation for BTC grants.

Pure functions, no shared state. Any inconsistent input or price record
raises; nothing is defaulted.

Cost of a grant = amount (BTC) * yearly price selected by the method:
  - high:    the year's highest price
  - low:     the year's lowest price
  - average: the year's average price
"""

from collections.abc import Iterable, Mapping
from datetime import date
from decimal import Decimal

from btc_benefit.calculators.precision import is_positive_finite, to_decimal
from btc_benefit.exceptions import (
    InvalidPriceDataError,
    MissingPriceDataError,
    ValidationError,
)
from btc_benefit.models import (
    CostBasisMethod,
    GrantEvent,
    GrantType,
    YearCostBreakdown,
    YearlyPriceRecord,
)

MIN_YEAR = 2009  # genesis block


def validate_method(method: CostBasisMethod | str) -> CostBasisMethod:
    """Return method as a CostBasisMethod, or raise ValidationError."""
    try:
        return CostBasisMethod(method)
    except ValueError:
        valid = ", ".join(m.value for m in CostBasisMethod)
        raise ValidationError(
            f"Invalid cost basis method: {method}. Must be one of: {valid}"
        ) from None


def validate_year(year: int, current_year: int | None = None) -> None:
    current_year = current_year or date.today().year
    if isinstance(year, bool) or not isinstance(year, int):
        raise ValidationError(f"Invalid year: {year!r}. Must be an integer.")
    if year < MIN_YEAR or year > current_year:
        raise ValidationError(
            f"Invalid year: {year}. Year must be between {MIN_YEAR} and {current_year}."
        )


def validate_amount(amount: object) -> Decimal:
    """Return amount as Decimal if finite and >= 0."""
    value = to_decimal(amount, "amount")
    if not value.is_finite() or value < 0:
        raise ValidationError(
            f"Invalid amount: {amount}. Amount must be a non-negative number."
        )
    return value


def validate_prices(prices: YearlyPriceRecord) -> None:
    """Check a price record is complete and internally consistent.

    Raises:
        InvalidPriceDataError: any price non-positive/non-finite, or
            low > high, or average outside [low, high].
    """
    if not isinstance(prices, YearlyPriceRecord):
        raise InvalidPriceDataError(
            f"Invalid price data: expected YearlyPriceRecord, got {type(prices).__name__}"
        )

    values = {}
    for name in ("high", "low", "average", "open", "close"):
        try:
            value = to_decimal(getattr(prices, name), f"{name} price")
        except ValidationError as e:
            raise InvalidPriceDataError(f"Invalid price data: {e}") from e
        if not is_positive_finite(value):
            raise InvalidPriceDataError(
                f"Invalid price data: {name} price ({value}) must be a positive finite number"
            )
        values[name] = value

    low, high, average = values["low"], values["high"], values["average"]
    if low > high:
        raise InvalidPriceDataError(
            f"Invalid price data: low price ({low}) cannot be greater than high price ({high})"
        )
    if average < low or average > high:
        raise InvalidPriceDataError(
            f"Invalid price data: average price ({average}) must be between "
            f"low ({low}) and high ({high})"
        )


def calculate_yearly_cost(
    amount: Decimal | float | int | str,
    year: int,
    year_prices: YearlyPriceRecord,
    method: CostBasisMethod | str,
    current_year: int | None = None,
) -> Decimal:
    """Cost basis in USD of `amount` BTC granted in `year`.

    Args:
        amount: BTC amount, finite and non-negative.
        year: Grant year, within [2009, current_year].
        year_prices: Price record for that same year.
        method: "high", "low" or "average".
        current_year: Upper bound for year; defaults to today's year.

    Returns:
        amount * year_prices[method] as an exact Decimal.
    """
    value = validate_amount(amount)
    validate_year(year, current_year)
    validate_prices(year_prices)
    method = validate_method(method)

    if year_prices.year != year:
        raise InvalidPriceDataError(
            f"Invalid price data: price data year ({year_prices.year}) does not "
            f"match requested year ({year})"
        )

    return value * to_decimal(year_prices.price_for(method), f"{method.value} price")


def _validate_grants(grants: Iterable[GrantEvent]) -> list[GrantEvent]:
    checked = []
    for i, grant in enumerate(grants):
        if not isinstance(grant, GrantEvent):
            raise ValidationError(f"Invalid grant at index {i}: must be a GrantEvent")
        if isinstance(grant.month, bool) or not isinstance(grant.month, int) or not 1 <= grant.month <= 12:
            raise ValidationError(
                f"Invalid grant month at index {i}: {grant.month}. Must be between 1 and 12."
            )
        amount = to_decimal(grant.amount, "grant amount")
        if not amount.is_finite() or amount < 0:
            raise ValidationError(
                f"Invalid grant amount at index {i}: {grant.amount}. Must be a non-negative number."
            )
        try:
            GrantType(grant.type)
        except ValueError:
            raise ValidationError(
                f"Invalid grant type at index {i}: {grant.type}. Must be 'initial' or 'annual'."
            ) from None
        checked.append(grant)
    return checked


def _validate_historical_prices(
    historical_prices: Mapping[int, YearlyPriceRecord],
) -> None:
    if not isinstance(historical_prices, Mapping):
        raise ValidationError("Historical prices must be a mapping of year to price record")
    for year, prices in historical_prices.items():
        validate_prices(prices)
        if prices.year != year:
            raise InvalidPriceDataError(
                f"Invalid price data: year mismatch, key is {year} but data year is {prices.year}"
            )


def _grant_cost(
    grant: GrantEvent,
    historical_prices: Mapping[int, YearlyPriceRecord],
    method: CostBasisMethod,
    current_year: int | None,
) -> Decimal:
    year_prices = historical_prices.get(grant.year)
    if year_prices is None:
        raise MissingPriceDataError(
            f"No historical price data available for year {grant.year}"
        )
    return calculate_yearly_cost(
        grant.amount, grant.year, year_prices, method, current_year
    )


def get_total_cost_basis(
    grants: Iterable[GrantEvent],
    historical_prices: Mapping[int, YearlyPriceRecord],
    method: CostBasisMethod | str,
    current_year: int | None = None,
) -> Decimal:
    """Sum of per-grant costs. Missing price data for any grant is a hard error."""
    checked = _validate_grants(grants)
    _validate_historical_prices(historical_prices)
    method = validate_method(method)

    return sum(
        (_grant_cost(g, historical_prices, method, current_year) for g in checked),
        Decimal("0"),
    )


def get_cost_basis_breakdown(
    grants: Iterable[GrantEvent],
    historical_prices: Mapping[int, YearlyPriceRecord],
    method: CostBasisMethod | str,
    current_year: int | None = None,
) -> dict[int, YearCostBreakdown]:
    """Per-year totals of BTC granted and USD cost, with the grants of each year."""
    checked = _validate_grants(grants)
    _validate_historical_prices(historical_prices)
    method = validate_method(method)

    breakdown: dict[int, YearCostBreakdown] = {}
    for grant in checked:
        cost = _grant_cost(grant, historical_prices, method, current_year)
        entry = breakdown.setdefault(grant.year, YearCostBreakdown())
        entry.total_bitcoin += to_decimal(grant.amount, "grant amount")
        entry.total_cost += cost
        entry.grants.append(grant)
    return breakdown
