"""Historical vesting calculation engine.

Replays a vesting scheme against real yearly prices: "had we granted this
scheme starting in year X, what would the grants have cost and what are they
worth today?"

The engine is a pure function of its inputs. "Today" is taken from the
optional `as_of` argument so results are reproducible in tests.

Model (matches the product's calculator UI):
  - Initial grant in January of the starting year.
  - Annual grants in January of each following year, up to
    max_annual_grants (default 10), skipping years without price data.
  - The timeline has one point per calendar month from January of the first
    grant year through the current month.
  - Vesting is measured from the first grant and applied to the cumulative
    BTC balance: percent = latest milestone with months <= elapsed months.
"""

from collections.abc import Mapping
from datetime import date
from decimal import Decimal

from btc_benefit.calculators.cost_basis import (
    calculate_yearly_cost,
    get_total_cost_basis,
    validate_method,
    validate_year,
)
from btc_benefit.calculators.precision import is_positive_finite, to_decimal
from btc_benefit.exceptions import MissingPriceDataError, ValidationError
from btc_benefit.models import (
    CostBasisMethod,
    GrantEvent,
    GrantType,
    HistoricalResult,
    HistoricalSummary,
    HistoricalTimelinePoint,
    VestingScheme,
    YearlyPriceRecord,
)

DEFAULT_MAX_ANNUAL_GRANTS = 10
GRANT_MONTH = 1  # grants are made in January

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def validate_scheme(scheme: VestingScheme) -> None:
    """Reject schemes whose timeline could break the vesting invariants.

    Vesting percentages must lie in [0, 100] and must not decrease as months
    increase, otherwise vested amounts could exceed the balance or shrink.
    """
    if not isinstance(scheme, VestingScheme):
        raise ValidationError("Invalid scheme: must be a VestingScheme")

    initial = to_decimal(scheme.initial_grant, "initial grant")
    if not initial.is_finite() or initial < 0:
        raise ValidationError(f"Invalid scheme {scheme.id}: initial grant must be >= 0")

    if scheme.annual_grant is not None:
        annual = to_decimal(scheme.annual_grant, "annual grant")
        if not annual.is_finite() or annual < 0:
            raise ValidationError(f"Invalid scheme {scheme.id}: annual grant must be >= 0")

    if scheme.max_annual_grants is not None and (
        not isinstance(scheme.max_annual_grants, int) or scheme.max_annual_grants < 0
    ):
        raise ValidationError(
            f"Invalid scheme {scheme.id}: max_annual_grants must be a non-negative integer"
        )

    steps = _vesting_steps(scheme)
    previous = _ZERO
    for months, percent in steps:
        if months < 0:
            raise ValidationError(
                f"Invalid scheme {scheme.id}: vesting milestone months must be >= 0"
            )
        if percent < 0 or percent > _HUNDRED:
            raise ValidationError(
                f"Invalid scheme {scheme.id}: vesting percent {percent} outside 0-100"
            )
        if percent < previous:
            raise ValidationError(
                f"Invalid scheme {scheme.id}: vesting percent decreases at month {months}"
            )
        previous = percent


def _vesting_steps(scheme: VestingScheme) -> list[tuple[int, Decimal]]:
    """(months, cumulative percent) pairs sorted by months.

    Custom vesting events, when present, replace the milestone table.
    """
    if scheme.custom_vesting_events:
        steps = [
            (e.time_period, to_decimal(e.percentage_vested, "vesting percent"))
            for e in scheme.custom_vesting_events
        ]
    else:
        steps = [
            (m.months, to_decimal(m.grant_percent, "vesting percent"))
            for m in scheme.vesting_schedule
        ]
    return sorted(steps, key=lambda s: s[0])


def vesting_percent(scheme: VestingScheme, months_elapsed: int) -> Decimal:
    """Percent vested after months_elapsed; 0 if no milestone has been reached."""
    percent = _ZERO
    for months, step_percent in _vesting_steps(scheme):
        if months_elapsed < months:
            break
        percent = step_percent
    return percent


def generate_grant_events(
    scheme: VestingScheme,
    starting_year: int,
    historical_prices: Mapping[int, YearlyPriceRecord],
    current_year: int,
) -> list[GrantEvent]:
    """Expand a scheme into dated grants, chronologically ordered."""
    grants: list[GrantEvent] = []

    initial = to_decimal(scheme.initial_grant, "initial grant")
    if initial > 0 and starting_year in historical_prices:
        grants.append(
            GrantEvent(
                year=starting_year,
                month=GRANT_MONTH,
                amount=initial,
                type=GrantType.INITIAL,
            )
        )

    annual = (
        to_decimal(scheme.annual_grant, "annual grant")
        if scheme.annual_grant is not None
        else _ZERO
    )
    if annual > 0:
        max_grants = (
            scheme.max_annual_grants
            if scheme.max_annual_grants is not None
            else DEFAULT_MAX_ANNUAL_GRANTS
        )
        last_year = min(starting_year + max_grants, current_year)
        for year in range(starting_year + 1, last_year + 1):
            if year in historical_prices:
                grants.append(
                    GrantEvent(
                        year=year,
                        month=GRANT_MONTH,
                        amount=annual,
                        type=GrantType.ANNUAL,
                    )
                )

    return sorted(grants, key=lambda g: (g.year, g.month))


def build_timeline(
    grants: list[GrantEvent],
    historical_prices: Mapping[int, YearlyPriceRecord],
    method: CostBasisMethod,
    current_bitcoin_price: Decimal,
    scheme: VestingScheme,
    as_of: date,
) -> list[HistoricalTimelinePoint]:
    """Month-by-month cumulative balance, cost basis, value, and vested BTC."""
    if not grants:
        return []

    first_year = min(g.year for g in grants)
    by_month: dict[tuple[int, int], list[GrantEvent]] = {}
    for grant in grants:
        by_month.setdefault((grant.year, grant.month), []).append(grant)

    timeline: list[HistoricalTimelinePoint] = []
    cumulative_bitcoin = _ZERO
    cumulative_cost = _ZERO

    for year in range(first_year, as_of.year + 1):
        last_month = as_of.month if year == as_of.year else 12
        for month in range(1, last_month + 1):
            month_grants = by_month.get((year, month), [])
            for grant in month_grants:
                cumulative_bitcoin += grant.amount
                cumulative_cost += calculate_yearly_cost(
                    grant.amount,
                    grant.year,
                    historical_prices[grant.year],
                    method,
                    as_of.year,
                )

            months_elapsed = (year - first_year) * 12 + (month - 1)
            vested = cumulative_bitcoin * vesting_percent(scheme, months_elapsed) / _HUNDRED

            timeline.append(
                HistoricalTimelinePoint(
                    year=year,
                    month=month,
                    cumulative_bitcoin=cumulative_bitcoin,
                    cumulative_cost_basis=cumulative_cost,
                    current_value=cumulative_bitcoin * current_bitcoin_price,
                    vested_amount=vested,
                    grants=tuple(month_grants),
                )
            )

    return timeline


def annualized_return(
    current_value: Decimal, cost_basis: Decimal, years: int
) -> Decimal:
    """Compound annual growth rate (value/cost)**(1/years) - 1.

    Returns 0 when no full year has elapsed or nothing was paid.
    """
    if years <= 0 or cost_basis <= 0:
        return _ZERO
    return (current_value / cost_basis) ** (Decimal(1) / Decimal(years)) - 1


def calculate(
    scheme: VestingScheme,
    starting_year: int,
    cost_basis_method: CostBasisMethod | str,
    historical_prices: Mapping[int, YearlyPriceRecord],
    current_bitcoin_price: Decimal | float | int | str,
    as_of: date | None = None,
) -> HistoricalResult:
    """Run a historical vesting scenario.

    Raises:
        ValidationError: malformed scheme, starting year outside
            [2009, current year], unknown method, non-positive price.
        MissingPriceDataError: no price record for the starting year.
        InvalidPriceDataError: any supplied price record is inconsistent.
    """
    as_of = as_of or date.today()
    current_year = as_of.year

    validate_scheme(scheme)
    validate_year(starting_year, current_year)
    method = validate_method(cost_basis_method)
    if not isinstance(historical_prices, Mapping):
        raise ValidationError("Invalid historical prices: must be a mapping of year to record")
    price = to_decimal(current_bitcoin_price, "current Bitcoin price")
    if not is_positive_finite(price):
        raise ValidationError(
            f"Invalid current Bitcoin price: {current_bitcoin_price}. Must be a positive number."
        )
    if starting_year not in historical_prices:
        raise MissingPriceDataError(
            f"No historical price data available for starting year: {starting_year}"
        )

    grants = generate_grant_events(scheme, starting_year, historical_prices, current_year)
    timeline = build_timeline(grants, historical_prices, method, price, scheme, as_of)
    total_cost_basis = get_total_cost_basis(grants, historical_prices, method, current_year)

    total_bitcoin = sum((g.amount for g in grants), _ZERO)
    current_total_value = total_bitcoin * price
    years_analyzed = current_year - starting_year

    annual_grants = [g for g in grants if g.type is GrantType.ANNUAL]
    average_annual_grant = (
        sum((g.amount for g in annual_grants), _ZERO) / len(annual_grants)
        if annual_grants
        else _ZERO
    )

    return HistoricalResult(
        timeline=timeline,
        total_bitcoin_granted=total_bitcoin,
        total_cost_basis=total_cost_basis,
        current_total_value=current_total_value,
        total_return=current_total_value - total_cost_basis,
        annualized_return=annualized_return(
            current_total_value, total_cost_basis, years_analyzed
        ),
        grant_breakdown=grants,
        summary=HistoricalSummary(
            starting_year=starting_year,
            ending_year=current_year,
            years_analyzed=years_analyzed,
            cost_basis_method=method,
            average_annual_grant=average_annual_grant,
        ),
    )
