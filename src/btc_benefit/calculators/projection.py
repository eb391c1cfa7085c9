"""Forward-looking vesting projection.

Answers "what will this scheme cost today and be worth later?" under a
constant annual BTC growth rate:

  - The timeline runs month 0 through the last vesting milestone.
  - The initial grant is held from month 0; annual grants land on every
    12th month, up to a per-scheme month cap.
  - Vested BTC is the grant total times the milestone percent reached,
    the same step function the historical engine uses.
  - The projected price compounds monthly: base * (1 + rate/12/100)**month.
"""

from decimal import Decimal

from btc_benefit.calculators.historical import validate_scheme, vesting_percent
from btc_benefit.calculators.precision import is_positive_finite, to_decimal
from btc_benefit.calculators.tax import calculate_tax
from btc_benefit.exceptions import ValidationError
from btc_benefit.logging import get_logger
from btc_benefit.models import (
    FilingStatus,
    GrowthScenario,
    ProjectionPoint,
    ProjectionResult,
    VestingScheme,
)

logger = get_logger(__name__)

# Last month on which a built-in scheme still pays an annual grant
ANNUAL_GRANT_MONTH_CAPS: dict[str, int] = {
    "steady-builder": 60,
    "slow-burn": 108,
    "custom": 120,
}

SCENARIOS: tuple[tuple[str, Decimal], ...] = (
    ("Conservative", Decimal("0.5")),
    ("Base Case", Decimal("1")),
    ("Optimistic", Decimal("1.5")),
)

MIN_GROWTH_RATE = Decimal("-100")
MAX_GROWTH_RATE = Decimal("1000")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_MONTHS_PER_YEAR = 12


def project_price(base_price: Decimal, annual_growth_percent: Decimal, month: int) -> Decimal:
    monthly_rate = annual_growth_percent / _MONTHS_PER_YEAR / _HUNDRED
    return base_price * (1 + monthly_rate) ** month


def projection_months(scheme: VestingScheme) -> int:
    """Length of the projection: the last milestone (or custom event) month."""
    months = [m.months for m in scheme.vesting_schedule] or [
        e.time_period for e in scheme.custom_vesting_events
    ]
    if not months:
        raise ValidationError(f"Invalid scheme {scheme.id}: no vesting milestones")
    return max(months)


def pays_annual_grant(scheme_id: str, month: int) -> bool:
    cap = ANNUAL_GRANT_MONTH_CAPS.get(scheme_id)
    return cap is None or month <= cap


def total_bitcoin_needed(scheme: VestingScheme, max_months: int) -> Decimal:
    """BTC the employer must set aside for the full scheme.

    An explicit max_annual_grants wins over the count implied by the
    scheme's month cap.
    """
    total = to_decimal(scheme.initial_grant, "initial grant")
    annual = to_decimal(scheme.annual_grant, "annual grant") if scheme.annual_grant else _ZERO
    if annual <= 0:
        return total

    grant_months = min(ANNUAL_GRANT_MONTH_CAPS.get(scheme.id, max_months), max_months)
    grants = scheme.max_annual_grants or grant_months // _MONTHS_PER_YEAR
    return total + annual * grants


def average_vesting_period(scheme: VestingScheme) -> Decimal:
    """Milestone months weighted by their vesting percent; 0 without weights."""
    weight = sum((to_decimal(m.grant_percent) for m in scheme.vesting_schedule), _ZERO)
    if weight <= 0:
        return _ZERO
    weighted = sum(
        (m.months * to_decimal(m.grant_percent) for m in scheme.vesting_schedule), _ZERO
    )
    return weighted / weight


def build_projection_timeline(
    scheme: VestingScheme,
    current_price: Decimal,
    annual_growth_percent: Decimal,
    max_months: int,
) -> list[ProjectionPoint]:
    balance = to_decimal(scheme.initial_grant, "initial grant")
    annual = to_decimal(scheme.annual_grant, "annual grant") if scheme.annual_grant else _ZERO

    timeline: list[ProjectionPoint] = []
    for month in range(max_months + 1):
        if annual > 0 and month > 0 and month % _MONTHS_PER_YEAR == 0:
            if pays_annual_grant(scheme.id, month):
                balance += annual

        price = project_price(current_price, annual_growth_percent, month)
        timeline.append(
            ProjectionPoint(
                month=month,
                employer_balance=balance,
                vested_amount=balance * vesting_percent(scheme, month) / _HUNDRED,
                bitcoin_price=price,
                usd_value=balance * price,
            )
        )
    return timeline


def scenario_analysis(
    bitcoin_amount: Decimal,
    base_price: Decimal,
    months: int,
    growth_rate: Decimal,
) -> list[GrowthScenario]:
    """Final price and value at half, full, and one and a half times the growth rate."""
    scenarios: list[GrowthScenario] = []
    for name, multiplier in SCENARIOS:
        rate = growth_rate * multiplier
        final_price = project_price(base_price, rate, months)
        scenarios.append(
            GrowthScenario(
                name=name,
                growth_rate=rate,
                final_price=final_price,
                final_value=bitcoin_amount * final_price,
                growth_multiple=final_price / base_price,
            )
        )
    return scenarios


def project(
    scheme: VestingScheme,
    current_bitcoin_price: Decimal | float | int | str,
    annual_growth_percent: Decimal | float | int | str,
    state: str | None = None,
    filing_status: FilingStatus | str = FilingStatus.SINGLE,
) -> ProjectionResult:
    """Project a scheme forward from today's price.

    The tax estimate assumes everything granted is sold at the final
    projected price, with today's cost of the grants as basis.

    Raises:
        ValidationError: malformed scheme, non-positive price, growth rate
            outside [-100, 1000] percent.
    """
    validate_scheme(scheme)
    price = to_decimal(current_bitcoin_price, "current Bitcoin price")
    if not is_positive_finite(price):
        raise ValidationError(
            f"Invalid current Bitcoin price: {current_bitcoin_price}. Must be a positive number."
        )
    growth = to_decimal(annual_growth_percent, "growth rate")
    if not growth.is_finite() or not MIN_GROWTH_RATE <= growth <= MAX_GROWTH_RATE:
        raise ValidationError(
            f"Invalid growth rate: {annual_growth_percent}. Must be between -100 and 1000 percent."
        )

    max_months = projection_months(scheme)
    timeline = build_projection_timeline(scheme, price, growth, max_months)
    needed = total_bitcoin_needed(scheme, max_months)
    total_cost = needed * price

    final = timeline[-1]
    tax = calculate_tax(
        final.employer_balance,
        final.bitcoin_price,
        total_cost,
        holding_period_days=max_months * 365 // _MONTHS_PER_YEAR,
        state=state,
        filing_status=filing_status,
    )

    logger.debug(
        "vesting_projection_built",
        scheme=scheme.id,
        months=max_months,
        bitcoin_needed=str(needed),
    )
    return ProjectionResult(
        timeline=timeline,
        total_bitcoin_needed=needed,
        total_cost=total_cost,
        average_vesting_period=average_vesting_period(scheme),
        growth_scenarios=scenario_analysis(needed, price, max_months, growth),
        tax_implications=tax,
    )
