"""Vesting, cost basis, and tax calculators.

Pure functions over Decimal inputs: cost basis per grant and per year, the
historical vesting engine that replays a scheme against yearly prices, the
forward projection under a constant growth rate, and US tax estimates.
"""

from btc_benefit.calculators.cost_basis import (
    calculate_yearly_cost,
    get_cost_basis_breakdown,
    get_total_cost_basis,
    validate_prices,
)
from btc_benefit.calculators.historical import (
    annualized_return,
    calculate,
    generate_grant_events,
    vesting_percent,
)
from btc_benefit.calculators.projection import project, project_price
from btc_benefit.calculators.schemes import (
    HISTORICAL_VESTING_SCHEMES,
    VESTING_SCHEMES,
    get_scheme,
)
from btc_benefit.calculators.tax import (
    calculate_niit,
    calculate_tax,
    estimate_quarterly_payments,
)

__all__ = [
    "HISTORICAL_VESTING_SCHEMES",
    "VESTING_SCHEMES",
    "annualized_return",
    "calculate",
    "calculate_niit",
    "calculate_tax",
    "calculate_yearly_cost",
    "estimate_quarterly_payments",
    "generate_grant_events",
    "get_cost_basis_breakdown",
    "get_scheme",
    "get_total_cost_basis",
    "project",
    "project_price",
    "validate_prices",
    "vesting_percent",
]
