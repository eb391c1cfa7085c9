"""Built-in vesting schemes.

VESTING_SCHEMES are the amounts shown in the forward-looking calculator.
HISTORICAL_VESTING_SCHEMES use larger grants so historical results are
meaningful in dollar terms.
"""

from decimal import Decimal

from btc_benefit.exceptions import ValidationError
from btc_benefit.models import VestingMilestone, VestingScheme

# 50% after 5 years, 100% after 10 years
STANDARD_SCHEDULE: tuple[VestingMilestone, ...] = (
    VestingMilestone(months=0, grant_percent=Decimal("0"), description="Immediate access to contributions"),
    VestingMilestone(months=60, grant_percent=Decimal("50"), description="50% vested at 5 years"),
    VestingMilestone(months=120, grant_percent=Decimal("100"), description="100% vested at 10 years"),
)

VESTING_SCHEMES: tuple[VestingScheme, ...] = (
    VestingScheme(
        id="accelerator",
        name="Pioneer",
        description="Jump-start your team's Bitcoin journey with a single upfront grant.",
        initial_grant=Decimal("0.02"),
        vesting_schedule=STANDARD_SCHEDULE,
    ),
    VestingScheme(
        id="steady-builder",
        name="Stacking Sats",
        description="Upfront grant followed by a smaller grant every year.",
        initial_grant=Decimal("0.015"),
        annual_grant=Decimal("0.001"),
        max_annual_grants=5,
        vesting_schedule=STANDARD_SCHEDULE,
    ),
    VestingScheme(
        id="slow-burn",
        name="Wealth Builder",
        description="No upfront grant; yearly grants only.",
        initial_grant=Decimal("0"),
        annual_grant=Decimal("0.002"),
        max_annual_grants=10,
        vesting_schedule=STANDARD_SCHEDULE,
    ),
)

HISTORICAL_VESTING_SCHEMES: tuple[VestingScheme, ...] = (
    VestingScheme(
        id="accelerator",
        name="Bitcoin Pioneer",
        description="Historical result of lump sum funding.",
        initial_grant=Decimal("0.1"),
        vesting_schedule=STANDARD_SCHEDULE,
    ),
    VestingScheme(
        id="steady-builder",
        name="Stacking Sats",
        description="Historical result of five year funding.",
        initial_grant=Decimal("0.05"),
        annual_grant=Decimal("0.01"),
        vesting_schedule=STANDARD_SCHEDULE,
    ),
    VestingScheme(
        id="slow-burn",
        name="Wealth Builder",
        description="Historical result of yearly funding.",
        initial_grant=Decimal("0"),
        annual_grant=Decimal("0.02"),
        vesting_schedule=STANDARD_SCHEDULE,
    ),
)


def get_scheme(scheme_id: str, historical: bool = True) -> VestingScheme:
    """Look up a built-in scheme by id."""
    schemes = HISTORICAL_VESTING_SCHEMES if historical else VESTING_SCHEMES
    for scheme in schemes:
        if scheme.id == scheme_id:
            return scheme
    known = ", ".join(s.id for s in schemes)
    raise ValidationError(f"Unknown vesting scheme: {scheme_id}. Known schemes: {known}")
