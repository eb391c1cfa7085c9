"""US tax estimates for selling vested BTC.

Simplified 2024 figures:
  - Short-term gains (held under 365 days) are taxed as ordinary income
    through the single-filer brackets.
  - Long-term gains use a flat tier: 20% of the whole gain above $492,300,
    15% above $44,625, otherwise nothing.
  - State tax is a flat rate on the gain.

Losses produce no tax rather than a refund.
"""

from decimal import Decimal

from btc_benefit.calculators.precision import to_decimal
from btc_benefit.exceptions import ValidationError
from btc_benefit.models import FilingStatus, QuarterlyPayment, TaxImplication, TaxType

LONG_TERM_HOLDING_DAYS = 365

# (lower bound, upper bound or None, rate)
ORDINARY_BRACKETS_2024: tuple[tuple[Decimal, Decimal | None, Decimal], ...] = (
    (Decimal("0"), Decimal("11000"), Decimal("0.10")),
    (Decimal("11000"), Decimal("44725"), Decimal("0.12")),
    (Decimal("44725"), Decimal("95375"), Decimal("0.22")),
    (Decimal("95375"), Decimal("182050"), Decimal("0.24")),
    (Decimal("182050"), Decimal("231250"), Decimal("0.32")),
    (Decimal("231250"), Decimal("578125"), Decimal("0.35")),
    (Decimal("578125"), None, Decimal("0.37")),
)

# Highest threshold first; the rate applies to the whole gain
LONG_TERM_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("492300"), Decimal("0.20")),
    (Decimal("44625"), Decimal("0.15")),
)

STATE_TAX_RATES: dict[str, Decimal] = {
    "CA": Decimal("0.133"),
    "NY": Decimal("0.109"),
    "TX": Decimal("0"),
    "FL": Decimal("0"),
    "WA": Decimal("0"),
    "DEFAULT": Decimal("0.05"),
}

NIIT_RATE = Decimal("0.038")
NIIT_THRESHOLDS: dict[FilingStatus, Decimal] = {
    FilingStatus.SINGLE: Decimal("200000"),
    FilingStatus.MARRIED_JOINTLY: Decimal("250000"),
    FilingStatus.MARRIED_SEPARATELY: Decimal("125000"),
    FilingStatus.HEAD_OF_HOUSEHOLD: Decimal("200000"),
}

QUARTERLY_DUE_DATES = (
    ("Q1", "April 15"),
    ("Q2", "June 15"),
    ("Q3", "September 15"),
    ("Q4", "January 15"),
)

_ZERO = Decimal("0")


def _non_negative(value: object, what: str) -> Decimal:
    amount = to_decimal(value, what)
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Invalid {what}: {value}. Must be a non-negative number.")
    return amount


def state_tax_rate(state: str | None) -> Decimal:
    """Flat state rate for a two-letter code; unknown states get the default."""
    if not state:
        return STATE_TAX_RATES["DEFAULT"]
    return STATE_TAX_RATES.get(state.upper(), STATE_TAX_RATES["DEFAULT"])


def ordinary_income_tax(income: Decimal) -> Decimal:
    """Progressive tax through ORDINARY_BRACKETS_2024."""
    tax = _ZERO
    remaining = income
    for lower, upper, rate in ORDINARY_BRACKETS_2024:
        if remaining <= 0:
            break
        taxable = remaining if upper is None else min(remaining, upper - lower)
        tax += taxable * rate
        remaining -= taxable
    return tax


def long_term_capital_gains_tax(gain: Decimal) -> Decimal:
    for threshold, rate in LONG_TERM_TIERS:
        if gain > threshold:
            return gain * rate
    return _ZERO


def calculate_tax(
    btc_amount: Decimal | float | int | str,
    btc_price: Decimal | float | int | str,
    cost_basis: Decimal | float | int | str,
    holding_period_days: int,
    state: str | None = None,
    filing_status: FilingStatus | str = FilingStatus.SINGLE,
) -> TaxImplication:
    """Estimate tax owed on selling btc_amount at btc_price.

    The filing status is validated but the brackets are the single-filer
    ones for every status.

    Raises:
        ValidationError: negative or non-numeric inputs, unknown filing status.
    """
    amount = _non_negative(btc_amount, "BTC amount")
    price = _non_negative(btc_price, "BTC price")
    basis = _non_negative(cost_basis, "cost basis")
    if isinstance(holding_period_days, bool) or not isinstance(holding_period_days, int):
        raise ValidationError(f"Invalid holding period: {holding_period_days!r}. Must be whole days.")
    if holding_period_days < 0:
        raise ValidationError(f"Invalid holding period: {holding_period_days}. Must be >= 0.")
    try:
        FilingStatus(filing_status)
    except ValueError:
        raise ValidationError(f"Invalid filing status: {filing_status}") from None

    proceeds = amount * price
    gain = proceeds - basis
    taxable_gain = max(gain, _ZERO)

    is_long_term = holding_period_days >= LONG_TERM_HOLDING_DAYS
    federal_tax = (
        long_term_capital_gains_tax(taxable_gain)
        if is_long_term
        else ordinary_income_tax(taxable_gain)
    )
    state_tax = taxable_gain * state_tax_rate(state)
    total_tax = federal_tax + state_tax

    return TaxImplication(
        proceeds=proceeds,
        cost_basis=basis,
        gain=gain,
        federal_tax=federal_tax,
        state_tax=state_tax,
        total_tax=total_tax,
        net_proceeds=proceeds - total_tax,
        effective_rate=total_tax / proceeds if proceeds > 0 else _ZERO,
        tax_type=TaxType.LONG_TERM if is_long_term else TaxType.SHORT_TERM,
    )


def estimate_quarterly_payments(annual_tax_liability: Decimal | float | int | str) -> list[QuarterlyPayment]:
    """Split an annual liability into four equal estimated payments."""
    quarterly = _non_negative(annual_tax_liability, "annual tax liability") / 4
    return [
        QuarterlyPayment(quarter=quarter, amount=quarterly, due_date=due)
        for quarter, due in QUARTERLY_DUE_DATES
    ]


def calculate_niit(
    income: Decimal | float | int | str,
    investment_income: Decimal | float | int | str,
    filing_status: FilingStatus | str = FilingStatus.SINGLE,
) -> Decimal:
    """Net investment income tax: 3.8% of investment income above the threshold."""
    total = _non_negative(income, "income")
    investment = _non_negative(investment_income, "investment income")
    try:
        threshold = NIIT_THRESHOLDS[FilingStatus(filing_status)]
    except ValueError:
        raise ValidationError(f"Invalid filing status: {filing_status}") from None

    if total <= threshold:
        return _ZERO
    return min(investment, total - threshold) * NIIT_RATE
