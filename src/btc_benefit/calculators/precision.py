"""Decimal conversion and rounding helpers for BTC and USD amounts."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from btc_benefit.exceptions import ValidationError

SATOSHIS_PER_BTC = Decimal("100000000")
CENT = Decimal("0.01")


def to_decimal(value: object, what: str = "value") -> Decimal:
    """Convert an int/float/str/Decimal to Decimal via str() to avoid float artifacts.

    Raises:
        ValidationError: value is not numeric (bools are rejected too).
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValidationError(f"Invalid {what}: {value!r}. Must be a number.")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid {what}: {value!r}. Must be a number.") from e


def is_positive_finite(value: Decimal) -> bool:
    return value.is_finite() and value > 0


def round_usd(value: Decimal) -> Decimal:
    """Round a USD amount to cents (half up)."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def sats_to_btc(sats: int) -> Decimal:
    return Decimal(sats) / SATOSHIS_PER_BTC


def btc_to_sats(btc: Decimal) -> int:
    return int((btc * SATOSHIS_PER_BTC).to_integral_value(rounding=ROUND_HALF_UP))
