"""Input validation for on-chain lookups: addresses, txids, and the tracker form."""

import re
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

MIN_ADDRESS_LENGTH = 26
MAX_ADDRESS_LENGTH = 62

_BASE58 = "[a-km-zA-HJ-NP-Z1-9]"
_ADDRESS_PATTERNS = (
    re.compile(rf"^1{_BASE58}{{25,34}}$"),  # P2PKH
    re.compile(rf"^3{_BASE58}{{25,34}}$"),  # P2SH
    re.compile(r"^bc1[a-z0-9]{39,59}$"),  # bech32
    re.compile(rf"^[mn]{_BASE58}{{25,34}}$"),  # testnet P2PKH
    re.compile(rf"^2{_BASE58}{{25,34}}$"),  # testnet P2SH
    re.compile(r"^tb1[a-z0-9]{39,59}$"),  # testnet bech32
)
_TXID = re.compile(r"^[0-9a-fA-F]{64}$")

MIN_GRANT_BTC = Decimal("0.00000001")  # 1 satoshi
MAX_GRANT_BTC = Decimal("21")


def validate_bitcoin_address(address: Any) -> bool:
    """Format check only: prefix, alphabet, and length. No checksum verification."""
    if not isinstance(address, str) or not address:
        return False
    if not MIN_ADDRESS_LENGTH <= len(address) <= MAX_ADDRESS_LENGTH:
        return False
    return any(p.match(address) for p in _ADDRESS_PATTERNS)


def validate_txid(txid: Any) -> bool:
    return isinstance(txid, str) and bool(_TXID.match(txid))


class TrackerForm(BaseModel):
    """Address tracker input: the address, vesting start, and the grants to expect."""

    address: str = Field(min_length=MIN_ADDRESS_LENGTH, max_length=MAX_ADDRESS_LENGTH)
    vesting_start_date: date
    annual_grant_btc: Decimal = Field(gt=0)
    total_grants: int = Field(default=5, ge=1, le=20)

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not validate_bitcoin_address(value):
            raise ValueError("Invalid Bitcoin address format")
        return value

    @field_validator("vesting_start_date")
    @classmethod
    def _not_in_future(cls, value: date) -> date:
        if value > date.today():
            raise ValueError("Start date cannot be in the future")
        return value

    @field_validator("annual_grant_btc")
    @classmethod
    def _reasonable_grant(cls, value: Decimal) -> Decimal:
        if not MIN_GRANT_BTC <= value <= MAX_GRANT_BTC:
            raise ValueError("Annual grant must be between 1 satoshi and 21 BTC")
        return value


def validate_tracker_form(data: Any) -> tuple[TrackerForm | None, dict[str, str]]:
    """Validate raw form data.

    Returns:
        (form, {}) on success, or (None, {field: message}) on failure.
    """
    try:
        return TrackerForm.model_validate(data), {}
    except PydanticValidationError as e:
        errors: dict[str, str] = {}
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "form"
            errors.setdefault(field, err["msg"].removeprefix("Value error, "))
        return None, errors
