"""Shared data models for prices, vesting, tax estimates, and on-chain transactions.

CRITICAL: All monetary values and BTC amounts use Decimal. Never use float
for prices, amounts, or cost basis.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum


class CostBasisMethod(str, Enum):
    """Which yearly price is used as the per-BTC cost of a grant."""

    HIGH = "high"
    LOW = "low"
    AVERAGE = "average"


class GrantType(str, Enum):
    """Grant origin within a vesting scheme."""

    INITIAL = "initial"
    ANNUAL = "annual"


@dataclass(frozen=True)
class YearlyPriceRecord:
    """Aggregate USD price data for one calendar year.

    Invariant (checked by calculators.cost_basis.validate_prices):
    all prices positive and finite, low <= average <= high.
    """

    year: int
    high: Decimal
    low: Decimal
    average: Decimal
    open: Decimal
    close: Decimal

    def price_for(self, method: CostBasisMethod) -> Decimal:
        """Return the price selected by a cost basis method."""
        return getattr(self, CostBasisMethod(method).value)


@dataclass(frozen=True)
class CachedPriceEntry:
    """A cached price with its fetch time (epoch seconds) for TTL checks."""

    price: Decimal
    timestamp: float


@dataclass(frozen=True)
class GrantEvent:
    """A discrete BTC grant produced by expanding a scheme against a start year."""

    year: int
    month: int  # 1-12
    amount: Decimal  # BTC
    type: GrantType


@dataclass(frozen=True)
class VestingMilestone:
    """Cumulative vesting percentage reached after `months` of service."""

    months: int
    grant_percent: Decimal
    description: str = ""


@dataclass(frozen=True)
class CustomVestingEvent:
    """User-defined vesting step; replaces the milestone table when present."""

    id: str
    time_period: int  # months
    percentage_vested: Decimal  # cumulative
    label: str = ""


@dataclass(frozen=True)
class VestingScheme:
    """Static configuration of how much BTC is granted and when it vests."""

    id: str
    name: str
    initial_grant: Decimal
    vesting_schedule: tuple[VestingMilestone, ...]
    annual_grant: Decimal | None = None
    max_annual_grants: int | None = None
    custom_vesting_events: tuple[CustomVestingEvent, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class HistoricalTimelinePoint:
    """State of a historical vesting scenario at the end of one calendar month."""

    year: int
    month: int
    cumulative_bitcoin: Decimal
    cumulative_cost_basis: Decimal
    current_value: Decimal
    vested_amount: Decimal
    grants: tuple[GrantEvent, ...] = ()


@dataclass(frozen=True)
class HistoricalSummary:
    """Metadata describing the analysed period."""

    starting_year: int
    ending_year: int
    years_analyzed: int
    cost_basis_method: CostBasisMethod
    average_annual_grant: Decimal


@dataclass(frozen=True)
class HistoricalResult:
    """Complete output of a historical vesting calculation."""

    timeline: list[HistoricalTimelinePoint]
    total_bitcoin_granted: Decimal
    total_cost_basis: Decimal
    current_total_value: Decimal
    total_return: Decimal
    annualized_return: Decimal
    grant_breakdown: list[GrantEvent]
    summary: HistoricalSummary


@dataclass
class YearCostBreakdown:
    """Per-year aggregate used by get_cost_basis_breakdown."""

    total_bitcoin: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    grants: list[GrantEvent] = field(default_factory=list)


# ---------------------------------------------------------------------------
# On-chain transactions (trimmed mempool.space shape)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransactionStatus:
    confirmed: bool
    block_height: int | None = None
    block_time: int | None = None  # Unix seconds


@dataclass(frozen=True)
class TxInput:
    address: str | None
    value: int  # satoshis


@dataclass(frozen=True)
class TxOutput:
    address: str | None
    value: int  # satoshis


@dataclass(frozen=True)
class RawTransaction:
    """A transaction as returned by the explorer, reduced to the fields we use."""

    txid: str
    status: TransactionStatus
    vin: tuple[TxInput, ...]
    vout: tuple[TxOutput, ...]
    fee: int


class TransactionType(str, Enum):
    ANNUAL_GRANT = "Annual Grant"
    OTHER = "Other Transaction"


class TransactionStatusLabel(str, Enum):
    CONFIRMED = "Confirmed"
    UNCONFIRMED = "Unconfirmed"


@dataclass(frozen=True)
class AnnotationConfig:
    """Weights and tolerances used to match transactions to expected grants."""

    date_weight: Decimal = Decimal("0.3")
    amount_weight: Decimal = Decimal("0.7")
    match_threshold: Decimal = Decimal("0.6")
    max_date_tolerance_days: int = 180
    max_amount_tolerance_percent: Decimal = Decimal("25")


@dataclass(frozen=True)
class ExpectedGrant:
    """A grant the employer should have paid, one per vesting year."""

    year: int  # 1-based grant number
    expected_date: date
    expected_amount_btc: Decimal
    expected_amount_sats: int
    date_tolerance_days: int
    amount_tolerance_percent: Decimal
    is_matched: bool = False
    matched_txid: str | None = None


@dataclass(frozen=True)
class AnnotatedTransaction:
    """An incoming transaction labelled as a grant payment or something else."""

    txid: str
    grant_year: int | None
    type: TransactionType
    is_incoming: bool
    amount_btc: Decimal
    amount_sats: int
    date: date | None  # None while unconfirmed
    block_height: int | None
    status: TransactionStatusLabel
    value_at_time_of_tx: Decimal | None = None  # USD
    match_score: Decimal | None = None
    is_manually_annotated: bool = False


@dataclass(frozen=True)
class MatchingSummary:
    total_transactions: int
    matched_transactions: int
    unmatched_transactions: int
    expected_grants: int
    matched_grants: int


@dataclass(frozen=True)
class AnnotationResult:
    annotated_transactions: list[AnnotatedTransaction]
    expected_grants: list[ExpectedGrant]
    matching_summary: MatchingSummary


@dataclass(frozen=True)
class TrackerResult:
    """Outcome of tracking one address against its expected grant schedule.

    partial_data is set when transactions were found but some or all USD
    values could not be priced; BTC amounts are still complete.
    """

    address: str
    annotated_transactions: list[AnnotatedTransaction]
    expected_grants: list[ExpectedGrant]
    matching_summary: MatchingSummary
    partial_data: bool = False
    message: str | None = None


# ---------------------------------------------------------------------------
# Tax estimates
# ---------------------------------------------------------------------------


class FilingStatus(str, Enum):
    SINGLE = "SINGLE"
    MARRIED_JOINTLY = "MARRIED_JOINTLY"
    MARRIED_SEPARATELY = "MARRIED_SEPARATELY"
    HEAD_OF_HOUSEHOLD = "HEAD_OF_HOUSEHOLD"


class TaxType(str, Enum):
    LONG_TERM = "long-term"
    SHORT_TERM = "short-term"


@dataclass(frozen=True)
class TaxImplication:
    """Estimated federal and state tax on selling BTC at a given price."""

    proceeds: Decimal
    cost_basis: Decimal
    gain: Decimal
    federal_tax: Decimal
    state_tax: Decimal
    total_tax: Decimal
    net_proceeds: Decimal
    effective_rate: Decimal  # fraction of proceeds
    tax_type: TaxType


@dataclass(frozen=True)
class QuarterlyPayment:
    quarter: str
    amount: Decimal
    due_date: str


# ---------------------------------------------------------------------------
# Forward projection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProjectionPoint:
    """Projected balance and value at one month of a forward vesting timeline."""

    month: int
    employer_balance: Decimal  # BTC granted so far
    vested_amount: Decimal
    bitcoin_price: Decimal
    usd_value: Decimal


@dataclass(frozen=True)
class GrowthScenario:
    name: str
    growth_rate: Decimal  # annual percent
    final_price: Decimal
    final_value: Decimal
    growth_multiple: Decimal


@dataclass(frozen=True)
class ProjectionResult:
    """Forward-looking cost and value of a scheme under a constant growth rate."""

    timeline: list[ProjectionPoint]
    total_bitcoin_needed: Decimal
    total_cost: Decimal  # USD at today's price
    average_vesting_period: Decimal  # months
    growth_scenarios: list[GrowthScenario]
    tax_implications: TaxImplication
