"""Match on-chain payments to the grants an employee expects to receive.

Each expected grant (one per vesting year) is scored against every incoming
transaction of the tracked address:

    score = date_weight * date_score + amount_weight * amount_score

Both partial scores decay linearly from 1 (exact) to 0 at the configured
tolerance. Pairs below the match threshold are discarded, the rest are
assigned greedily from the highest score down, using each transaction and
each grant year at most once. Unconfirmed transactions have no block time
and never match.
"""

from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal

from btc_benefit.calculators.precision import btc_to_sats, sats_to_btc, to_decimal
from btc_benefit.exceptions import ValidationError
from btc_benefit.logging import get_logger
from btc_benefit.models import (
    AnnotatedTransaction,
    AnnotationConfig,
    AnnotationResult,
    ExpectedGrant,
    MatchingSummary,
    RawTransaction,
    TransactionStatusLabel,
    TransactionType,
)
from btc_benefit.onchain.mempool import filter_incoming_transactions, get_received_amount

logger = get_logger(__name__)

DEFAULT_ANNOTATION_CONFIG = AnnotationConfig()
DEFAULT_TOTAL_GRANTS = 5
MAX_TOTAL_GRANTS = 20

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")
_SECONDS_PER_DAY = Decimal("86400")


def clamp_total_grants(total_grants: int | None) -> int:
    """Number of expected grants, limited to 1..20 (5 when unset or zero)."""
    return max(1, min(MAX_TOTAL_GRANTS, total_grants or DEFAULT_TOTAL_GRANTS))


def _anniversary(start: date, years: int) -> date:
    try:
        return start.replace(year=start.year + years)
    except ValueError:
        # Feb 29 in a non-leap year rolls over
        return date(start.year + years, 3, 1)


def generate_expected_grants(
    vesting_start_date: date,
    annual_grant_btc: Decimal | float | int | str,
    total_grants: int | None = DEFAULT_TOTAL_GRANTS,
    config: AnnotationConfig = DEFAULT_ANNOTATION_CONFIG,
) -> list[ExpectedGrant]:
    """One expected grant per year, the first on the vesting start date."""
    amount = to_decimal(annual_grant_btc, "annual grant")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid annual grant: {annual_grant_btc}. Must be a positive number.")

    return [
        ExpectedGrant(
            year=year,
            expected_date=_anniversary(vesting_start_date, year - 1),
            expected_amount_btc=amount,
            expected_amount_sats=btc_to_sats(amount),
            date_tolerance_days=config.max_date_tolerance_days,
            amount_tolerance_percent=config.max_amount_tolerance_percent,
        )
        for year in range(1, clamp_total_grants(total_grants) + 1)
    ]


def date_score(block_time: int, expected: date, tolerance_days: int) -> Decimal:
    expected_ts = datetime(expected.year, expected.month, expected.day, tzinfo=timezone.utc).timestamp()
    days = abs(Decimal(block_time) - Decimal(int(expected_ts))) / _SECONDS_PER_DAY
    if tolerance_days <= 0 or days > tolerance_days:
        return _ZERO
    return max(_ZERO, _ONE - days / tolerance_days)


def amount_score(received_sats: int, expected_sats: int, tolerance_percent: Decimal) -> Decimal:
    if expected_sats == 0 or tolerance_percent <= 0:
        return _ZERO
    percent = Decimal(abs(received_sats - expected_sats)) / expected_sats * _HUNDRED
    if percent > tolerance_percent:
        return _ZERO
    return max(_ZERO, _ONE - percent / tolerance_percent)


def match_score(
    transaction: RawTransaction,
    grant: ExpectedGrant,
    address: str,
    config: AnnotationConfig = DEFAULT_ANNOTATION_CONFIG,
) -> Decimal:
    received = get_received_amount(transaction, address)
    if received == 0 or transaction.status.block_time is None:
        return _ZERO
    return (
        date_score(transaction.status.block_time, grant.expected_date, grant.date_tolerance_days)
        * config.date_weight
        + amount_score(received, grant.expected_amount_sats, grant.amount_tolerance_percent)
        * config.amount_weight
    )


def find_best_matches(
    transactions: Iterable[RawTransaction],
    grants: list[ExpectedGrant],
    address: str,
    config: AnnotationConfig = DEFAULT_ANNOTATION_CONFIG,
) -> dict[str, tuple[int, Decimal]]:
    """txid -> (grant year, score) for the greedy one-to-one assignment."""
    candidates: list[tuple[Decimal, str, int]] = []
    for tx in transactions:
        for grant in grants:
            score = match_score(tx, grant, address, config)
            if score >= config.match_threshold:
                candidates.append((score, tx.txid, grant.year))

    # Stable: equal scores keep transaction order, then grant order
    candidates.sort(key=lambda c: c[0], reverse=True)

    matches: dict[str, tuple[int, Decimal]] = {}
    used_years: set[int] = set()
    for score, txid, year in candidates:
        if txid in matches or year in used_years:
            continue
        matches[txid] = (year, score)
        used_years.add(year)
    return matches


def to_annotated_transaction(
    transaction: RawTransaction,
    address: str,
    grant_year: int | None = None,
    score: Decimal | None = None,
) -> AnnotatedTransaction:
    received = get_received_amount(transaction, address)
    block_time = transaction.status.block_time
    return AnnotatedTransaction(
        txid=transaction.txid,
        grant_year=grant_year,
        type=TransactionType.ANNUAL_GRANT if grant_year is not None else TransactionType.OTHER,
        is_incoming=received > 0,
        amount_btc=sats_to_btc(received),
        amount_sats=received,
        date=(
            datetime.fromtimestamp(block_time, tz=timezone.utc).date()
            if block_time is not None
            else None
        ),
        block_height=transaction.status.block_height,
        status=(
            TransactionStatusLabel.CONFIRMED
            if transaction.status.confirmed
            else TransactionStatusLabel.UNCONFIRMED
        ),
        match_score=score,
    )


def _mark_matched(
    grants: list[ExpectedGrant], transactions: list[AnnotatedTransaction]
) -> list[ExpectedGrant]:
    by_year = {tx.grant_year: tx.txid for tx in transactions if tx.grant_year is not None}
    return [
        replace(g, is_matched=g.year in by_year, matched_txid=by_year.get(g.year))
        for g in grants
    ]


def summarize(
    transactions: list[AnnotatedTransaction], grants: list[ExpectedGrant]
) -> MatchingSummary:
    matched = sum(1 for tx in transactions if tx.grant_year is not None)
    return MatchingSummary(
        total_transactions=len(transactions),
        matched_transactions=matched,
        unmatched_transactions=len(transactions) - matched,
        expected_grants=len(grants),
        matched_grants=sum(1 for g in grants if g.is_matched),
    )


def annotate_transactions(
    transactions: Iterable[RawTransaction],
    address: str,
    vesting_start_date: date,
    annual_grant_btc: Decimal | float | int | str,
    total_grants: int | None = DEFAULT_TOTAL_GRANTS,
    config: AnnotationConfig = DEFAULT_ANNOTATION_CONFIG,
) -> AnnotationResult:
    """Label every incoming transaction of address as a grant or other payment."""
    grants = generate_expected_grants(vesting_start_date, annual_grant_btc, total_grants, config)
    incoming = filter_incoming_transactions(transactions, address)
    matches = find_best_matches(incoming, grants, address, config)

    annotated = []
    for tx in incoming:
        year, score = matches.get(tx.txid, (None, None))
        annotated.append(to_annotated_transaction(tx, address, year, score))

    grants = _mark_matched(grants, annotated)
    summary = summarize(annotated, grants)
    logger.debug(
        "transactions_annotated",
        incoming=summary.total_transactions,
        matched=summary.matched_transactions,
        expected=summary.expected_grants,
    )
    return AnnotationResult(
        annotated_transactions=annotated,
        expected_grants=grants,
        matching_summary=summary,
    )


def apply_manual_annotations(
    transactions: list[AnnotatedTransaction],
    grants: list[ExpectedGrant],
    manual: Mapping[str, int | None],
) -> AnnotationResult:
    """Override automatic matches with user choices (txid -> grant year or None).

    A manual choice naming an unknown grant year, or a year already claimed
    by an earlier manual choice, is ignored. Automatic matches whose year was
    claimed manually are demoted to other transactions.
    """
    valid_years = {g.year for g in grants}
    claimed: dict[str, int | None] = {}
    claimed_years: set[int] = set()
    for tx in transactions:
        if tx.txid not in manual:
            continue
        year = manual[tx.txid]
        if year is not None:
            if year not in valid_years:
                logger.warning("manual_annotation_ignored", txid=tx.txid, year=year, reason="unknown_year")
                continue
            if year in claimed_years:
                logger.warning("manual_annotation_ignored", txid=tx.txid, year=year, reason="year_taken")
                continue
            claimed_years.add(year)
        claimed[tx.txid] = year

    updated: list[AnnotatedTransaction] = []
    for tx in transactions:
        if tx.txid in claimed:
            year = claimed[tx.txid]
            updated.append(
                replace(
                    tx,
                    grant_year=year,
                    type=TransactionType.ANNUAL_GRANT if year is not None else TransactionType.OTHER,
                    is_manually_annotated=True,
                )
            )
        elif tx.grant_year is not None and tx.grant_year in claimed_years:
            updated.append(replace(tx, grant_year=None, type=TransactionType.OTHER))
        else:
            updated.append(tx)

    grants = _mark_matched(grants, updated)
    return AnnotationResult(
        annotated_transactions=updated,
        expected_grants=grants,
        matching_summary=summarize(updated, grants),
    )
