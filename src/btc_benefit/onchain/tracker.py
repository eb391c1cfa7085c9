"""Address tracker: fetch, annotate, and price an employee's grant payments.

Pipeline for one tracked address:
1. validate_tracker_form() on the raw form data
2. MempoolClient.fetch_transactions() (an unknown address is an empty history)
3. annotate_transactions() against the expected grant schedule, then any
   manual overrides
4. PriceFetcher.optimize_price_requests() + fetch_batch_prices() for USD values

Pricing is best effort. When it fails the BTC amounts are still returned and
the result is flagged as partial.
"""

import asyncio
from collections.abc import Mapping
from dataclasses import replace
from decimal import Decimal
from typing import Any

from btc_benefit.calculators.precision import round_usd
from btc_benefit.exceptions import NotFoundError, RequestAborted, ValidationError
from btc_benefit.logging import get_logger
from btc_benefit.models import (
    AnnotatedTransaction,
    AnnotationConfig,
    MatchingSummary,
    TrackerResult,
)
from btc_benefit.onchain.annotation import (
    DEFAULT_ANNOTATION_CONFIG,
    annotate_transactions,
    apply_manual_annotations,
    generate_expected_grants,
    to_annotated_transaction,
)
from btc_benefit.onchain.mempool import MempoolClient, filter_incoming_transactions
from btc_benefit.onchain.validation import validate_bitcoin_address, validate_tracker_form
from btc_benefit.prices.fetcher import PriceFetcher

logger = get_logger(__name__)

PRICE_UNAVAILABLE_MESSAGE = "Price data unavailable - continuing with Bitcoin amounts only"


class TrackerFormError(ValidationError):
    """Raised when tracker form data fails validation; errors maps field -> message."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = errors
        field, message = next(iter(errors.items()))
        super().__init__(f"{field}: {message}")


class AddressTracker:
    """Tracks grant payments to one address at a time.

    Args:
        mempool: Explorer client used for transaction history.
        prices: Per-date price fetcher used to value each payment.
        config: Matching weights and tolerances.
    """

    def __init__(
        self,
        mempool: MempoolClient,
        prices: PriceFetcher,
        config: AnnotationConfig = DEFAULT_ANNOTATION_CONFIG,
    ) -> None:
        self._mempool = mempool
        self._prices = prices
        self._config = config

    async def track(
        self,
        data: Any,
        manual: Mapping[str, int | None] | None = None,
        abort: asyncio.Event | None = None,
    ) -> TrackerResult:
        """Annotate and price every incoming payment of the form's address.

        manual maps txid to a grant year (or None for "not a grant") and
        overrides the automatic matches.

        Raises:
            TrackerFormError: form data is invalid (no request is made).
            UpstreamError / CircuitOpenError: the explorer is unavailable.
            RequestAborted: abort was set.
        """
        form, errors = validate_tracker_form(data)
        if form is None:
            raise TrackerFormError(errors)

        try:
            transactions = await self._mempool.fetch_transactions(form.address, abort)
        except NotFoundError:
            transactions = []

        if not transactions:
            grants = generate_expected_grants(
                form.vesting_start_date, form.annual_grant_btc, form.total_grants, self._config
            )
            return TrackerResult(
                address=form.address,
                annotated_transactions=[],
                expected_grants=grants,
                matching_summary=MatchingSummary(0, 0, 0, len(grants), 0),
            )

        annotation = annotate_transactions(
            transactions,
            form.address,
            form.vesting_start_date,
            form.annual_grant_btc,
            form.total_grants,
            self._config,
        )
        if manual:
            annotation = apply_manual_annotations(
                annotation.annotated_transactions, annotation.expected_grants, manual
            )
        incoming = filter_incoming_transactions(transactions, form.address)
        dates = self._prices.optimize_price_requests(incoming)

        partial = False
        prices: dict[str, Decimal] = {}
        try:
            prices = await self._prices.fetch_batch_prices(dates, abort=abort)
        except RequestAborted:
            raise
        except Exception as e:
            logger.warning("tracker_pricing_failed", address=form.address, error=str(e))
            partial = True

        annotated = [self._with_value(tx, prices) for tx in annotation.annotated_transactions]
        if any(tx.date is not None and tx.value_at_time_of_tx is None for tx in annotated):
            partial = True

        logger.info(
            "address_tracked",
            address=form.address,
            transactions=len(annotated),
            matched=annotation.matching_summary.matched_transactions,
            priced_dates=len(prices),
            partial=partial,
        )
        return TrackerResult(
            address=form.address,
            annotated_transactions=annotated,
            expected_grants=annotation.expected_grants,
            matching_summary=annotation.matching_summary,
            partial_data=partial,
            message=PRICE_UNAVAILABLE_MESSAGE if partial else None,
        )

    async def has_history(self, address: str) -> bool:
        if not validate_bitcoin_address(address):
            raise ValidationError("Invalid Bitcoin address format")
        return await self._mempool.has_transaction_history(address)

    async def describe_transaction(self, txid: str, address: str) -> AnnotatedTransaction:
        """One transaction as seen by address, valued at its block date when confirmed.

        Raises:
            ValidationError: malformed address or txid.
            NotFoundError: unknown transaction.
        """
        if not validate_bitcoin_address(address):
            raise ValidationError("Invalid Bitcoin address format")
        transaction = await self._mempool.fetch_transaction(txid)
        annotated = to_annotated_transaction(transaction, address)
        if annotated.date is None or not annotated.is_incoming:
            return annotated

        price = await self._prices.fetch_price_for_date(annotated.date)
        return replace(annotated, value_at_time_of_tx=round_usd(annotated.amount_btc * price))

    @staticmethod
    def _with_value(tx: AnnotatedTransaction, prices: dict[str, Decimal]) -> AnnotatedTransaction:
        if tx.date is None:
            return tx
        price = prices.get(tx.date.isoformat())
        if price is None:
            return tx
        return replace(tx, value_at_time_of_tx=round_usd(tx.amount_btc * price))
