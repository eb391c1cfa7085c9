"""On-chain lookups against the mempool.space explorer and grant matching."""

from btc_benefit.onchain.annotation import (
    annotate_transactions,
    apply_manual_annotations,
    generate_expected_grants,
)
from btc_benefit.onchain.mempool import (
    MempoolClient,
    filter_incoming_transactions,
    get_received_amount,
)
from btc_benefit.onchain.tracker import AddressTracker, TrackerFormError
from btc_benefit.onchain.validation import (
    TrackerForm,
    validate_bitcoin_address,
    validate_tracker_form,
    validate_txid,
)

__all__ = [
    "AddressTracker",
    "MempoolClient",
    "TrackerForm",
    "TrackerFormError",
    "annotate_transactions",
    "apply_manual_annotations",
    "filter_incoming_transactions",
    "generate_expected_grants",
    "get_received_amount",
    "validate_bitcoin_address",
    "validate_tracker_form",
    "validate_txid",
]
