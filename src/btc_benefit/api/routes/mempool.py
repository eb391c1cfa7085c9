"""mempool.space proxy endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from btc_benefit.api.responses import cached_response, error_response
from btc_benefit.exceptions import CircuitOpenError, NotFoundError, UpstreamError
from btc_benefit.logging import get_logger
from btc_benefit.onchain.validation import validate_bitcoin_address, validate_txid

logger = get_logger(__name__)

router = APIRouter()

EMPTY_HISTORY_MAX_AGE = 10
BREAKER_RETRY_AFTER = 60


def _service_unavailable() -> JSONResponse:
    return error_response(
        "Mempool.space service temporarily unavailable. Please try again later.",
        503,
        headers={"Retry-After": str(BREAKER_RETRY_AFTER)},
    )


def _upstream_failure(error: UpstreamError, fallback_message: str) -> JSONResponse:
    if error.status_code == 408:
        return error_response("Request timeout - mempool.space is not responding", 408)
    return error_response(fallback_message, 500)


@router.get("/mempool/address/{address}/txs")
async def address_transactions(address: str, request: Request) -> JSONResponse:
    """Transactions of an address. Unknown addresses yield an empty list, not a 404."""
    services = request.app.state.services
    max_age = services.settings.api.cache_max_age

    if not validate_bitcoin_address(address):
        return error_response("Invalid Bitcoin address format", 400)

    if services.settings.mempool.skip_api_calls:
        return cached_response([], max_age, headers={"X-Data-Source": "mock"})

    try:
        txs = await services.mempool.get_address_txs_payload(address)
    except NotFoundError:
        return cached_response(
            [],
            EMPTY_HISTORY_MAX_AGE,
            headers={"X-Data-Source": "mempool.space", "X-Transaction-Count": "0"},
        )
    except CircuitOpenError:
        return _service_unavailable()
    except UpstreamError as e:
        logger.warning("mempool_address_proxy_error", address=address, error=str(e))
        return _upstream_failure(e, "Failed to fetch transaction data")

    return cached_response(
        txs,
        max_age if txs else EMPTY_HISTORY_MAX_AGE,
        headers={"X-Data-Source": "mempool.space", "X-Transaction-Count": str(len(txs))},
    )


@router.get("/mempool/tx/{txid}")
async def transaction_details(txid: str, request: Request) -> JSONResponse:
    services = request.app.state.services

    if not validate_txid(txid):
        return error_response("Invalid transaction ID format", 400)

    try:
        tx = await services.mempool.get_transaction_payload(txid)
    except NotFoundError:
        return error_response("Transaction not found", 404)
    except CircuitOpenError:
        return _service_unavailable()
    except UpstreamError as e:
        logger.warning("mempool_tx_proxy_error", txid=txid, error=str(e))
        return _upstream_failure(e, "Failed to fetch transaction details")

    return cached_response(tx, services.settings.api.cache_max_age)
