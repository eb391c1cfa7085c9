"""mempool.space explorer client.

Every request runs inside the "mempool" circuit breaker, and transient
failures (timeouts, HTTP 408/429/5xx, network errors) are retried with
exponential backoff before the breaker sees a failure. A 404 is a normal
answer for an unused address and never trips the breaker.
"""

import asyncio
from collections.abc import Iterable
from typing import Any

import aiohttp

from btc_benefit.config import MempoolSettings
from btc_benefit.exceptions import (
    NotFoundError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
)
from btc_benefit.logging import get_logger
from btc_benefit.models import RawTransaction, TransactionStatus, TxInput, TxOutput
from btc_benefit.onchain.validation import validate_bitcoin_address, validate_txid
from btc_benefit.resilience.circuit_breaker import CircuitBreaker
from btc_benefit.resilience.retry import RetryPolicy

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
USER_AGENT = "Bitcoin-Benefit/1.0"


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, UpstreamError) and error.retryable


def is_valid_transaction_payload(tx: Any) -> bool:
    return (
        isinstance(tx, dict)
        and isinstance(tx.get("txid"), str)
        and isinstance(tx.get("status"), dict)
        and isinstance(tx["status"].get("confirmed"), bool)
        and isinstance(tx.get("vin"), list)
        and isinstance(tx.get("vout"), list)
        and isinstance(tx.get("fee"), int)
    )


def parse_transaction(tx: dict[str, Any]) -> RawTransaction:
    """Reduce a mempool.space transaction to the fields the app uses."""
    status = tx["status"]
    return RawTransaction(
        txid=tx["txid"],
        status=TransactionStatus(
            confirmed=status["confirmed"],
            block_height=status.get("block_height"),
            block_time=status.get("block_time"),
        ),
        vin=tuple(
            TxInput(
                address=(vin.get("prevout") or {}).get("scriptpubkey_address"),
                value=(vin.get("prevout") or {}).get("value", 0),
            )
            for vin in tx["vin"]
        ),
        vout=tuple(
            TxOutput(address=out.get("scriptpubkey_address"), value=out.get("value", 0))
            for out in tx["vout"]
        ),
        fee=tx["fee"],
    )


def filter_incoming_transactions(
    transactions: Iterable[RawTransaction], address: str
) -> list[RawTransaction]:
    """Transactions with at least one output paying address."""
    return [tx for tx in transactions if any(o.address == address for o in tx.vout)]


def get_received_amount(transaction: RawTransaction, address: str) -> int:
    """Satoshis paid to address by transaction."""
    return sum(o.value for o in transaction.vout if o.address == address)


class MempoolClient:
    """Async client for the mempool.space REST API.

    Args:
        settings: Base URL, timeout, and retry configuration.
        breaker: Optional circuit breaker for the "mempool" service.
        session: Optional shared aiohttp session (not closed by close()).
    """

    def __init__(
        self,
        settings: MempoolSettings,
        breaker: CircuitBreaker | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._breaker = breaker
        self._session = session
        self._owns_session = session is None
        self._retry = RetryPolicy(
            max_attempts=settings.max_retries + 1,
            base_delay=settings.retry_delay,
            max_delay=60.0,
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout),
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("mempool_session_closed")

    # ──────────────────────────────────────────────
    # Raw payloads (used by the proxy routes)
    # ──────────────────────────────────────────────

    async def get_address_txs_payload(
        self, address: str, abort: asyncio.Event | None = None
    ) -> list[Any]:
        """Unmodified /address/{address}/txs response.

        Raises:
            ValidationError: malformed address (no request is made).
            NotFoundError: explorer answered 404.
        """
        if not validate_bitcoin_address(address):
            raise ValidationError("Invalid Bitcoin address format")
        data = await self._get_json(f"/address/{address}/txs", abort)
        if not isinstance(data, list):
            raise UpstreamError("Invalid API response format")
        return data

    async def get_transaction_payload(self, txid: str) -> dict[str, Any]:
        """Unmodified /tx/{txid} response."""
        if not validate_txid(txid):
            raise ValidationError("Invalid transaction ID format")
        data = await self._get_json(f"/tx/{txid}")
        if not isinstance(data, dict) or not isinstance(data.get("txid"), str):
            raise UpstreamError("Invalid transaction response format")
        return data

    # ──────────────────────────────────────────────
    # Parsed transactions
    # ──────────────────────────────────────────────

    async def fetch_transactions(
        self, address: str, abort: asyncio.Event | None = None
    ) -> list[RawTransaction]:
        data = await self.get_address_txs_payload(address, abort)
        if not all(is_valid_transaction_payload(tx) for tx in data):
            raise UpstreamError("Invalid API response format")
        return [parse_transaction(tx) for tx in data]

    async def fetch_transaction(self, txid: str) -> RawTransaction:
        data = await self.get_transaction_payload(txid)
        if not is_valid_transaction_payload(data):
            raise UpstreamError("Invalid transaction response format")
        return parse_transaction(data)

    async def has_transaction_history(self, address: str) -> bool:
        try:
            return len(await self.fetch_transactions(address)) > 0
        except NotFoundError:
            return False

    # ──────────────────────────────────────────────
    # HTTP
    # ──────────────────────────────────────────────

    async def _get_json(self, path: str, abort: asyncio.Event | None = None) -> Any:
        async def with_retry() -> Any:
            return await self._retry.run(
                lambda: self._request(path),
                should_retry=_is_retryable,
                abort=abort,
                label=f"mempool{path}",
            )

        if self._breaker is not None:
            return await self._breaker.execute(with_retry)
        return await with_retry()

    async def _request(self, path: str) -> Any:
        url = f"{self._settings.base_url}{path}"
        try:
            async with self._get_session().get(url) as resp:
                if resp.status == 404:
                    raise NotFoundError("Address not found or has no transactions")
                if resp.status == 429:
                    raise RateLimitedError()
                if resp.status >= 400:
                    raise UpstreamError(
                        f"HTTP {resp.status}: {resp.reason}",
                        status_code=resp.status,
                        retryable=resp.status in RETRYABLE_STATUS_CODES,
                    )
                return await resp.json(content_type=None)
        except TimeoutError as e:
            raise UpstreamError("Request timeout", status_code=408, retryable=True) from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"Network error: {e}", retryable=True) from e
