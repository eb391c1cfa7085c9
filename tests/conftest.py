"""Shared test fixtures for the Bitcoin benefit services."""

import json
from collections.abc import Callable, Iterator
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from btc_benefit.api.app import create_app
from btc_benefit.config import (
    AppSettings,
    MempoolSettings,
    PriceFetchSettings,
    RateLimitSettings,
    SecuritySettings,
)
from btc_benefit.models import YearlyPriceRecord
from btc_benefit.services import BenefitServices, build_services


class FakeClock:
    """Manually advanced clock for TTL, cooldown, and window tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    """Stand-in for an aiohttp response used as `async with session.get(...)`."""

    def __init__(self, status: int = 200, text: str = "null", reason: str = "OK") -> None:
        self.status = status
        self.reason = reason
        self._text = text

    async def json(self, loads=json.loads, content_type: str | None = "application/json"):
        return loads(self._text)

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False


def fake_session(*responses: FakeResponse | Exception) -> MagicMock:
    """aiohttp session mock whose get() yields the given responses in order.

    An Exception in the sequence is raised by get() instead.
    """
    session = MagicMock()
    session.closed = False
    session.get = MagicMock(side_effect=list(responses))
    return session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def price_settings() -> PriceFetchSettings:
    """Price settings with every delay shrunk so tests never wait on real time."""
    return PriceFetchSettings(
        batch_window_seconds=0.01,
        inter_request_delay=0,
        rate_limit_pause=0,
        min_request_interval=0,
        max_requests_per_minute=1000,
        retry_base_delay=0,
        retry_max_delay=0,
        max_retries=3,
    )


@pytest.fixture
def mock_settings(price_settings: PriceFetchSettings) -> AppSettings:
    """Return AppSettings with test defaults (memory limiter, dummy secrets)."""
    return AppSettings(
        log_level="DEBUG",
        prices=price_settings,
        rate_limit=RateLimitSettings(backend="memory"),
        mempool=MempoolSettings(retry_delay=0, max_retries=1),
        security=SecuritySettings(
            jwt_secret="test-jwt-secret-with-enough-length",  # type: ignore[arg-type]
            request_signature_secret="test-signature-secret",  # type: ignore[arg-type]
        ),
    )


def make_record(
    year: int,
    high: str = "29000",
    low: str = "3800",
    average: str = "11500",
    open_: str = "7200",
    close: str = "28900",
) -> YearlyPriceRecord:
    """Build a consistent YearlyPriceRecord (defaults are 2020-like figures)."""
    return YearlyPriceRecord(
        year=year,
        high=Decimal(high),
        low=Decimal(low),
        average=Decimal(average),
        open=Decimal(open_),
        close=Decimal(close),
    )


@pytest.fixture
def historical_prices() -> dict[int, YearlyPriceRecord]:
    """Yearly records for 2015 through 2026."""
    return {
        2015: make_record(2015, "500", "150", "260", "310", "430"),
        2016: make_record(2016, "980", "360", "570", "430", "960"),
        2017: make_record(2017, "19800", "780", "4000", "960", "13900"),
        2018: make_record(2018, "17500", "3200", "7500", "13900", "3700"),
        2019: make_record(2019, "13000", "3400", "7200", "3700", "7200"),
        2020: make_record(2020),
        2021: make_record(2021, "69000", "29000", "47000", "29000", "46000"),
        2022: make_record(2022, "48000", "15500", "28000", "46000", "16500"),
        2023: make_record(2023, "44000", "16500", "28500", "16500", "42000"),
        2024: make_record(2024, "108000", "38000", "65000", "42000", "94000"),
        2025: make_record(2025, "126000", "76000", "100000", "94000", "110000"),
        2026: make_record(2026, "120000", "80000", "100000", "110000", "105000"),
    }


# ---------------------------------------------------------------------------
# API fixtures: real services with every upstream call mocked
# ---------------------------------------------------------------------------

DAY_MS = 86_400_000

SAMPLE_CHART = {
    "prices": [[1_704_067_200_000, Decimal("42250.46")], [1_704_153_600_000, Decimal("44000.1")]],
    "market_caps": [],
    "total_volumes": [],
}

SAMPLE_TX = {
    "txid": "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b",
    "status": {"confirmed": True, "block_height": 820000, "block_time": 1_700_000_000},
    "vin": [],
    "vout": [{"scriptpubkey_address": "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq", "value": 1000}],
    "fee": 250,
}


def mock_upstreams(services: BenefitServices) -> BenefitServices:
    """Replace every network-facing client method with an AsyncMock."""
    services.coingecko.fetch_market_chart = AsyncMock(return_value=SAMPLE_CHART)
    services.coingecko.fetch_price_for_day = AsyncMock(return_value=Decimal("42000.00"))
    services.coingecko.fetch_range = AsyncMock(
        return_value=[(0, Decimal("10000")), (DAY_MS, Decimal("20000"))]
    )
    services.mempool.get_address_txs_payload = AsyncMock(return_value=[SAMPLE_TX])
    services.mempool.get_transaction_payload = AsyncMock(return_value=SAMPLE_TX)
    return services


@pytest.fixture
def make_client(
    mock_settings: AppSettings,
) -> Iterator[Callable[..., tuple[TestClient, BenefitServices]]]:
    """Factory: build services from (optionally updated) settings and open a TestClient."""
    clients: list[TestClient] = []

    def factory(**updates) -> tuple[TestClient, BenefitServices]:
        settings = mock_settings.model_copy(update=updates) if updates else mock_settings
        services = mock_upstreams(build_services(settings))
        client = TestClient(create_app(services))
        client.__enter__()
        clients.append(client)
        return client, services

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def api(make_client) -> tuple[TestClient, BenefitServices]:
    return make_client()
