"""Tests for the proxy, price, calculator, and health routes.

Services are built from test settings with every upstream client method
replaced by an AsyncMock (see mock_upstreams in conftest).
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from btc_benefit.api.app import create_app
from btc_benefit.config import MempoolSettings, RateLimitSettings
from btc_benefit.exceptions import (
    CircuitOpenError,
    NotFoundError,
    RateLimitedError,
    RequestAborted,
    UpstreamError,
)
from btc_benefit.main import lifespan
from btc_benefit.security.tokens import create_token
from btc_benefit.services import build_services
from conftest import mock_upstreams

ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"
TXID = "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"
YEAR = 365 * 24 * 60 * 60


# ---------------------------------------------------------------------------
# /api/coingecko
# ---------------------------------------------------------------------------


class TestCoinGeckoProxy:
    def test_success(self, api) -> None:
        client, services = api
        resp = client.get("/api/coingecko", params={"from": 1_704_067_200, "to": 1_704_153_600})

        assert resp.status_code == 200
        assert resp.json()["prices"][0] == [1_704_067_200_000, 42250.46]
        assert resp.headers["cache-control"] == "public, max-age=60"
        services.coingecko.fetch_market_chart.assert_awaited_once_with(1_704_067_200, 1_704_153_600, "usd")

    @pytest.mark.parametrize(
        "params, message",
        [
            ({"from": "1"}, "Missing required parameters: from and to timestamps"),
            ({"from": "abc", "to": "2"}, "Invalid timestamp format. Use Unix timestamps."),
            ({"from": "100", "to": "100"}, "From timestamp must be before to timestamp"),
            ({"from": "1", "to": str(YEAR + 2)}, "Date range too large. Maximum 1 year allowed."),
        ],
    )
    def test_bad_parameters(self, api, params: dict, message: str) -> None:
        client, services = api
        resp = client.get("/api/coingecko", params=params)

        assert resp.status_code == 400
        assert resp.json() == {"error": message}
        services.coingecko.fetch_market_chart.assert_not_awaited()

    def test_server_wide_limit(self, make_client) -> None:
        client, _ = make_client(rate_limit=RateLimitSettings(coingecko_max=1))
        params = {"from": "1", "to": "1000"}

        assert client.get("/api/coingecko", params=params).status_code == 200
        resp = client.get("/api/coingecko", params=params, headers={"x-forwarded-for": "10.9.9.9"})

        assert resp.status_code == 429
        assert "Server rate limit exceeded" in resp.json()["error"]

    @pytest.mark.parametrize(
        "error, status",
        [
            (RateLimitedError(), 429),
            (UpstreamError("Request timeout", 408, retryable=True), 408),
            (UpstreamError("HTTP error! status: 500", 500, retryable=True), 500),
            (UpstreamError("CoinGecko request failed: reset", retryable=True), 500),
        ],
    )
    def test_upstream_errors(self, api, error: Exception, status: int) -> None:
        client, services = api
        services.coingecko.fetch_market_chart.side_effect = error

        resp = client.get("/api/coingecko", params={"from": "1", "to": "1000"})

        assert resp.status_code == status

    def test_upstream_status_is_reported(self, api) -> None:
        client, services = api
        services.coingecko.fetch_market_chart.side_effect = UpstreamError("x", 503, retryable=True)

        resp = client.get("/api/coingecko", params={"from": "1", "to": "1000"})

        assert resp.status_code == 503
        assert resp.json() == {"error": "CoinGecko API error: 503"}

    def test_circuit_open(self, api) -> None:
        client, services = api
        services.coingecko.fetch_market_chart.side_effect = CircuitOpenError("coingecko", 14.2)

        resp = client.get("/api/coingecko", params={"from": "1", "to": "1000"})

        assert resp.status_code == 503
        assert resp.headers["retry-after"] == "14"
        assert "Circuit breaker is open for coingecko" in resp.json()["error"]

    def test_invalid_upstream_payload(self, api) -> None:
        client, services = api
        services.coingecko.fetch_market_chart.return_value = {"error": "nope"}

        resp = client.get("/api/coingecko", params={"from": "1", "to": "1000"})

        assert resp.status_code == 502


# ---------------------------------------------------------------------------
# /api/mempool
# ---------------------------------------------------------------------------


class TestMempoolProxy:
    def test_address_transactions(self, api) -> None:
        client, _ = api
        resp = client.get(f"/api/mempool/address/{ADDRESS}/txs")

        assert resp.status_code == 200
        assert resp.json()[0]["txid"] == TXID
        assert resp.headers["x-transaction-count"] == "1"
        assert resp.headers["x-data-source"] == "mempool.space"

    def test_invalid_address(self, api) -> None:
        client, services = api
        resp = client.get("/api/mempool/address/nope/txs")

        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid Bitcoin address format"}
        services.mempool.get_address_txs_payload.assert_not_awaited()

    def test_unknown_address_is_empty_list(self, api) -> None:
        client, services = api
        services.mempool.get_address_txs_payload.side_effect = NotFoundError()

        resp = client.get(f"/api/mempool/address/{ADDRESS}/txs")

        assert resp.status_code == 200
        assert resp.json() == []
        assert resp.headers["cache-control"] == "public, max-age=10"

    def test_skip_api_calls(self, make_client) -> None:
        client, services = make_client(mempool=MempoolSettings(skip_api_calls=True))

        resp = client.get(f"/api/mempool/address/{ADDRESS}/txs")

        assert resp.json() == []
        assert resp.headers["x-data-source"] == "mock"
        services.mempool.get_address_txs_payload.assert_not_awaited()

    def test_circuit_open(self, api) -> None:
        client, services = api
        services.mempool.get_address_txs_payload.side_effect = CircuitOpenError("mempool", 20)

        resp = client.get(f"/api/mempool/address/{ADDRESS}/txs")

        assert resp.status_code == 503
        assert resp.headers["retry-after"] == "60"
        assert resp.json()["error"].startswith("Mempool.space service temporarily unavailable")

    def test_timeout(self, api) -> None:
        client, services = api
        services.mempool.get_address_txs_payload.side_effect = UpstreamError(
            "Request timeout", 408, retryable=True
        )

        resp = client.get(f"/api/mempool/address/{ADDRESS}/txs")

        assert resp.status_code == 408

    def test_other_upstream_failure(self, api) -> None:
        client, services = api
        services.mempool.get_address_txs_payload.side_effect = UpstreamError("HTTP 502: Bad Gateway", 502)

        resp = client.get(f"/api/mempool/address/{ADDRESS}/txs")

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to fetch transaction data"}

    def test_transaction_details(self, api) -> None:
        client, _ = api
        resp = client.get(f"/api/mempool/tx/{TXID}")

        assert resp.status_code == 200
        assert resp.json()["fee"] == 250

    def test_invalid_txid(self, api) -> None:
        client, _ = api
        resp = client.get("/api/mempool/tx/xyz")

        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid transaction ID format"}

    def test_transaction_not_found(self, api) -> None:
        client, services = api
        services.mempool.get_transaction_payload.side_effect = NotFoundError()

        resp = client.get(f"/api/mempool/tx/{TXID}")

        assert resp.status_code == 404
        assert resp.json() == {"error": "Transaction not found"}


# ---------------------------------------------------------------------------
# /api/prices
# ---------------------------------------------------------------------------


class TestPriceRoutes:
    def test_price_for_date(self, api) -> None:
        client, _ = api
        resp = client.get("/api/prices/2024-01-01")

        assert resp.status_code == 200
        assert resp.json() == {"date": "2024-01-01", "price": "42000.00"}

    def test_invalid_date(self, api) -> None:
        client, _ = api
        resp = client.get("/api/prices/2024-02-30")

        assert resp.status_code == 400
        assert "Invalid date" in resp.json()["error"]

    def test_upstream_failure_is_bad_gateway(self, api) -> None:
        client, services = api
        services.coingecko.fetch_price_for_day.side_effect = UpstreamError("HTTP error! status: 500", 500)

        resp = client.get("/api/prices/2024-01-01")

        assert resp.status_code == 502
        assert "Failed to fetch price for 2024-01-01" in resp.json()["error"]

    def test_yearly_prices(self, api) -> None:
        client, _ = api
        resp = client.get("/api/prices/yearly", params={"start": 2020, "end": 2021})

        assert resp.status_code == 200
        body = resp.json()
        assert list(body) == ["2020", "2021"]
        assert body["2020"]["high"] == "20000.00"
        assert body["2020"]["average"] == "15000.00"

    def test_cache_stats(self, api) -> None:
        client, _ = api
        client.get("/api/prices/2024-01-01")
        client.get("/api/prices/yearly", params={"start": 2020, "end": 2020})

        resp = client.get("/api/prices/cache/stats")

        assert resp.json() == {
            "daily": {"size": 1, "dates": ["2024-01-01"]},
            "yearly": {"size": 1, "years": [2020]},
        }


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class TestCalculatorRoutes:
    def test_list_schemes(self, api) -> None:
        client, _ = api
        body = client.get("/api/schemes").json()

        assert [s["id"] for s in body["historical"]] == ["accelerator", "steady-builder", "slow-burn"]
        assert body["default"][0]["initial_grant"] == "0.02"

    def test_historical_calculation(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/historical/calculate",
            json={"scheme_id": "accelerator", "starting_year": 2020, "current_bitcoin_price": "100000"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert Decimal(body["total_bitcoin_granted"]) == Decimal("0.1")
        # 0.1 BTC at the mocked 15000 yearly average
        assert Decimal(body["total_cost_basis"]) == Decimal("1500")
        assert Decimal(body["current_total_value"]) == Decimal("10000")
        assert body["summary"]["cost_basis_method"] == "average"
        assert body["grant_breakdown"][0]["type"] == "initial"

    def test_current_price_defaults_to_current_year_close(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/historical/calculate",
            json={"scheme_id": "accelerator", "starting_year": 2020, "cost_basis_method": "high"},
        )

        assert resp.status_code == 200
        body = resp.json()
        # close of the mocked range is 20000; high is 20000 too
        assert Decimal(body["current_total_value"]) == Decimal("2000")
        assert Decimal(body["total_cost_basis"]) == Decimal("2000")

    def test_unknown_scheme(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/historical/calculate", json={"scheme_id": "moon", "starting_year": 2020}
        )

        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Unknown vesting scheme: moon")

    def test_missing_field(self, api) -> None:
        client, _ = api
        resp = client.post("/api/historical/calculate", json={"scheme_id": "accelerator"})

        assert resp.status_code == 400
        assert resp.json()["error"].startswith("starting_year")

    def test_invalid_method(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/historical/calculate",
            json={"scheme_id": "accelerator", "starting_year": 2020, "cost_basis_method": "median"},
        )
        assert resp.status_code == 400

    def test_year_without_price_data(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/historical/calculate",
            json={"scheme_id": "accelerator", "starting_year": 2012, "current_bitcoin_price": "1"},
        )

        assert resp.status_code == 422
        assert resp.json() == {"error": "No historical price data available for starting year: 2012"}

    def test_projection(self, api) -> None:
        client, services = api
        resp = client.post(
            "/api/projection",
            json={"scheme_id": "accelerator", "current_bitcoin_price": "100000", "annual_growth_percent": "0"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert Decimal(body["total_bitcoin_needed"]) == Decimal("0.02")
        assert Decimal(body["total_cost"]) == Decimal("2000")
        assert len(body["timeline"]) == 121
        assert [s["name"] for s in body["growth_scenarios"]] == ["Conservative", "Base Case", "Optimistic"]
        assert body["tax_implications"]["tax_type"] == "long-term"
        services.coingecko.fetch_range.assert_not_awaited()

    def test_projection_price_defaults_to_current_year_close(self, api) -> None:
        client, services = api
        resp = client.post("/api/projection", json={"scheme_id": "steady-builder"})

        assert resp.status_code == 200
        assert Decimal(resp.json()["timeline"][0]["bitcoin_price"]) == Decimal("20000")
        services.coingecko.fetch_range.assert_awaited()

    def test_projection_unknown_scheme(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/projection", json={"scheme_id": "moon", "current_bitcoin_price": "100000"}
        )
        assert resp.status_code == 400

    def test_tax_estimate(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/tax",
            json={
                "btc_amount": "1",
                "btc_price": "60000",
                "cost_basis": "10000",
                "holding_period_days": 400,
                "state": "CA",
                "annual_income": "250000",
            },
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["tax"]["tax_type"] == "long-term"
        assert Decimal(body["tax"]["total_tax"]) == Decimal("14150")
        assert Decimal(body["niit"]) == Decimal("1900")
        assert [Decimal(p["amount"]) for p in body["quarterly_payments"]] == [Decimal("3537.5")] * 4

    def test_tax_without_income_skips_niit(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/tax",
            json={"btc_amount": "1", "btc_price": "60000", "cost_basis": "10000", "holding_period_days": 10},
        )

        assert resp.status_code == 200
        assert resp.json()["niit"] is None
        assert resp.json()["tax"]["tax_type"] == "short-term"

    def test_tax_rejects_negative_amount(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/tax",
            json={"btc_amount": "-1", "btc_price": "60000", "cost_basis": "0", "holding_period_days": 10},
        )
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# /api/tracker
# ---------------------------------------------------------------------------

TRACKER_FORM = {
    "address": ADDRESS,
    "vesting_start_date": "2023-11-14",
    "annual_grant_btc": "0.00001",
    "total_grants": 2,
}


class TestTrackerRoutes:
    def test_track_matches_and_prices_grant(self, api) -> None:
        client, services = api
        resp = client.post("/api/tracker", json=TRACKER_FORM)

        assert resp.status_code == 200
        body = resp.json()
        (tx,) = body["annotated_transactions"]
        assert tx["txid"] == TXID
        assert tx["grant_year"] == 1
        assert tx["type"] == "Annual Grant"
        assert tx["date"] == "2023-11-14"
        # 1000 sats at the mocked 42000.00
        assert Decimal(tx["value_at_time_of_tx"]) == Decimal("0.42")
        assert body["expected_grants"][0]["matched_txid"] == TXID
        assert body["matching_summary"]["matched_grants"] == 1
        assert body["partial_data"] is False
        services.mempool.get_address_txs_payload.assert_awaited_once()

    def test_manual_annotation_unmatches(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/tracker", json={**TRACKER_FORM, "manual_annotations": {TXID: None}}
        )

        assert resp.status_code == 200
        tx = resp.json()["annotated_transactions"][0]
        assert tx["grant_year"] is None
        assert tx["is_manually_annotated"] is True

    def test_invalid_form(self, api) -> None:
        client, services = api
        resp = client.post("/api/tracker", json={**TRACKER_FORM, "address": "xyz"})

        assert resp.status_code == 400
        assert "address" in resp.json()["fields"]
        services.mempool.get_address_txs_payload.assert_not_awaited()

    def test_malformed_manual_annotations(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/tracker", json={**TRACKER_FORM, "manual_annotations": {TXID: "one"}}
        )

        assert resp.status_code == 400
        assert "manual_annotations" in resp.json()["fields"]

    def test_pricing_outage_values_at_yearly_fallback(self, api) -> None:
        client, services = api
        services.coingecko.fetch_price_for_day.side_effect = UpstreamError("boom", 500)

        resp = client.post("/api/tracker", json=TRACKER_FORM)

        assert resp.status_code == 200
        body = resp.json()
        tx = body["annotated_transactions"][0]
        assert tx["amount_btc"] == "0.00001"
        # 1000 sats at the 2023 fallback average of 29234
        assert Decimal(tx["value_at_time_of_tx"]) == Decimal("0.29")
        assert body["partial_data"] is False

    def test_address_history(self, api) -> None:
        client, _ = api
        resp = client.get(f"/api/tracker/address/{ADDRESS}/history")

        assert resp.status_code == 200
        assert resp.json() == {"address": ADDRESS, "has_history": True}

    def test_address_history_unknown_address(self, api) -> None:
        client, services = api
        services.mempool.get_address_txs_payload.side_effect = NotFoundError("missing")

        resp = client.get(f"/api/tracker/address/{ADDRESS}/history")

        assert resp.json()["has_history"] is False

    def test_describe_transaction(self, api) -> None:
        client, _ = api
        resp = client.get(f"/api/tracker/tx/{TXID}", params={"address": ADDRESS})

        assert resp.status_code == 200
        body = resp.json()
        assert body["amount_sats"] == 1000
        assert body["is_incoming"] is True
        assert Decimal(body["value_at_time_of_tx"]) == Decimal("0.42")

    def test_describe_unknown_transaction(self, api) -> None:
        client, services = api
        services.mempool.get_transaction_payload.side_effect = NotFoundError("missing")

        resp = client.get(f"/api/tracker/tx/{TXID}", params={"address": ADDRESS})

        assert resp.status_code == 404
        assert resp.json() == {"error": "Transaction not found"}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealthRoutes:
    def test_health_healthy(self, api) -> None:
        client, _ = api
        body = client.get("/api/health").json()

        assert body["status"] == "healthy"
        assert body["circuit_breakers"]["total_services"] == 2
        assert "coingecko" in body["services"]

    def test_health_degraded_still_200(self, api) -> None:
        client, services = api
        services.breakers.get_breaker("coingecko").force_open()

        resp = client.get("/api/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"
        assert resp.json()["circuit_breakers"]["unhealthy_service_names"] == ["coingecko"]

    def test_breaker_status(self, api) -> None:
        client, _ = api
        body = client.get("/api/health/breakers").json()
        assert set(body) == {"coingecko", "mempool"}
        assert body["mempool"]["state"] == "closed"

    def test_reset_requires_token(self, api) -> None:
        client, _ = api
        resp = client.post("/api/health/breakers/coingecko/reset")

        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_reset_rejects_bad_token(self, api) -> None:
        client, _ = api
        resp = client.post(
            "/api/health/breakers/coingecko/reset", headers={"Authorization": "Bearer junk"}
        )
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid token"}

    def test_reset_with_token(self, api) -> None:
        client, services = api
        breaker = services.breakers.get_breaker("coingecko")
        breaker.force_open()
        token = create_token("ops", services.settings.security)

        resp = client.post(
            "/api/health/breakers/coingecko/reset", headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status_code == 200
        assert resp.json() == {"service": "coingecko", "state": "closed", "reset_by": "ops"}
        assert breaker.status()["is_healthy"] is True

    def test_reset_unknown_service(self, api) -> None:
        client, services = api
        token = create_token("ops", services.settings.security)

        resp = client.post(
            "/api/health/breakers/nope/reset", headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status_code == 404


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_releases_clients(self, mock_settings) -> None:
        services = build_services(mock_settings)
        services.coingecko.close = AsyncMock()
        services.mempool.close = AsyncMock()
        services.rate_limit_store.close = AsyncMock()

        await services.close()

        services.coingecko.close.assert_awaited_once()
        services.mempool.close.assert_awaited_once()
        services.rate_limit_store.close.assert_awaited_once()

    def test_lifespan_runs_maintenance_and_closes(self, mock_settings) -> None:
        services = mock_upstreams(build_services(mock_settings))
        services.coingecko.close = AsyncMock()
        services.mempool.close = AsyncMock()

        with TestClient(create_app(services, lifespan=lifespan)) as client:
            assert client.get("/api/health").status_code == 200

        services.coingecko.close.assert_awaited_once()
        services.mempool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_maintenance_loop_resets_stale_breakers(self, mock_settings) -> None:
        services = build_services(mock_settings)
        services.breakers.reset_stale = MagicMock(return_value=["coingecko"])
        sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])

        with patch("btc_benefit.services.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await services.run_maintenance(60)

        services.breakers.reset_stale.assert_called_once_with(300.0)
        sleep.assert_awaited_with(60)

    @pytest.mark.asyncio
    async def test_maintenance_purges_expired_rate_limit_windows(self, mock_settings) -> None:
        services = build_services(mock_settings)
        store = services.rate_limit_store
        for day in ("2024-01-01", "2024-01-02", "2024-01-03"):
            await store.increment(f"api:1.1.1.1:/api/prices/{day}", 0)
        await store.increment("api:1.1.1.1:/api/schemes", 3600)

        services.run_maintenance_once()

        assert store.purge_expired() == 0
        assert await store.get("api:1.1.1.1:/api/schemes") is not None
        assert await store.get("api:1.1.1.1:/api/prices/2024-01-01") is None

    @pytest.mark.asyncio
    async def test_close_aborts_in_flight_price_batch(self, mock_settings) -> None:
        services = build_services(mock_settings)
        started = asyncio.Event()

        async def slow_price(day):
            started.set()
            await asyncio.sleep(3600)

        services.coingecko.fetch_price_for_day = AsyncMock(side_effect=slow_price)
        services.coingecko.close = AsyncMock()
        services.mempool.close = AsyncMock()

        waiter = asyncio.create_task(services.price_fetcher.fetch_price_for_date("2024-01-01"))
        await asyncio.wait_for(started.wait(), timeout=1)

        await services.close()

        with pytest.raises(RequestAborted):
            await waiter
        assert services.coingecko.fetch_price_for_day.await_count == 1
        assert services.breakers.get_breaker("coingecko").status()["failure_count"] == 0
        services.coingecko.close.assert_awaited_once()
