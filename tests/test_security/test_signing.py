"""Tests for HMAC request signing."""

import pytest

from btc_benefit.config import SecuritySettings
from btc_benefit.exceptions import AuthenticationError, ConfigurationError
from btc_benefit.security.signing import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    RequestSigner,
    sign_request,
)
from conftest import FakeClock

URL = "http://testserver/api/coingecko?from=1&to=2"


@pytest.fixture
def settings() -> SecuritySettings:
    return SecuritySettings(
        request_signature_secret="s3cret",  # type: ignore[arg-type]
        signature_max_age_seconds=300,
    )


@pytest.fixture
def signer(settings: SecuritySettings, clock: FakeClock) -> RequestSigner:
    return RequestSigner(settings, clock=clock)


class TestSignRequest:
    def test_deterministic_hex_digest(self) -> None:
        first = sign_request("GET", URL, "", "1000", "s3cret")
        assert first == sign_request("GET", URL, "", "1000", "s3cret")
        assert len(first) == 64
        int(first, 16)

    @pytest.mark.parametrize(
        "args",
        [
            ("POST", URL, "", "1000", "s3cret"),
            ("GET", URL + "&x=1", "", "1000", "s3cret"),
            ("GET", URL, "{}", "1000", "s3cret"),
            ("GET", URL, "", "1001", "s3cret"),
            ("GET", URL, "", "1000", "other"),
        ],
    )
    def test_every_component_is_covered(self, args: tuple) -> None:
        assert sign_request(*args) != sign_request("GET", URL, "", "1000", "s3cret")


class TestRequestSigner:
    def test_sign_then_verify(self, signer: RequestSigner) -> None:
        headers = signer.sign("get", URL, '{"a": 1}')

        signer.verify("GET", URL, '{"a": 1}', headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER])

        assert headers[TIMESTAMP_HEADER] == str(signer.now_ms())

    @pytest.mark.parametrize("signature, timestamp", [(None, "1"), ("abc", None), ("", "")])
    def test_missing_headers(self, signer: RequestSigner, signature, timestamp) -> None:
        with pytest.raises(AuthenticationError, match="Request signature required"):
            signer.verify("GET", URL, "", signature, timestamp)

    def test_non_numeric_timestamp(self, signer: RequestSigner) -> None:
        with pytest.raises(AuthenticationError, match="Invalid request timestamp"):
            signer.verify("GET", URL, "", "abc", "yesterday")

    def test_stale_timestamp(self, signer: RequestSigner, clock: FakeClock) -> None:
        headers = signer.sign("GET", URL)
        clock.advance(301)

        with pytest.raises(AuthenticationError, match="too old"):
            signer.verify("GET", URL, "", headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER])

    def test_future_timestamp_rejected(self, signer: RequestSigner) -> None:
        future = str(signer.now_ms() + 301_000)
        headers = signer.sign("GET", URL, timestamp=future)

        with pytest.raises(AuthenticationError, match="too old"):
            signer.verify("GET", URL, "", headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER])

    def test_tampered_body(self, signer: RequestSigner) -> None:
        headers = signer.sign("POST", URL, '{"amount": 1}')

        with pytest.raises(AuthenticationError, match="Invalid request signature"):
            signer.verify(
                "POST", URL, '{"amount": 100}', headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER]
            )

    def test_missing_secret(self, clock: FakeClock) -> None:
        signer = RequestSigner(SecuritySettings(), clock=clock)
        with pytest.raises(ConfigurationError):
            signer.sign("GET", URL)
