"""HMAC request signing for the internal API gateway.

A signed request carries two headers:
  x-signature: hex HMAC-SHA256 of "METHOD|url|body|timestamp"
  x-timestamp: milliseconds since the epoch

Requests whose timestamp is more than signature_max_age_seconds away from
the server clock (in either direction) are rejected as replays.
"""

import hashlib
import hmac
import time
from collections.abc import Callable

from btc_benefit.config import SecuritySettings
from btc_benefit.exceptions import AuthenticationError, ConfigurationError

SIGNATURE_HEADER = "x-signature"
TIMESTAMP_HEADER = "x-timestamp"


def sign_request(method: str, url: str, body: str, timestamp: str, secret: str) -> str:
    """Hex HMAC-SHA256 signature of a request."""
    message = f"{method}|{url}|{body}|{timestamp}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class RequestSigner:
    """Signs and verifies requests with the shared gateway secret.

    Args:
        settings: Secret and maximum signature age.
        clock: Wall-clock seconds source; injectable for tests.
    """

    def __init__(
        self,
        settings: SecuritySettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._clock = clock

    def _secret(self) -> str:
        secret = self._settings.request_signature_secret.get_secret_value()
        if not secret:
            raise ConfigurationError(
                "SECURITY_REQUEST_SIGNATURE_SECRET environment variable is required"
            )
        return secret

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def sign(self, method: str, url: str, body: str = "", timestamp: str | None = None) -> dict[str, str]:
        """Headers that make a request pass verify()."""
        timestamp = timestamp or str(self.now_ms())
        return {
            SIGNATURE_HEADER: sign_request(method.upper(), url, body, timestamp, self._secret()),
            TIMESTAMP_HEADER: timestamp,
        }

    def verify(
        self,
        method: str,
        url: str,
        body: str,
        signature: str | None,
        timestamp: str | None,
    ) -> None:
        """Check a request signature.

        Raises:
            AuthenticationError: missing headers, stale timestamp, or mismatch.
            ConfigurationError: no signing secret configured.
        """
        if not signature or not timestamp:
            raise AuthenticationError("Request signature required")

        try:
            sent_ms = int(timestamp)
        except ValueError:
            raise AuthenticationError("Invalid request timestamp") from None

        max_age_ms = self._settings.signature_max_age_seconds * 1000
        if abs(self.now_ms() - sent_ms) > max_age_ms:
            raise AuthenticationError("Request timestamp too old")

        expected = sign_request(method.upper(), url, body, timestamp, self._secret())
        if not hmac.compare_digest(signature, expected):
            raise AuthenticationError("Invalid request signature")
