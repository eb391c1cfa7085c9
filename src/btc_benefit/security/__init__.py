"""Request signing and bearer tokens for the internal API gateway."""

from btc_benefit.security.signing import RequestSigner, sign_request
from btc_benefit.security.tokens import create_token, verify_token

__all__ = ["RequestSigner", "create_token", "sign_request", "verify_token"]
