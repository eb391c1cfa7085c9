"""Bearer tokens for the internal API gateway (HS256 JWTs)."""

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from btc_benefit.config import SecuritySettings
from btc_benefit.exceptions import AuthenticationError, ConfigurationError
from btc_benefit.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"
CLOCK_SKEW_SECONDS = 30


def _secret(settings: SecuritySettings) -> str:
    secret = settings.jwt_secret.get_secret_value()
    if not secret:
        raise ConfigurationError("SECURITY_JWT_SECRET environment variable is required")
    return secret


def create_token(
    subject: str,
    settings: SecuritySettings,
    now: datetime | None = None,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Issue a token valid for jwt_max_age_seconds."""
    now = now or datetime.now(timezone.utc)
    payload = {
        **(extra_claims or {}),
        "sub": subject,
        "iat": now,
        "exp": now + timedelta(seconds=settings.jwt_max_age_seconds),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
    }
    return jwt.encode(payload, _secret(settings), algorithm=ALGORITHM)


def verify_token(token: str, settings: SecuritySettings) -> dict[str, Any]:
    """Decode and validate a token; returns its claims.

    Besides signature, issuer, audience, and expiry, the token must carry
    `sub` and `iat`, and must not be older than jwt_max_age_seconds even if
    its `exp` claims otherwise.

    Raises:
        AuthenticationError: any validation failure.
        ConfigurationError: no JWT secret configured.
    """
    secret = _secret(settings)
    if not token or not token.strip():
        raise AuthenticationError("Invalid token")

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway=CLOCK_SKEW_SECONDS,
            options={"require": ["sub", "iat", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired") from None
    except jwt.PyJWTError as e:
        logger.warning("jwt_validation_failed", error=str(e))
        raise AuthenticationError("Invalid token") from None

    issued_at = datetime.fromtimestamp(claims["iat"], tz=timezone.utc)
    age = datetime.now(timezone.utc) - issued_at
    if age > timedelta(seconds=settings.jwt_max_age_seconds + CLOCK_SKEW_SECONDS):
        raise AuthenticationError("Token expired")
    return claims
