"""HTTP middleware: per-client rate limiting and optional request signatures."""

from collections.abc import Awaitable, Callable

from fastapi import Request, Response

from btc_benefit.api.responses import error_response
from btc_benefit.exceptions import AuthenticationError, ConfigurationError
from btc_benefit.logging import get_logger, request_context
from btc_benefit.resilience.rate_limiter import client_key
from btc_benefit.security.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER

logger = get_logger(__name__)

EXEMPT_PATHS = frozenset({"/api/health"})
MEMPOOL_SCOPED_PREFIXES = ("/api/mempool", "/api/tracker")

CallNext = Callable[[Request], Awaitable[Response]]


async def rate_limit_middleware(request: Request, call_next: CallNext) -> Response:
    """Count the request against the caller's quota and attach RateLimit headers.

    Mempool proxy and address tracker routes share their own, smaller quota. Limiter failures
    let the request through (the limiter fails open).
    """
    path = request.url.path
    if not path.startswith("/api") or path in EXEMPT_PATHS:
        return await call_next(request)

    services = request.app.state.services
    if path.startswith(MEMPOOL_SCOPED_PREFIXES):
        scope, limiter = "mempool", services.mempool_limiter
    else:
        scope, limiter = "api", services.default_limiter

    peer = request.client.host if request.client else None
    key = f"{scope}:{client_key(request.headers, path, peer)}"
    with request_context(scope=scope, client=key, path=path):
        result = await limiter.check(key)

        if not result.allowed:
            logger.info("rate_limit_exceeded", hits=result.total_hits)
            return error_response(
                result.error or "Too many requests",
                429,
                headers={**result.headers, "Retry-After": str(int(limiter.window_seconds))},
            )

        response = await call_next(request)
    response.headers.update(result.headers)
    return response


async def signature_middleware(request: Request, call_next: CallNext) -> Response:
    """Reject unsigned or badly signed /api requests when signatures are required."""
    services = request.app.state.services
    path = request.url.path
    if (
        not services.settings.security.require_signature
        or not path.startswith("/api")
        or path in EXEMPT_PATHS
    ):
        return await call_next(request)

    body = (await request.body()).decode("utf-8", errors="replace")
    try:
        services.signer.verify(
            request.method,
            str(request.url),
            body,
            request.headers.get(SIGNATURE_HEADER),
            request.headers.get(TIMESTAMP_HEADER),
        )
    except AuthenticationError as e:
        logger.warning("request_signature_rejected", path=path, reason=str(e))
        return error_response(str(e), 401)
    except ConfigurationError as e:
        logger.error("request_signing_not_configured", error=str(e))
        return error_response("Request signing is not configured", 500)

    return await call_next(request)
