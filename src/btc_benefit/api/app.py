"""FastAPI application factory for the price and on-chain proxy API."""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from btc_benefit.api.middleware import rate_limit_middleware, signature_middleware
from btc_benefit.api.responses import error_response
from btc_benefit.api.routes import calculator, coingecko, health, mempool, prices, tracker
from btc_benefit.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    MissingPriceDataError,
    PriceUnavailableError,
    RequestAborted,
    UpstreamError,
    ValidationError,
)
from btc_benefit.logging import get_logger
from btc_benefit.services import BenefitServices

logger = get_logger(__name__)


async def _validation_error(request: Request, exc: Exception) -> JSONResponse:
    return error_response(str(exc), 400)


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return error_response(f"{field}: {message}" if field else message, 400)


async def _missing_price_data(request: Request, exc: Exception) -> JSONResponse:
    return error_response(str(exc), 422)


async def _authentication_error(request: Request, exc: Exception) -> JSONResponse:
    return error_response(str(exc), 401, headers={"WWW-Authenticate": "Bearer"})


async def _circuit_open(request: Request, exc: CircuitOpenError) -> JSONResponse:
    return error_response(
        str(exc), 503, headers={"Retry-After": str(max(1, int(exc.retry_after)))}
    )


async def _upstream_error(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("upstream_error", path=request.url.path, error=str(exc))
    return error_response(str(exc), 502)


async def _aborted(request: Request, exc: Exception) -> JSONResponse:
    return error_response(str(exc), 503)


async def _configuration_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("configuration_error", path=request.url.path, error=str(exc))
    return error_response("Server is not configured for this operation", 500)


def create_app(services: BenefitServices, lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Collaborators shared by every request (stored on app.state).
        lifespan: Optional async context manager for startup/shutdown.
                  Used by main.py to close HTTP sessions on shutdown.

    Returns:
        Configured FastAPI application with middleware, error handlers, and routes.
    """
    app = FastAPI(title="Bitcoin Benefit API", lifespan=lifespan)
    app.state.services = services

    # Registered innermost first: signatures are checked after rate limiting
    app.middleware("http")(signature_middleware)
    app.middleware("http")(rate_limit_middleware)

    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(MissingPriceDataError, _missing_price_data)
    app.add_exception_handler(AuthenticationError, _authentication_error)
    app.add_exception_handler(CircuitOpenError, _circuit_open)
    app.add_exception_handler(PriceUnavailableError, _upstream_error)
    app.add_exception_handler(UpstreamError, _upstream_error)
    app.add_exception_handler(RequestAborted, _aborted)
    app.add_exception_handler(ConfigurationError, _configuration_error)

    app.include_router(coingecko.router, prefix="/api")
    app.include_router(mempool.router, prefix="/api")
    app.include_router(prices.router, prefix="/api")
    app.include_router(calculator.router, prefix="/api")
    app.include_router(tracker.router, prefix="/api")
    app.include_router(health.router, prefix="/api")

    return app
