"""Health and circuit breaker operator endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from btc_benefit.api.responses import error_response
from btc_benefit.exceptions import AuthenticationError
from btc_benefit.security.tokens import verify_token

router = APIRouter()


async def require_bearer_token(
    request: Request, authorization: str | None = Header(default=None)
) -> dict:
    """Validate the Authorization: Bearer <jwt> header; returns the token claims."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Authorization required")
    token = authorization.split(" ", 1)[1].strip()
    return verify_token(token, request.app.state.services.settings.security)


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Breaker health summary. Always 200 so load balancers keep routing."""
    summary = request.app.state.services.breakers.health_summary()
    return JSONResponse(
        content={
            "status": "healthy" if summary["overall_healthy"] else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "circuit_breakers": summary,
            "services": {
                "mempool": "proxy available at /api/mempool/address/{address}/txs",
                "coingecko": "proxy available at /api/coingecko",
            },
        }
    )


@router.get("/health/breakers")
async def breaker_status(request: Request) -> JSONResponse:
    return JSONResponse(content=request.app.state.services.breakers.all_status())


@router.post("/health/breakers/{service}/reset")
async def reset_breaker(
    service: str, request: Request, claims: dict = Depends(require_bearer_token)
) -> JSONResponse:
    if not request.app.state.services.breakers.reset(service):
        return error_response(f"Unknown service: {service}", 404)
    return JSONResponse(content={"service": service, "state": "closed", "reset_by": claims["sub"]})
