"""Address tracker endpoints: grant payment matching for one address."""

from typing import Any

from fastapi import APIRouter, Body, Query, Request
from fastapi.responses import JSONResponse

from btc_benefit.api.responses import decimal_to_str, error_response
from btc_benefit.exceptions import NotFoundError
from btc_benefit.logging import get_logger
from btc_benefit.onchain.tracker import TrackerFormError

logger = get_logger(__name__)

router = APIRouter()


def _manual_annotations(raw: Any) -> dict[str, int | None]:
    if raw is None:
        return {}
    if not isinstance(raw, dict) or not all(
        isinstance(k, str) and (v is None or (isinstance(v, int) and not isinstance(v, bool)))
        for k, v in raw.items()
    ):
        raise TrackerFormError(
            {"manual_annotations": "Must map transaction ids to a grant year or null"}
        )
    return raw


@router.post("/tracker")
async def track_address(request: Request, payload: dict[str, Any] = Body(...)) -> JSONResponse:
    """Annotate an address's incoming payments against its expected grants.

    The body holds the tracker form fields plus an optional
    manual_annotations map of txid to grant year.
    """
    services = request.app.state.services
    try:
        manual = _manual_annotations(payload.get("manual_annotations"))
        result = await services.tracker.track(payload, manual=manual)
    except TrackerFormError as e:
        logger.info("tracker_form_rejected", fields=sorted(e.errors))
        return JSONResponse(content={"error": str(e), "fields": e.errors}, status_code=400)
    return JSONResponse(content=decimal_to_str(result))


@router.get("/tracker/address/{address}/history")
async def address_history(address: str, request: Request) -> JSONResponse:
    services = request.app.state.services
    has_history = await services.tracker.has_history(address)
    return JSONResponse(content={"address": address, "has_history": has_history})


@router.get("/tracker/tx/{txid}")
async def describe_transaction(
    txid: str, request: Request, address: str = Query(...)
) -> JSONResponse:
    services = request.app.state.services
    try:
        tx = await services.tracker.describe_transaction(txid, address)
    except NotFoundError:
        return error_response("Transaction not found", 404)
    return JSONResponse(content=decimal_to_str(tx))
