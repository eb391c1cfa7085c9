"""JSON response helpers shared by all routes."""

from dataclasses import asdict, is_dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi.responses import JSONResponse


def decimal_to_str(obj: Any) -> Any:
    """Recursively convert Decimal values (and dates) to strings for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if is_dataclass(obj) and not isinstance(obj, type):
        return decimal_to_str(asdict(obj))
    if isinstance(obj, dict):
        return {str(k): decimal_to_str(v) for k, v in obj.items()}
    if isinstance(obj, list | tuple):
        return [decimal_to_str(item) for item in obj]
    return obj


def error_response(
    message: str, status_code: int, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(content={"error": message}, status_code=status_code, headers=headers)


def cached_response(content: Any, max_age: int, headers: dict[str, str] | None = None) -> JSONResponse:
    """200 response with a public Cache-Control header."""
    return JSONResponse(
        content=content,
        headers={"Cache-Control": f"public, max-age={max_age}", **(headers or {})},
    )
