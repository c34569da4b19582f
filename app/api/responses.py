"""
Response envelope helpers shared by the API routes.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import status
from fastapi.responses import JSONResponse

from app.core.square.normalizers import clean_big_int, to_iso


def success_body(
    data: Any,
    message: str = "Success",
    correlation_id: Optional[str] = None,
) -> dict[str, Any]:
    """`{success, message, data, timestamp, correlationId}` with big integers as strings."""
    body: dict[str, Any] = {
        "success": True,
        "message": message,
        "data": clean_big_int(data),
        "timestamp": to_iso(datetime.now(timezone.utc)),
    }
    if correlation_id:
        body["correlationId"] = correlation_id
    return body


def success_response(
    data: Any,
    message: str = "Success",
    correlation_id: Optional[str] = None,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=success_body(data, message, correlation_id),
    )
