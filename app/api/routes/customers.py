"""
Customer API Endpoints.

Caller lookup for agents at the start of a conversation, sparse customer
updates, and find-or-create.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.api.middleware.tenant import get_request_context
from app.api.responses import success_response
from app.api.routes.bookings import read_json_body
from app.core.booking import get_booking_orchestrator, get_customer_resolver
from app.core.booking.orchestrator import ACTIVE_STATUSES
from app.core.errors import AppError
from app.core.square.normalizers import (
    format_local_time,
    parse_iso,
    relative_timeframe,
    to_iso,
)
from app.core.tenant import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Customers"])

MAX_UPCOMING = 10


def _caller_phone(body: dict) -> Optional[str]:
    for key in ("phoneNumber", "phone", "callerId", "caller_id", "from"):
        value = body.get(key)
        if value:
            return str(value)
    return None


def format_upcoming_booking(booking: dict, tz_name: str, now: datetime) -> dict[str, Any]:
    """Agent-friendly summary of one upcoming booking."""
    segments = booking.get("appointmentSegments") or []
    first = segments[0] if segments else {}
    return {
        "bookingId": booking.get("id"),
        "status": booking.get("status"),
        "startAt": booking.get("startAt"),
        "readableTime": format_local_time(booking.get("startAt"), tz_name),
        "relativeTimeframe": relative_timeframe(booking.get("startAt"), now),
        "serviceVariationId": first.get("serviceVariationId"),
        "teamMemberId": first.get("teamMemberId"),
        "locationId": booking.get("locationId"),
        "version": booking.get("version"),
    }


async def _upcoming_for_customer(ctx: RequestContext, customer_id: str) -> list[dict]:
    now = datetime.now(timezone.utc)
    try:
        result = await get_booking_orchestrator().list_bookings(
            ctx,
            customer_id=customer_id,
            start_at_min=to_iso(now),
        )
    except AppError as e:
        ctx.warn(f"Upcoming bookings lookup failed for customer {customer_id}: {e.message}")
        return []

    active = [
        b for b in result["bookings"]
        if b.get("status") in ACTIVE_STATUSES and parse_iso(b.get("startAt"))
    ]
    active.sort(key=lambda b: parse_iso(b["startAt"]))
    return [format_upcoming_booking(b, ctx.tenant.timezone, now) for b in active[:MAX_UPCOMING]]


@router.post("/customer/info", summary="Look up the caller by phone")
async def customer_info(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """
    Sanitized customer (or null) plus their upcoming active bookings.

    Unknown callers are not an error: `customer` is null and
    `isReturningCustomer` false.
    """
    body = await read_json_body(request)
    phone = _caller_phone(body)
    if not phone:
        raise AppError(
            "VALIDATION_MISSING_FIELD",
            message="phoneNumber is required",
            details={"field": "phoneNumber"},
            correlation_id=ctx.correlation_id,
        )

    customer = await get_customer_resolver().search_by_phone(ctx, phone)
    upcoming = await _upcoming_for_customer(ctx, customer["id"]) if customer else []

    return success_response(
        {
            "customer": customer,
            "isReturningCustomer": customer is not None,
            "upcomingBookings": upcoming,
        },
        "Customer information retrieved successfully",
        ctx.correlation_id,
    )


@router.put("/customer/info", summary="Update customer information")
async def update_customer_info(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    body = await read_json_body(request)
    if isinstance(body.get("args"), dict):
        body = body["args"]

    customer_id = body.get("customerId") or request.query_params.get("customerId")
    customer = await get_customer_resolver().update_customer(ctx, customer_id, body)
    return success_response(
        {"customer": customer},
        "Customer information updated successfully",
        ctx.correlation_id,
    )


@router.post("/customers", summary="Find or create a customer")
async def find_or_create_customer(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    body = await read_json_body(request)
    customer = await get_customer_resolver().find_or_create(
        ctx,
        phone_number=body.get("phoneNumber"),
        given_name=body.get("firstName") or body.get("givenName"),
        family_name=body.get("lastName") or body.get("familyName"),
        email=body.get("email") or body.get("emailAddress"),
    )
    return success_response(
        {"customer": customer},
        "Customer resolved successfully",
        ctx.correlation_id,
        status_code=status.HTTP_200_OK,
    )
