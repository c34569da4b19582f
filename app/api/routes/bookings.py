"""
Booking API Endpoints.

The agent-facing booking surface: the action-routed booking manager,
availability search, the agent's upcoming bookings from the ledger, and
the cached service and staff catalogs.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from app.api.middleware.tenant import get_request_context
from app.api.responses import success_response
from app.core.booking import (
    get_availability_engine,
    get_booking_manager,
    parse_availability_request,
)
from app.core.errors import AppError
from app.core.square import get_catalog_cache, get_staff_cache
from app.core.tenant import RequestContext
from app.infra.ledger import get_booking_ledger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Bookings"])

BOOKING_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


async def read_json_body(request: Request) -> dict[str, Any]:
    """Request body as a dict. Empty bodies read as {}."""
    raw = await request.body()
    if not raw or not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise AppError(
            "VALIDATION_INVALID_FORMAT",
            message="Request body must be valid JSON",
            correlation_id=getattr(request.state, "correlation_id", None),
        ) from e
    return body if isinstance(body, dict) else {}


async def _handle_booking(request: Request, ctx: RequestContext, action: Optional[str]) -> JSONResponse:
    body = await read_json_body(request)
    result = await get_booking_manager().handle(
        ctx,
        request.method,
        url_action=action,
        query=dict(request.query_params),
        body=body,
    )
    return JSONResponse(status_code=result["statusCode"], content=result)


@router.api_route("/booking", methods=BOOKING_METHODS, summary="Booking manager")
async def booking(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """
    Booking operations routed by body `action` or HTTP verb.

    POST creates, GET retrieves, PUT/PATCH updates, DELETE cancels.
    """
    return await _handle_booking(request, ctx, None)


@router.api_route("/booking/{action}", methods=BOOKING_METHODS, summary="Booking manager with action or id")
async def booking_action(
    action: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """`{action}` is create/update/cancel/delete/get/list, or a booking id."""
    return await _handle_booking(request, ctx, action)


@router.api_route("/availability", methods=["GET", "POST"], summary="Search availability")
async def availability(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """
    Staff-coherent slots for one or more services over the next `daysAhead` days.

    Parameters may come from the query string or a JSON body. The body
    wins on conflicts.
    """
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        params.update(await read_json_body(request))

    availability_request = parse_availability_request(params)
    data = await get_availability_engine().availability_for_request(ctx, availability_request)
    return success_response(data, "Availability retrieved successfully", ctx.correlation_id)


@router.get("/bookings/upcoming", summary="Upcoming bookings for the calling agent")
async def upcoming_bookings(
    limit: int = Query(default=10, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Ledger rows for this agent starting no earlier than an hour ago."""
    bookings = await get_booking_ledger().list_upcoming(ctx.tenant.owner_id, limit=limit)
    return success_response(
        {"bookings": bookings, "agentId": ctx.tenant.owner_id},
        "Upcoming bookings retrieved successfully",
        ctx.correlation_id,
    )


@router.get("/services", summary="Bookable services")
async def services(ctx: RequestContext = Depends(get_request_context)) -> JSONResponse:
    data = await get_catalog_cache().load(ctx.tenant, correlation_id=ctx.correlation_id)
    return success_response(data, "Services retrieved successfully", ctx.correlation_id)


@router.get("/staff", summary="Active staff members")
async def staff(ctx: RequestContext = Depends(get_request_context)) -> JSONResponse:
    data = await get_staff_cache().load(ctx.tenant, correlation_id=ctx.correlation_id)
    return success_response(data, "Staff members retrieved successfully", ctx.correlation_id)
