"""
Booking Manager

Single entry point behind /api/booking. Resolves which operation a request
means (URL action, body action, or HTTP verb), finds the booking id in any
of its accepted locations, and wraps the orchestrator result in the
booking envelope.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.booking.orchestrator import BookingOrchestrator, get_booking_orchestrator
from app.core.booking.validation import normalize_update_input, strip_agent_meta
from app.core.errors import AppError
from app.core.square.normalizers import clean_big_int, to_iso
from app.core.tenant import RequestContext

logger = logging.getLogger(__name__)

VALID_ACTIONS = ("create", "update", "cancel", "delete", "get", "list")

METHOD_ACTIONS = {
    "POST": "create",
    "GET": "get",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "cancel",
}

# URL tails longer than this that are not actions are booking ids
BOOKING_ID_MIN_LENGTH = 10

SUCCESS_MESSAGES = {
    "create": "Booking created successfully",
    "update": "Booking updated successfully",
    "cancel": "Booking cancelled successfully",
    "get": "Booking retrieved successfully",
    "list": "Bookings listed successfully",
}


def _invalid_action(action: Any, correlation_id: Optional[str] = None) -> AppError:
    return AppError(
        "VALIDATION_INVALID_ACTION",
        message=f"Invalid action: {action}. Valid actions: create, update, cancel, get, list",
        details={"action": action, "validActions": list(VALID_ACTIONS)},
        correlation_id=correlation_id,
    )


def resolve_action(
    method: str,
    url_action: Optional[str] = None,
    body: Optional[dict] = None,
    correlation_id: Optional[str] = None,
) -> tuple[str, Optional[str]]:
    """Decide the operation for a booking request.

    Precedence: a known URL action, then a known body `action`, then a URL
    token longer than 10 characters (taken as the booking id, with the
    operation from the HTTP verb), then the verb alone.

    Returns:
        (action, path_booking_id). `delete` is folded into `cancel`.
    """
    method = (method or "").upper()
    token = (url_action or "").strip() or None
    body_action = body.get("action") if isinstance(body, dict) else None

    path_booking_id = None
    if token and token.lower() not in VALID_ACTIONS and len(token) > BOOKING_ID_MIN_LENGTH:
        path_booking_id = token

    if token and token.lower() in VALID_ACTIONS:
        action = token.lower()
    elif isinstance(body_action, str) and body_action.lower() in VALID_ACTIONS:
        action = body_action.lower()
    elif token and not path_booking_id:
        raise _invalid_action(token, correlation_id)
    else:
        action = METHOD_ACTIONS.get(method)
        if action is None:
            if path_booking_id:
                raise AppError(
                    "VALIDATION_INVALID_ACTION",
                    message=f"Unsupported method {method} for booking ID",
                    details={"method": method, "bookingId": path_booking_id},
                    correlation_id=correlation_id,
                )
            raise _invalid_action(method, correlation_id)

    if action == "delete":
        action = "cancel"
    return action, path_booking_id


def extract_booking_id(
    query: Optional[dict],
    path_booking_id: Optional[str] = None,
    body: Optional[dict] = None,
) -> Optional[str]:
    """Booking id from query, path, body `bookingId`, then body `booking_id`."""
    query = query or {}
    body = body if isinstance(body, dict) else {}
    args = body.get("args") if isinstance(body.get("args"), dict) else {}
    for candidate in (
        query.get("bookingId"),
        path_booking_id,
        body.get("bookingId"),
        body.get("booking_id"),
        args.get("bookingId"),
    ):
        if candidate:
            return str(candidate).strip()
    return None


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class BookingManager:
    """Routes booking requests to the orchestrator and builds the response body."""

    def __init__(self, orchestrator: Optional[BookingOrchestrator] = None):
        self._orchestrator = orchestrator

    @property
    def orchestrator(self) -> BookingOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = get_booking_orchestrator()
        return self._orchestrator

    async def handle(
        self,
        ctx: RequestContext,
        method: str,
        url_action: Optional[str] = None,
        query: Optional[dict] = None,
        body: Optional[dict] = None,
    ) -> dict:
        """Run one booking request. Returns the envelope including `statusCode`."""
        query = query or {}
        body = body if isinstance(body, dict) else {}

        action, path_booking_id = resolve_action(
            method, url_action, body, correlation_id=ctx.correlation_id
        )
        booking_id = extract_booking_id(query, path_booking_id, body)
        ctx.event("booking_request", action=action, method=method, booking_id=booking_id)

        status_code = 200
        if action == "create":
            payload = body.get("args") if isinstance(body.get("args"), dict) else body
            data = await self.orchestrator.create(ctx, strip_agent_meta(payload))
            status_code = 201
        elif action == "update":
            update = normalize_update_input(booking_id, body, correlation_id=ctx.correlation_id)
            data = await self.orchestrator.update(ctx, update)
        elif action == "cancel":
            data = await self.orchestrator.cancel(ctx, booking_id)
        elif action == "get":
            data = await self.orchestrator.get(ctx, booking_id)
        else:
            filters = {**query, **body}
            data = await self.orchestrator.list_bookings(
                ctx,
                location_id=filters.get("locationId"),
                customer_id=filters.get("customerId"),
                team_member_id=filters.get("teamMemberId"),
                start_at_min=filters.get("startAtMin"),
                start_at_max=filters.get("startAtMax"),
                cursor=filters.get("cursor"),
                limit=_int_or_none(filters.get("limit")),
            )

        return {
            "success": True,
            "message": SUCCESS_MESSAGES[action],
            "data": clean_big_int(data),
            "timestamp": to_iso(datetime.now(timezone.utc)),
            "statusCode": status_code,
            "correlationId": ctx.correlation_id,
        }


# Singleton instance
_manager: Optional[BookingManager] = None


def get_booking_manager() -> BookingManager:
    """Get singleton booking manager."""
    global _manager
    if _manager is None:
        _manager = BookingManager()
    return _manager
