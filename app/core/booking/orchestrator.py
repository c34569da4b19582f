"""
Booking Orchestrator

Runs the create / update / cancel pipelines against Square for one tenant:

    validate -> slot pre-check -> customer resolve -> conflict pre-check
             -> create_booking (circuit-protected) -> ledger upsert

Pre-checks are advisory. When Square cannot answer them the pipeline
proceeds and the mutation itself is the source of truth.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Optional

from app.core.booking.availability import AvailabilityEngine, get_availability_engine
from app.core.booking.base import SquareService
from app.core.booking.customers import CustomerResolver, get_customer_resolver
from app.core.booking.validation import (
    BookingCreate,
    BookingUpdate,
    validate_booking_data,
)
from app.core.errors import AppError, from_square_error
from app.core.square.circuit_breaker import CircuitBreaker
from app.core.square.client import SquareApiError
from app.core.square.factory import ClientFactory
from app.core.square.normalizers import clean_big_int, format_local_time, parse_iso, to_iso
from app.core.tenant import RequestContext
from app.infra.ledger import AgentBookingLedger, get_booking_ledger

logger = logging.getLogger(__name__)

# Pre-check windows
SLOT_WINDOW = timedelta(minutes=30)
SLOT_MATCH_TOLERANCE = timedelta(minutes=1)
MAX_SUGGESTED_SLOTS = 10

CONFLICT_WINDOW = timedelta(minutes=30)
CONFLICT_TOLERANCE = timedelta(minutes=15)
CONFLICT_LIST_LIMIT = 20
CONFLICT_CHECK_TIMEOUT = 1.5

ACTIVE_STATUSES = ("ACCEPTED", "PENDING")


def _booking_id(booking: Optional[dict]) -> Optional[str]:
    return (booking or {}).get("id")


class BookingOrchestrator(SquareService):
    """Create, update, cancel and read bookings for the request's tenant."""

    def __init__(
        self,
        factory: Optional[ClientFactory] = None,
        breaker: Optional[CircuitBreaker] = None,
        availability: Optional[AvailabilityEngine] = None,
        customers: Optional[CustomerResolver] = None,
        ledger: Optional[AgentBookingLedger] = None,
    ):
        super().__init__(factory=factory, breaker=breaker)
        self._availability = availability
        self._customers = customers
        self._ledger = ledger
        self._inflight: set[asyncio.Future] = set()

    @property
    def availability(self) -> AvailabilityEngine:
        if self._availability is None:
            self._availability = get_availability_engine()
        return self._availability

    @property
    def customers(self) -> CustomerResolver:
        if self._customers is None:
            self._customers = get_customer_resolver()
        return self._customers

    @property
    def ledger(self) -> AgentBookingLedger:
        if self._ledger is None:
            self._ledger = get_booking_ledger()
        return self._ledger

    # =========================================================================
    # Pre-checks
    # =========================================================================

    async def check_slot_available(self, ctx: RequestContext, request: BookingCreate) -> None:
        """Raise BOOKING_SLOT_UNAVAILABLE unless Square still offers `start_at`.

        Availability is queried over +/- 30 minutes with the same segment
        filters. A returned slot within one minute of the requested start
        counts as the same slot.
        """
        requested = parse_iso(request.start_at)
        filters = [
            {
                "serviceVariationId": segment["serviceVariationId"],
                "teamMemberIdFilter": {"any": [segment["teamMemberId"]]},
            }
            for segment in request.appointment_segments
        ]

        try:
            availabilities = await self.availability.search_raw(
                ctx,
                filters,
                to_iso(requested - SLOT_WINDOW),
                to_iso(requested + SLOT_WINDOW),
                ttl=0,
            )
        except (SquareApiError, AppError) as e:
            ctx.warn(f"Slot pre-check skipped, availability lookup failed: {e}")
            return

        for availability in availabilities:
            candidate = parse_iso(availability.get("startAt"))
            if candidate and abs(candidate - requested) <= SLOT_MATCH_TOLERANCE:
                ctx.event("slot_available", start_at=request.start_at)
                return

        suggestions = [
            {
                "startAt": a.get("startAt"),
                "readableTime": format_local_time(a.get("startAt"), ctx.tenant.timezone),
            }
            for a in availabilities[:MAX_SUGGESTED_SLOTS]
        ]
        ctx.event("slot_unavailable", start_at=request.start_at, alternatives=len(suggestions))
        raise AppError(
            "BOOKING_SLOT_UNAVAILABLE",
            message="The requested time slot is no longer available",
            details={"requestedStartAt": request.start_at, "availableSlots": suggestions},
            correlation_id=ctx.correlation_id,
        )

    async def check_customer_conflicts(
        self, ctx: RequestContext, customer_id: str, start_at: str
    ) -> None:
        """Raise BOOKING_CONFLICT when the customer already holds an active booking near `start_at`."""
        requested = parse_iso(start_at)

        async def _list() -> dict:
            return await self._call(
                ctx,
                "bookings_list_conflicts",
                lambda client: client.list_bookings(
                    limit=CONFLICT_LIST_LIMIT,
                    customer_id=customer_id,
                    location_id=ctx.tenant.location_id,
                    start_at_min=to_iso(requested - CONFLICT_WINDOW),
                    start_at_max=to_iso(requested + CONFLICT_WINDOW),
                ),
            )

        try:
            response = await asyncio.wait_for(_list(), timeout=CONFLICT_CHECK_TIMEOUT)
        except asyncio.TimeoutError:
            ctx.warn("Conflict pre-check timed out, proceeding")
            return
        except (SquareApiError, AppError) as e:
            ctx.warn(f"Conflict pre-check skipped, booking lookup failed: {e}")
            return

        conflicts = []
        for booking in response.get("bookings") or []:
            if booking.get("status") not in ACTIVE_STATUSES:
                continue
            existing = parse_iso(booking.get("startAt"))
            if existing and abs(existing - requested) <= CONFLICT_TOLERANCE:
                conflicts.append(
                    {
                        "id": booking.get("id"),
                        "startAt": booking.get("startAt"),
                        "status": booking.get("status"),
                    }
                )

        if conflicts:
            ctx.event("booking_conflict", customer_id=customer_id, conflicts=len(conflicts))
            raise AppError(
                "BOOKING_CONFLICT",
                message="Customer already has a booking at or near this time",
                details={"conflictingBookings": conflicts},
                correlation_id=ctx.correlation_id,
            )

    async def ensure_agent_can_modify_booking(self, ctx: RequestContext, booking_id: str) -> None:
        """Tenants without seller-level write access may only touch their own agent's bookings."""
        if ctx.tenant.supports_seller_level_writes:
            return

        if not await self.ledger.is_agent_booking(ctx.tenant.owner_id, booking_id):
            ctx.event("booking_modify_denied", booking_id=booking_id, agent=ctx.tenant.owner_id)
            raise AppError(
                "AUTH_INSUFFICIENT_PERMISSIONS",
                message="This booking was not created by this agent",
                details={"bookingId": booking_id},
                correlation_id=ctx.correlation_id,
            )

    # =========================================================================
    # Customer
    # =========================================================================

    async def _resolve_customer(self, ctx: RequestContext, request: BookingCreate) -> Optional[dict]:
        if request.customer_id:
            try:
                return await self.customers.retrieve_customer(ctx, request.customer_id)
            except AppError as e:
                ctx.warn(f"Could not fetch customer {request.customer_id}: {e.message}")
                return None

        if request.phone_number:
            existing = await self.customers.search_by_phone(ctx, request.phone_number)
            if existing:
                return existing

        return await self.customers.create_customer(
            ctx,
            given_name=request.first_name,
            family_name=request.last_name,
            email=request.email,
            phone_number=request.phone_number,
        )

    async def _committed(self, mutation: Awaitable[Any]) -> Any:
        """Run a Square write and its ledger step as one unit.

        The unit keeps running if the caller is cancelled mid-flight, so a
        booking Square accepted always reaches the ledger. Pending units are
        held in `_inflight` until they finish.
        """
        task = asyncio.ensure_future(mutation)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for writes whose callers went away before they finished."""
        if self._inflight:
            logger.info(f"Waiting for in-flight booking writes | count: {len(self._inflight)}")
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # =========================================================================
    # Operations
    # =========================================================================

    async def create(
        self,
        ctx: RequestContext,
        data: Any,
        now: Optional[datetime] = None,
    ) -> dict:
        """Create a booking. Returns {"booking": ...}."""
        request = validate_booking_data(data, now=now, correlation_id=ctx.correlation_id)
        ctx.event(
            "booking_create_attempt",
            start_at=request.start_at,
            segments=len(request.appointment_segments),
            has_customer_id=bool(request.customer_id),
        )

        await self.check_slot_available(ctx, request)

        customer = await self._resolve_customer(ctx, request)
        customer_id = request.customer_id or (customer or {}).get("id")
        if not customer_id:
            raise AppError(
                "CUSTOMER_CREATION_FAILED",
                message="Could not resolve a customer for this booking",
                correlation_id=ctx.correlation_id,
            )

        await self.check_customer_conflicts(ctx, customer_id, request.start_at)

        booking_body: dict[str, Any] = {
            "locationId": ctx.tenant.location_id,
            "startAt": request.start_at,
            "appointmentSegments": request.square_segments(),
            "customerId": customer_id,
        }
        if request.customer_note:
            booking_body["customerNote"] = request.customer_note
        body = {"idempotencyKey": str(uuid.uuid4()), "booking": booking_body}

        async def _create_and_record() -> dict:
            try:
                response = await self._call(
                    ctx, "bookings_create", lambda client: client.create_booking(body)
                )
            except SquareApiError as e:
                raise from_square_error(
                    e,
                    resource="booking",
                    correlation_id=ctx.correlation_id,
                    conflict_code="BOOKING_CONFLICT",
                ) from e

            created = response.get("booking")
            if not _booking_id(created):
                raise AppError(
                    "BOOKING_CREATION_FAILED",
                    message="No booking returned from Square API",
                    correlation_id=ctx.correlation_id,
                )
            await self.ledger.upsert(created, ctx.tenant)
            return created

        booking = await self._committed(_create_and_record())
        ctx.event("booking_create_success", booking_id=booking["id"], customer_id=customer_id)

        result: dict[str, Any] = {"booking": clean_big_int(booking)}
        if customer:
            result["customer"] = customer
        return result

    async def _retrieve(self, ctx: RequestContext, booking_id: str) -> dict:
        try:
            response = await self._call(
                ctx, "bookings_retrieve", lambda client: client.retrieve_booking(booking_id)
            )
        except SquareApiError as e:
            raise from_square_error(e, resource="booking", correlation_id=ctx.correlation_id) from e

        booking = response.get("booking")
        if not booking:
            raise AppError(
                "BOOKING_NOT_FOUND",
                details={"bookingId": booking_id},
                correlation_id=ctx.correlation_id,
            )
        return booking

    async def update(self, ctx: RequestContext, update: BookingUpdate) -> dict:
        """Send the provided fields only. The current version is read when not supplied."""
        await self.ensure_agent_can_modify_booking(ctx, update.booking_id)

        if update.version is None:
            current = await self._retrieve(ctx, update.booking_id)
            update.version = current.get("version")

        body = {"idempotencyKey": str(uuid.uuid4()), "booking": update.to_square_booking()}
        ctx.event(
            "booking_update_attempt",
            booking_id=update.booking_id,
            fields=",".join(sorted(update.changed_fields())),
        )

        async def _update_and_record() -> dict:
            try:
                response = await self._call(
                    ctx,
                    "bookings_update",
                    lambda client: client.update_booking(update.booking_id, body),
                )
            except SquareApiError as e:
                raise from_square_error(e, resource="booking", correlation_id=ctx.correlation_id) from e

            updated = response.get("booking")
            if not updated:
                raise AppError(
                    "BOOKING_UPDATE_FAILED",
                    message="No booking returned from Square API",
                    correlation_id=ctx.correlation_id,
                )
            await self.ledger.upsert(updated, ctx.tenant)
            return updated

        booking = await self._committed(_update_and_record())
        ctx.event("booking_update_success", booking_id=update.booking_id)
        return {"booking": clean_big_int(booking)}

    async def cancel(self, ctx: RequestContext, booking_id: str) -> dict:
        """Cancel at the current version and drop the ledger row."""
        if not booking_id:
            raise AppError(
                "VALIDATION_MISSING_FIELD",
                message="bookingId is required",
                details={"field": "bookingId"},
                correlation_id=ctx.correlation_id,
            )

        await self.ensure_agent_can_modify_booking(ctx, booking_id)

        current = await self._retrieve(ctx, booking_id)
        if str(current.get("status") or "").startswith("CANCELLED"):
            raise AppError(
                "BOOKING_ALREADY_CANCELLED",
                details={"bookingId": booking_id, "status": current.get("status")},
                correlation_id=ctx.correlation_id,
            )

        body = {"idempotencyKey": str(uuid.uuid4()), "bookingVersion": current.get("version")}

        async def _cancel_and_remove() -> dict:
            try:
                response = await self._call(
                    ctx, "bookings_cancel", lambda client: client.cancel_booking(booking_id, body)
                )
            except SquareApiError as e:
                raise from_square_error(e, resource="booking", correlation_id=ctx.correlation_id) from e

            await self.ledger.remove(booking_id)
            return response.get("booking") or current

        booking = await self._committed(_cancel_and_remove())
        ctx.event("booking_cancel_success", booking_id=booking_id, status=booking.get("status"))
        return {"booking": clean_big_int(booking)}

    async def get(self, ctx: RequestContext, booking_id: str) -> dict:
        if not booking_id:
            raise AppError(
                "VALIDATION_MISSING_FIELD",
                message="bookingId is required",
                details={"field": "bookingId"},
                correlation_id=ctx.correlation_id,
            )
        booking = await self._retrieve(ctx, booking_id)
        return {"booking": clean_big_int(booking)}

    async def list_bookings(
        self,
        ctx: RequestContext,
        location_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        team_member_id: Optional[str] = None,
        start_at_min: Optional[str] = None,
        start_at_max: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """List bookings with optional filters. Returns {bookings, cursor}."""
        try:
            response = await self._call(
                ctx,
                "bookings_list",
                lambda client: client.list_bookings(
                    limit=limit,
                    cursor=cursor,
                    customer_id=customer_id,
                    team_member_id=team_member_id,
                    location_id=location_id or ctx.tenant.location_id,
                    start_at_min=start_at_min,
                    start_at_max=start_at_max,
                ),
            )
        except SquareApiError as e:
            raise from_square_error(e, resource="booking", correlation_id=ctx.correlation_id) from e

        bookings = response.get("bookings") or []
        ctx.event("bookings_listed", count=len(bookings), has_cursor=bool(response.get("cursor")))
        return {"bookings": clean_big_int(bookings), "cursor": response.get("cursor")}


# Singleton instance
_orchestrator: Optional[BookingOrchestrator] = None


def get_booking_orchestrator() -> BookingOrchestrator:
    """Get singleton booking orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = BookingOrchestrator()
    return _orchestrator
