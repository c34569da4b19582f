"""Tests for the booking orchestrator."""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core.booking.orchestrator import BookingOrchestrator
from app.core.booking.validation import BookingCreate, BookingUpdate
from app.core.errors import AppError
from app.core.square.circuit_breaker import CircuitBreaker
from app.core.square.client import SquareApiError
from app.core.square.normalizers import to_iso
from app.core.tenant import RequestContext

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
T = datetime(2025, 1, 17, 15, 0, tzinfo=timezone.utc)
T_ISO = to_iso(T)

CUSTOMER_ID = "CUST1234567890"
BOOKING_ID = "BOOKING1234567890"

SEGMENT = {
    "serviceVariationId": "SVC1234567890",
    "teamMemberId": "TEAM1234567890",
    "serviceVariationVersion": "1699999999999",
    "durationMinutes": 60,
}


def create_payload(**overrides):
    data = {
        "startAt": T_ISO,
        "appointmentSegments": [dict(SEGMENT)],
        "customerId": CUSTOMER_ID,
    }
    data.update(overrides)
    return data


def square_booking(status="ACCEPTED", version=1, **extra):
    booking = {
        "id": BOOKING_ID,
        "status": status,
        "version": version,
        "startAt": T_ISO,
        "locationId": "LOC1234567890",
        "customerId": CUSTOMER_ID,
        "appointmentSegments": [dict(SEGMENT)],
    }
    booking.update(extra)
    return booking


class TestBookingOrchestrator:
    """Test the booking pipelines."""

    @pytest.fixture
    def availability(self):
        mock = MagicMock()
        mock.search_raw = AsyncMock(return_value=[{"startAt": T_ISO}])
        return mock

    @pytest.fixture
    def customers(self):
        mock = MagicMock()
        mock.retrieve_customer = AsyncMock(return_value={"id": CUSTOMER_ID, "given_name": "Jane"})
        mock.search_by_phone = AsyncMock(return_value=None)
        mock.create_customer = AsyncMock(return_value={"id": "CUSTNEW1234567"})
        return mock

    @pytest.fixture
    def ledger(self):
        mock = MagicMock()
        mock.upsert = AsyncMock(return_value=True)
        mock.remove = AsyncMock(return_value=True)
        mock.is_agent_booking = AsyncMock(return_value=True)
        return mock

    @pytest.fixture
    def orchestrator(self, factory, availability, customers, ledger):
        return BookingOrchestrator(
            factory=factory,
            breaker=CircuitBreaker(),
            availability=availability,
            customers=customers,
            ledger=ledger,
        )

    @pytest.fixture
    def restricted_ctx(self, tenant):
        """Tenant without seller-level write access."""
        return RequestContext(
            correlation_id="corr-456",
            tenant=dataclasses.replace(tenant, supports_seller_level_writes=False),
        )

    # === create ===

    @pytest.mark.asyncio
    async def test_create_success(self, orchestrator, square_client, ledger, ctx):
        square_client.list_bookings.return_value = {"bookings": []}
        square_client.create_booking.return_value = {"booking": square_booking(version=0)}

        result = await orchestrator.create(ctx, create_payload(customerNote="Window seat"), now=NOW)

        assert result["booking"]["id"] == BOOKING_ID
        assert result["booking"]["version"] == "0"
        assert result["customer"]["id"] == CUSTOMER_ID

        body = square_client.create_booking.await_args.args[0]
        assert body["idempotencyKey"]
        assert body["booking"] == {
            "locationId": "LOC1234567890",
            "startAt": T_ISO,
            "appointmentSegments": [{**SEGMENT, "serviceVariationVersion": 1699999999999}],
            "customerId": CUSTOMER_ID,
            "customerNote": "Window seat",
        }
        ledger.upsert.assert_awaited_once()
        recorded, recorded_tenant = ledger.upsert.await_args.args
        assert recorded["id"] == BOOKING_ID
        assert recorded_tenant is ctx.tenant

    @pytest.mark.asyncio
    async def test_create_idempotency_keys_unique(self, orchestrator, square_client, ctx):
        square_client.list_bookings.return_value = {"bookings": []}
        square_client.create_booking.return_value = {"booking": square_booking()}

        await orchestrator.create(ctx, create_payload(), now=NOW)
        await orchestrator.create(ctx, create_payload(), now=NOW)

        first, second = square_client.create_booking.await_args_list
        assert first.args[0]["idempotencyKey"] != second.args[0]["idempotencyKey"]

    @pytest.mark.asyncio
    async def test_create_records_booking_when_caller_cancelled(
        self, orchestrator, square_client, ledger, ctx
    ):
        """Test a booking Square accepted still reaches the ledger after the caller goes away."""
        square_client.list_bookings.return_value = {"bookings": []}
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_create(body):
            started.set()
            await release.wait()
            return {"booking": square_booking()}

        square_client.create_booking.side_effect = slow_create

        task = asyncio.create_task(orchestrator.create(ctx, create_payload(), now=NOW))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        await asyncio.wait_for(orchestrator.drain(), timeout=1)

        assert square_client.create_booking.await_count == 1
        ledger.upsert.assert_awaited_once()
        assert ledger.upsert.await_args.args[0]["id"] == BOOKING_ID

    @pytest.mark.asyncio
    async def test_update_records_booking_when_caller_cancelled(
        self, orchestrator, square_client, ledger, ctx
    ):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_update(booking_id, body):
            started.set()
            await release.wait()
            return {"booking": square_booking(version=4)}

        square_client.update_booking.side_effect = slow_update
        update = BookingUpdate(booking_id=BOOKING_ID, seller_note="Moved", version=3)

        task = asyncio.create_task(orchestrator.update(ctx, update))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        await asyncio.wait_for(orchestrator.drain(), timeout=1)

        ledger.upsert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slot_vanished(self, orchestrator, availability, square_client, ctx):
        """Test a slot that moved to T+5m is rejected with alternatives."""
        moved = to_iso(T + timedelta(minutes=5))
        availability.search_raw.return_value = [{"startAt": moved}]

        with pytest.raises(AppError) as exc_info:
            await orchestrator.create(ctx, create_payload(), now=NOW)

        error = exc_info.value
        assert error.code == "BOOKING_SLOT_UNAVAILABLE"
        assert error.status_code == 409
        assert error.details["requestedStartAt"] == T_ISO
        assert [s["startAt"] for s in error.details["availableSlots"]] == [moved]
        square_client.create_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slot_query_window_and_filters(self, orchestrator, availability, square_client, ctx):
        square_client.list_bookings.return_value = {"bookings": []}
        square_client.create_booking.return_value = {"booking": square_booking()}

        await orchestrator.create(ctx, create_payload(), now=NOW)

        _, filters, start_at, end_at = availability.search_raw.await_args.args
        assert filters == [
            {"serviceVariationId": "SVC1234567890", "teamMemberIdFilter": {"any": ["TEAM1234567890"]}}
        ]
        assert start_at == to_iso(T - timedelta(minutes=30))
        assert end_at == to_iso(T + timedelta(minutes=30))
        assert availability.search_raw.await_args.kwargs == {"ttl": 0}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset,available", [(60, True), (-60, True), (61, False)])
    async def test_slot_match_tolerance(self, orchestrator, availability, ctx, offset, available):
        """Test a returned slot within one minute counts as the requested one."""
        availability.search_raw.return_value = [{"startAt": to_iso(T + timedelta(seconds=offset))}]
        request = BookingCreate(start_at=T_ISO, appointment_segments=[dict(SEGMENT)])

        if available:
            await orchestrator.check_slot_available(ctx, request)
        else:
            with pytest.raises(AppError) as exc_info:
                await orchestrator.check_slot_available(ctx, request)
            assert exc_info.value.code == "BOOKING_SLOT_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_slot_check_permissive_on_error(self, orchestrator, availability, ctx):
        availability.search_raw.side_effect = SquareApiError("down", status_code=503)
        request = BookingCreate(start_at=T_ISO, appointment_segments=[dict(SEGMENT)])

        await orchestrator.check_slot_available(ctx, request)

    @pytest.mark.asyncio
    async def test_customer_conflict(self, orchestrator, square_client, ctx):
        """Test an ACCEPTED booking 10 minutes away blocks the create."""
        square_client.list_bookings.return_value = {
            "bookings": [
                {"id": "OTHER1234567", "startAt": to_iso(T + timedelta(minutes=10)), "status": "ACCEPTED"},
                {"id": "GONE12345678", "startAt": T_ISO, "status": "CANCELLED_BY_CUSTOMER"},
                {"id": "FAR123456789", "startAt": to_iso(T + timedelta(minutes=25)), "status": "PENDING"},
            ]
        }

        with pytest.raises(AppError) as exc_info:
            await orchestrator.create(ctx, create_payload(), now=NOW)

        error = exc_info.value
        assert error.code == "BOOKING_CONFLICT"
        assert error.status_code == 409
        assert [b["id"] for b in error.details["conflictingBookings"]] == ["OTHER1234567"]
        square_client.create_booking.assert_not_awaited()

        kwargs = square_client.list_bookings.await_args.kwargs
        assert kwargs["customer_id"] == CUSTOMER_ID
        assert kwargs["limit"] == 20
        assert kwargs["start_at_min"] == to_iso(T - timedelta(minutes=30))
        assert kwargs["start_at_max"] == to_iso(T + timedelta(minutes=30))

    @pytest.mark.asyncio
    async def test_conflict_check_timeout_is_permissive(self, orchestrator, square_client, ctx):
        async def _slow(**kwargs):
            await asyncio.sleep(1)
            return {"bookings": [{"id": "X", "startAt": T_ISO, "status": "ACCEPTED"}]}

        square_client.list_bookings.side_effect = _slow

        with patch("app.core.booking.orchestrator.CONFLICT_CHECK_TIMEOUT", 0.01):
            await orchestrator.check_customer_conflicts(ctx, CUSTOMER_ID, T_ISO)

    @pytest.mark.asyncio
    async def test_conflict_check_error_is_permissive(self, orchestrator, square_client, ctx):
        square_client.list_bookings.side_effect = SquareApiError("down", status_code=500)

        await orchestrator.check_customer_conflicts(ctx, CUSTOMER_ID, T_ISO)

    @pytest.mark.asyncio
    async def test_create_resolves_customer_by_phone(self, orchestrator, customers, square_client, ctx):
        square_client.list_bookings.return_value = {"bookings": []}
        square_client.create_booking.return_value = {"booking": square_booking()}
        payload = create_payload(firstName="Jane", phoneNumber="2159324398")
        del payload["customerId"]

        result = await orchestrator.create(ctx, payload, now=NOW)

        customers.search_by_phone.assert_awaited_once_with(ctx, "+12159324398")
        customers.create_customer.assert_awaited_once()
        assert square_client.create_booking.await_args.args[0]["booking"]["customerId"] == "CUSTNEW1234567"
        assert result["customer"]["id"] == "CUSTNEW1234567"

    @pytest.mark.asyncio
    async def test_create_square_conflict(self, orchestrator, square_client, ctx):
        square_client.list_bookings.return_value = {"bookings": []}
        square_client.create_booking.side_effect = SquareApiError("taken", status_code=409)

        with pytest.raises(AppError) as exc_info:
            await orchestrator.create(ctx, create_payload(), now=NOW)

        assert exc_info.value.code == "BOOKING_CONFLICT"

    @pytest.mark.asyncio
    async def test_create_without_booking_in_response(self, orchestrator, square_client, ledger, ctx):
        square_client.list_bookings.return_value = {"bookings": []}
        square_client.create_booking.return_value = {}

        with pytest.raises(AppError) as exc_info:
            await orchestrator.create(ctx, create_payload(), now=NOW)

        assert exc_info.value.code == "BOOKING_CREATION_FAILED"
        ledger.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_validation_runs_first(self, orchestrator, availability, ctx):
        with pytest.raises(AppError) as exc_info:
            await orchestrator.create(ctx, create_payload(startAt="2025-01-01T00:00:00Z"), now=NOW)

        assert exc_info.value.code == "VALIDATION_PAST_DATE"
        availability.search_raw.assert_not_awaited()

    # === update ===

    @pytest.mark.asyncio
    async def test_update_reads_current_version(self, orchestrator, square_client, ledger, ctx):
        square_client.retrieve_booking.return_value = {"booking": square_booking(version=7)}
        square_client.update_booking.return_value = {"booking": square_booking(version=8)}
        update = BookingUpdate(booking_id=BOOKING_ID, start_at="2025-01-17T16:00:00Z")

        result = await orchestrator.update(ctx, update)

        booking_id, body = square_client.update_booking.await_args.args
        assert booking_id == BOOKING_ID
        assert body["booking"] == {"version": 7, "startAt": "2025-01-17T16:00:00Z"}
        assert result["booking"]["version"] == "8"
        ledger.upsert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_with_version_skips_retrieve(self, orchestrator, square_client, ctx):
        square_client.update_booking.return_value = {"booking": square_booking(version=3)}
        update = BookingUpdate(booking_id=BOOKING_ID, seller_note="VIP", version="2")

        await orchestrator.update(ctx, update)

        square_client.retrieve_booking.assert_not_awaited()
        assert square_client.update_booking.await_args.args[1]["booking"] == {"version": 2, "sellerNote": "VIP"}

    @pytest.mark.asyncio
    async def test_update_denied_for_foreign_booking(self, orchestrator, square_client, ledger, restricted_ctx):
        """Test restricted tenants cannot modify bookings another agent created."""
        ledger.is_agent_booking.return_value = False
        update = BookingUpdate(booking_id=BOOKING_ID, seller_note="VIP", version=1)

        with pytest.raises(AppError) as exc_info:
            await orchestrator.update(restricted_ctx, update)

        assert exc_info.value.code == "AUTH_INSUFFICIENT_PERMISSIONS"
        assert exc_info.value.status_code == 403
        ledger.is_agent_booking.assert_awaited_once_with("agent-1", BOOKING_ID)
        square_client.update_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_allowed_for_own_booking(self, orchestrator, square_client, ledger, restricted_ctx):
        square_client.update_booking.return_value = {"booking": square_booking()}
        update = BookingUpdate(booking_id=BOOKING_ID, seller_note="VIP", version=1)

        await orchestrator.update(restricted_ctx, update)

        square_client.update_booking.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_version_conflict(self, orchestrator, square_client, ctx):
        square_client.update_booking.side_effect = SquareApiError("stale", status_code=409)

        with pytest.raises(AppError) as exc_info:
            await orchestrator.update(ctx, BookingUpdate(booking_id=BOOKING_ID, seller_note="x", version=1))

        assert exc_info.value.code == "BOOKING_VERSION_CONFLICT"

    # === cancel ===

    @pytest.mark.asyncio
    async def test_cancel(self, orchestrator, square_client, ledger, ctx):
        square_client.retrieve_booking.return_value = {"booking": square_booking(version=2)}
        square_client.cancel_booking.return_value = {
            "booking": square_booking(status="CANCELLED_BY_SELLER", version=3)
        }

        result = await orchestrator.cancel(ctx, BOOKING_ID)

        booking_id, body = square_client.cancel_booking.await_args.args
        assert booking_id == BOOKING_ID
        assert body["bookingVersion"] == 2
        assert body["idempotencyKey"]
        assert result["booking"]["status"] == "CANCELLED_BY_SELLER"
        ledger.remove.assert_awaited_once_with(BOOKING_ID)

    @pytest.mark.asyncio
    async def test_cancel_already_cancelled(self, orchestrator, square_client, ledger, ctx):
        square_client.retrieve_booking.return_value = {
            "booking": square_booking(status="CANCELLED_BY_CUSTOMER")
        }

        with pytest.raises(AppError) as exc_info:
            await orchestrator.cancel(ctx, BOOKING_ID)

        assert exc_info.value.code == "BOOKING_ALREADY_CANCELLED"
        assert exc_info.value.status_code == 400
        square_client.cancel_booking.assert_not_awaited()
        ledger.remove.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_not_found(self, orchestrator, square_client, ctx):
        square_client.retrieve_booking.side_effect = SquareApiError("missing", status_code=404)

        with pytest.raises(AppError) as exc_info:
            await orchestrator.cancel(ctx, BOOKING_ID)

        assert exc_info.value.code == "BOOKING_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_cancel_denied(self, orchestrator, square_client, ledger, restricted_ctx):
        square_client.retrieve_booking.return_value = {"booking": square_booking()}
        ledger.is_agent_booking.return_value = False

        with pytest.raises(AppError) as exc_info:
            await orchestrator.cancel(restricted_ctx, BOOKING_ID)

        assert exc_info.value.code == "AUTH_INSUFFICIENT_PERMISSIONS"
        square_client.cancel_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_denied_before_status_lookup(self, orchestrator, square_client, ledger, restricted_ctx):
        """Test a foreign booking's status is not revealed to a restricted agent."""
        square_client.retrieve_booking.return_value = {
            "booking": square_booking(status="CANCELLED_BY_CUSTOMER")
        }
        ledger.is_agent_booking.return_value = False

        with pytest.raises(AppError) as exc_info:
            await orchestrator.cancel(restricted_ctx, BOOKING_ID)

        assert exc_info.value.code == "AUTH_INSUFFICIENT_PERMISSIONS"
        square_client.retrieve_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_removes_ledger_row_when_caller_cancelled(
        self, orchestrator, square_client, ledger, ctx
    ):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_cancel(booking_id, body):
            started.set()
            await release.wait()
            return {"booking": square_booking(status="CANCELLED_BY_SELLER")}

        square_client.retrieve_booking.return_value = {"booking": square_booking()}
        square_client.cancel_booking.side_effect = slow_cancel

        task = asyncio.create_task(orchestrator.cancel(ctx, BOOKING_ID))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        release.set()
        await asyncio.wait_for(orchestrator.drain(), timeout=1)

        ledger.remove.assert_awaited_once_with(BOOKING_ID)

    @pytest.mark.asyncio
    async def test_cancel_requires_id(self, orchestrator, ctx):
        with pytest.raises(AppError) as exc_info:
            await orchestrator.cancel(ctx, None)

        assert exc_info.value.code == "VALIDATION_MISSING_FIELD"

    # === reads ===

    @pytest.mark.asyncio
    async def test_get(self, orchestrator, square_client, ctx):
        square_client.retrieve_booking.return_value = {"booking": square_booking(version=5)}

        result = await orchestrator.get(ctx, BOOKING_ID)

        assert result["booking"]["version"] == "5"

    @pytest.mark.asyncio
    async def test_list_defaults_to_tenant_location(self, orchestrator, square_client, ctx):
        square_client.list_bookings.return_value = {"bookings": [square_booking()], "cursor": "next"}

        result = await orchestrator.list_bookings(ctx, customer_id=CUSTOMER_ID, limit=5)

        assert result["cursor"] == "next"
        assert result["bookings"][0]["version"] == "1"
        kwargs = square_client.list_bookings.await_args.kwargs
        assert kwargs["location_id"] == "LOC1234567890"
        assert kwargs["customer_id"] == CUSTOMER_ID
        assert kwargs["limit"] == 5

    @pytest.mark.asyncio
    async def test_open_circuit_surfaces(self, orchestrator, square_client, ctx):
        for _ in range(5):
            square_client.retrieve_booking.side_effect = SquareApiError("down", status_code=500)
            with pytest.raises(AppError):
                await orchestrator.get(ctx, BOOKING_ID)

        with pytest.raises(AppError) as exc_info:
            await orchestrator.get(ctx, BOOKING_ID)

        assert exc_info.value.code == "CIRCUIT_BREAKER_OPEN"
        assert square_client.retrieve_booking.await_count == 5
