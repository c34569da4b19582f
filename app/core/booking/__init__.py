"""
Booking domain.

Provides:
- AvailabilityEngine: staff-coherent slot search
- CustomerResolver: phone lookup, create and update
- BookingOrchestrator: create / update / cancel / get / list pipelines
- BookingManager: action routing and the booking envelope

Usage:
    from app.core.booking import get_booking_manager

    manager = get_booking_manager()
    body = await manager.handle(ctx, "POST", None, query, payload)
"""

from app.core.booking.availability import (
    AvailabilityEngine,
    AvailabilityRequest,
    get_availability_engine,
    is_coherent_slot,
    parse_availability_request,
)
from app.core.booking.customers import (
    CustomerResolver,
    get_customer_resolver,
    sanitize_customer,
)
from app.core.booking.manager import (
    BookingManager,
    extract_booking_id,
    get_booking_manager,
    resolve_action,
)
from app.core.booking.orchestrator import BookingOrchestrator, get_booking_orchestrator
from app.core.booking.validation import (
    BookingCreate,
    BookingUpdate,
    normalize_update_input,
    validate_booking_data,
    validate_update_data,
)

__all__ = [
    # Availability
    "AvailabilityEngine",
    "AvailabilityRequest",
    "get_availability_engine",
    "is_coherent_slot",
    "parse_availability_request",
    # Customers
    "CustomerResolver",
    "get_customer_resolver",
    "sanitize_customer",
    # Orchestration
    "BookingOrchestrator",
    "get_booking_orchestrator",
    "BookingManager",
    "get_booking_manager",
    "resolve_action",
    "extract_booking_id",
    # Validation
    "BookingCreate",
    "BookingUpdate",
    "validate_booking_data",
    "validate_update_data",
    "normalize_update_input",
]
