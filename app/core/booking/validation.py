"""
Booking input validation.

Turns loosely shaped agent payloads into the two canonical inputs the
orchestrator works with: BookingCreate and BookingUpdate.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.errors import AppError
from app.core.square.normalizers import (
    format_phone_number,
    parse_iso,
    to_big_int,
    validate_email_address,
)

# Fields whose presence makes an update meaningful
UPDATE_FIELDS = ("startAt", "endAt", "note", "customerNote", "customerId", "appointmentSegments")

# Agent tool-call metadata that is never part of a booking
_META_KEYS = ("action", "args", "call", "name", "tool_call_id", "bookingId", "booking_id")


@dataclass
class BookingCreate:
    """Validated create request."""

    start_at: str
    appointment_segments: list[dict]
    customer_id: Optional[str] = None
    customer_note: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None

    def square_segments(self) -> list[dict]:
        """Segments with versions as integers, as Square expects."""
        return [
            {**segment, "serviceVariationVersion": to_big_int(segment["serviceVariationVersion"])}
            for segment in self.appointment_segments
        ]


@dataclass
class BookingUpdate:
    """Canonical update input. Only non-None fields are sent."""

    booking_id: str
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    seller_note: Optional[str] = None
    customer_note: Optional[str] = None
    customer_id: Optional[str] = None
    appointment_segments: Optional[list[dict]] = None
    version: Optional[Any] = None
    extra: dict = field(default_factory=dict)

    def to_square_booking(self) -> dict:
        booking: dict[str, Any] = {}
        if self.version is not None:
            booking["version"] = to_big_int(self.version)
        if self.start_at:
            booking["startAt"] = self.start_at
        if self.customer_id:
            booking["customerId"] = self.customer_id
        if self.customer_note:
            booking["customerNote"] = self.customer_note
        if self.seller_note:
            booking["sellerNote"] = self.seller_note
        if self.appointment_segments:
            booking["appointmentSegments"] = [
                {**s, "serviceVariationVersion": to_big_int(s["serviceVariationVersion"])}
                if s.get("serviceVariationVersion") is not None
                else dict(s)
                for s in self.appointment_segments
            ]
        return booking

    def changed_fields(self) -> dict:
        """Echo of what the caller asked to change (for responses and the ledger)."""
        changed = {
            "startAt": self.start_at,
            "endAt": self.end_at,
            "note": self.seller_note,
            "customerNote": self.customer_note,
            "customerId": self.customer_id,
            "appointmentSegments": self.appointment_segments,
        }
        return {k: v for k, v in changed.items() if v}


def strip_agent_meta(payload: Optional[dict]) -> dict:
    """Drop tool-call envelope keys agents attach to payloads."""
    if not isinstance(payload, dict):
        return {}
    return {k: v for k, v in payload.items() if k not in _META_KEYS}


def _invalid(errors: list[tuple[str, str]], correlation_id: Optional[str]) -> AppError:
    code = errors[0][0]
    return AppError(
        code,
        message="Invalid booking data",
        details={"errors": [message for _, message in errors]},
        correlation_id=correlation_id,
    )


def validate_booking_data(
    data: Any,
    now: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
) -> BookingCreate:
    """Validate a create request. Raises AppError listing every problem found."""
    if not isinstance(data, dict):
        raise AppError(
            "VALIDATION_INVALID_FORMAT",
            message="Booking data must be a valid object",
            correlation_id=correlation_id,
        )

    errors: list[tuple[str, str]] = []
    now = now or datetime.now(timezone.utc)

    segments = data.get("appointmentSegments")
    if not isinstance(segments, list) or not segments:
        errors.append(
            ("VALIDATION_MISSING_FIELD", "appointmentSegments is required and must be a non-empty array")
        )
        segments = []
    else:
        for index, segment in enumerate(segments):
            if not isinstance(segment, dict):
                errors.append(("VALIDATION_INVALID_FORMAT", f"appointmentSegments[{index}] must be an object"))
                continue
            for name in ("serviceVariationId", "teamMemberId", "serviceVariationVersion", "durationMinutes"):
                if not segment.get(name):
                    errors.append(("VALIDATION_MISSING_FIELD", f"appointmentSegments[{index}].{name} is required"))
            version = segment.get("serviceVariationVersion")
            if version:
                try:
                    to_big_int(version)
                except ValueError:
                    errors.append(
                        (
                            "VALIDATION_INVALID_FORMAT",
                            f"appointmentSegments[{index}].serviceVariationVersion must be an integer",
                        )
                    )

    start_at = data.get("startAt")
    if not start_at:
        errors.append(("VALIDATION_MISSING_FIELD", "startAt timestamp is required"))
    else:
        parsed = parse_iso(start_at)
        if parsed is None:
            errors.append(("VALIDATION_INVALID_DATE", "startAt must be a valid ISO 8601 timestamp"))
        elif parsed <= now:
            errors.append(("VALIDATION_PAST_DATE", "startAt cannot be in the past"))

    for note_field in ("customerNote", "sellerNote"):
        if data.get(note_field) is not None and not isinstance(data[note_field], str):
            errors.append(("VALIDATION_INVALID_FORMAT", f"{note_field} must be a string"))

    email = data.get("email")
    phone = data.get("phoneNumber")
    formatted_phone = None
    normalized_email = None

    if not data.get("customerId"):
        if not any(data.get(k) for k in ("firstName", "lastName", "email", "phoneNumber")):
            errors.append(
                (
                    "VALIDATION_MISSING_FIELD",
                    "Either customerId or customer information "
                    "(firstName, lastName, email, phoneNumber) is required",
                )
            )
        if email:
            is_valid, normalized_email, error = validate_email_address(email)
            if not is_valid:
                errors.append(("VALIDATION_INVALID_EMAIL", f"Invalid email: {error}"))
        if phone:
            result = format_phone_number(phone)
            if not result.is_valid:
                errors.append(("VALIDATION_INVALID_PHONE", f"Invalid phone number: {result.error}"))
            else:
                formatted_phone = result.formatted

    if errors:
        raise _invalid(errors, correlation_id)

    return BookingCreate(
        start_at=start_at,
        appointment_segments=[dict(s) for s in segments],
        customer_id=data.get("customerId") or None,
        customer_note=data.get("customerNote") or None,
        first_name=data.get("firstName") or None,
        last_name=data.get("lastName") or None,
        email=normalized_email,
        phone_number=formatted_phone,
    )


def normalize_update_input(
    booking_id: Optional[str],
    body: Optional[dict],
    correlation_id: Optional[str] = None,
) -> BookingUpdate:
    """Build a BookingUpdate from the handler payload.

    Unwraps a nested `args` object and accepts `bookingSegments` as an
    alias of `appointmentSegments`.
    """
    if not booking_id:
        raise AppError(
            "VALIDATION_MISSING_FIELD",
            message="bookingId is required",
            details={"field": "bookingId"},
            correlation_id=correlation_id,
        )

    data = body if isinstance(body, dict) else {}
    if isinstance(data.get("args"), dict):
        data = data["args"]

    segments = data.get("appointmentSegments") or data.get("bookingSegments")
    update = BookingUpdate(
        booking_id=booking_id,
        start_at=data.get("startAt") or None,
        end_at=data.get("endAt") or None,
        seller_note=data.get("note") or None,
        customer_note=data.get("customerNote") or None,
        customer_id=data.get("customerId") or None,
        appointment_segments=segments if isinstance(segments, list) and segments else None,
        version=data.get("version"),
    )
    return validate_update_data(update, correlation_id=correlation_id)


def validate_update_data(update: BookingUpdate, correlation_id: Optional[str] = None) -> BookingUpdate:
    """Require at least one updatable field and well-formed timestamps."""
    if not update.changed_fields():
        raise AppError(
            "VALIDATION_MISSING_FIELD",
            message=f"At least one of {', '.join(UPDATE_FIELDS)} is required",
            details={"fields": list(UPDATE_FIELDS)},
            correlation_id=correlation_id,
        )

    for name, value in (("startAt", update.start_at), ("endAt", update.end_at)):
        if value and parse_iso(value) is None:
            raise AppError(
                "VALIDATION_INVALID_DATE",
                message=f"Invalid time value for {name}",
                details={"field": name},
                correlation_id=correlation_id,
            )

    if update.version is not None:
        try:
            to_big_int(update.version)
        except ValueError as e:
            raise AppError(
                "VALIDATION_INVALID_FORMAT",
                message="version must be an integer",
                details={"field": "version"},
                correlation_id=correlation_id,
            ) from e

    for index, segment in enumerate(update.appointment_segments or []):
        field_name = f"appointmentSegments[{index}]"
        if not isinstance(segment, dict):
            raise AppError(
                "VALIDATION_INVALID_FORMAT",
                message=f"{field_name} must be an object",
                details={"field": field_name},
                correlation_id=correlation_id,
            )
        version = segment.get("serviceVariationVersion")
        if version is None:
            continue
        try:
            to_big_int(version)
        except ValueError as e:
            raise AppError(
                "VALIDATION_INVALID_FORMAT",
                message=f"{field_name}.serviceVariationVersion must be an integer",
                details={"field": f"{field_name}.serviceVariationVersion"},
                correlation_id=correlation_id,
            ) from e

    return update
