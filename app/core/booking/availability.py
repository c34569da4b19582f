"""
Availability Engine

Queries Square for candidate slots and filters multi-segment results so a
single customer never occupies two staff members at once.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.config import get_settings
from app.core.booking.base import SquareService
from app.core.errors import AppError, from_square_error
from app.core.square.caches import StaffCache, get_staff_cache, validate_service_variation_id
from app.core.square.circuit_breaker import CircuitBreaker
from app.core.square.client import SquareApiError
from app.core.square.coalescer import QueryCoalescer, get_query_coalescer
from app.core.square.factory import ClientFactory
from app.core.square.normalizers import format_local_time, to_iso, validate_days_ahead
from app.core.tenant import RequestContext

logger = logging.getLogger(__name__)

MAX_SERVICE_ID_LENGTH = 36


def build_segment_filters(
    service_variation_ids: list[str],
    staff_member_id: Optional[str] = None,
) -> list[dict]:
    """One filter per requested segment; repeated ids mean back-to-back segments."""
    filters = []
    for service_variation_id in service_variation_ids:
        segment_filter: dict[str, Any] = {"serviceVariationId": service_variation_id}
        if staff_member_id:
            segment_filter["teamMemberIdFilter"] = {"any": [staff_member_id]}
        filters.append(segment_filter)
    return filters


def build_availability_query(
    location_id: Optional[str],
    start_at: str,
    end_at: str,
    segment_filters: list[dict],
) -> dict:
    return {
        "query": {
            "filter": {
                "startAtRange": {"startAt": start_at, "endAt": end_at},
                "locationId": location_id,
                "segmentFilters": segment_filters,
            }
        }
    }


def is_coherent_slot(segments: list[dict], staff_member_id: Optional[str] = None) -> bool:
    """A slot is bookable when its segments share one staff member (the requested one, if any)."""
    staff = {segment.get("teamMemberId") for segment in segments}
    if len(segments) > 1 and len(staff) > 1:
        return False
    if staff_member_id and any(s.get("teamMemberId") != staff_member_id for s in segments):
        return False
    return True


@dataclass
class AvailabilityRequest:
    """Normalized availability query parameters."""

    service_variation_ids: list[str]
    staff_member_id: Optional[str]
    days_ahead: int


def _maybe_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _first_present(params: dict, *keys: str) -> Any:
    for key in keys:
        value = params.get(key)
        if value is not None:
            return value
    return None


def parse_availability_request(params: dict) -> AvailabilityRequest:
    """Read availability parameters from merged query/body values.

    Service ids may be a list, a JSON array string, or a comma-separated
    string; several aliases are accepted for each field.
    """
    raw_ids = _first_present(params, "serviceVariationIds", "serviceIds", "service_variation_ids")

    ids: list[str] = []
    if isinstance(raw_ids, list):
        ids = [str(i).strip() for i in raw_ids if str(i).strip()]
    elif isinstance(raw_ids, str):
        parsed = _maybe_json(raw_ids)
        if isinstance(parsed, list):
            ids = [str(i).strip() for i in parsed if str(i).strip()]
        else:
            ids = [part.strip() for part in raw_ids.split(",") if part.strip()]

    if not ids:
        raise AppError(
            "VALIDATION_MISSING_FIELD",
            message="serviceVariationIds parameter is required",
            details={"field": "serviceVariationIds"},
        )

    for service_id in ids:
        if len(service_id) > MAX_SERVICE_ID_LENGTH:
            raise AppError(
                "VALIDATION_INVALID_FORMAT",
                message=(
                    f"Service variation ID is too long: {len(service_id)} characters "
                    f"(max {MAX_SERVICE_ID_LENGTH})"
                ),
                details={"field": "serviceVariationIds", "value": service_id[:50]},
            )
        valid, error = validate_service_variation_id(service_id)
        if not valid:
            raise AppError(
                "VALIDATION_INVALID_FORMAT",
                message=error,
                details={"field": "serviceVariationIds", "value": service_id[:50]},
            )

    staff_member_id = None
    raw_staff = _first_present(params, "staffMemberId", "staffId", "staff_member_id")
    if raw_staff:
        parsed_staff = _maybe_json(raw_staff)
        if isinstance(parsed_staff, list):
            parsed_staff = parsed_staff[0] if parsed_staff else None
        staff_member_id = str(parsed_staff).strip() if parsed_staff else None

    days_ahead = validate_days_ahead(_first_present(params, "daysAhead", "days_ahead"))

    return AvailabilityRequest(
        service_variation_ids=ids,
        staff_member_id=staff_member_id or None,
        days_ahead=days_ahead,
    )


class AvailabilityEngine(SquareService):
    """Slot search for one or more consecutive service segments."""

    def __init__(
        self,
        factory: Optional[ClientFactory] = None,
        breaker: Optional[CircuitBreaker] = None,
        coalescer: Optional[QueryCoalescer] = None,
        staff: Optional[StaffCache] = None,
    ):
        super().__init__(factory=factory, breaker=breaker)
        self._coalescer = coalescer
        self._staff = staff

    @property
    def coalescer(self) -> QueryCoalescer:
        if self._coalescer is None:
            self._coalescer = get_query_coalescer()
        return self._coalescer

    @property
    def staff(self) -> StaffCache:
        if self._staff is None:
            self._staff = get_staff_cache()
        return self._staff

    async def search_raw(
        self,
        ctx: RequestContext,
        segment_filters: list[dict],
        start_at: str,
        end_at: str,
        ttl: Optional[float] = None,
    ) -> list[dict]:
        """Unfiltered `availabilities` from Square, coalesced per identical query."""
        body = build_availability_query(ctx.tenant.location_id, start_at, end_at, segment_filters)
        key = "availability-{}-{}".format(
            ctx.tenant.tenant_id, json.dumps(body, sort_keys=True, separators=(",", ":"))
        )
        ttl = get_settings().availability_ttl_seconds if ttl is None else ttl

        response = await self.coalescer.coalesce(
            key,
            lambda: self._call(
                ctx, "search_availability", lambda client: client.search_availability(body)
            ),
            ttl,
        )
        return response.get("availabilities") or []

    async def load_availability(
        self,
        ctx: RequestContext,
        service_variation_ids: list[str],
        staff_member_id: Optional[str],
        start_at: str,
        end_at: str,
        ttl: Optional[float] = None,
    ) -> dict:
        """Search slots in `[start_at, end_at)` and keep the staff-coherent ones.

        Returns:
            {id, serviceVariationIds, staffMemberId, slots}
        """
        ids = list(service_variation_ids)
        filters = build_segment_filters(ids, staff_member_id)

        try:
            availabilities = await self.search_raw(ctx, filters, start_at, end_at, ttl)
        except SquareApiError as e:
            raise from_square_error(e, correlation_id=ctx.correlation_id) from e

        slots = []
        for availability in availabilities:
            segments = availability.get("appointmentSegments") or []
            if not is_coherent_slot(segments, staff_member_id):
                logger.debug(
                    f"Filtering out incoherent slot | start_at: {availability.get('startAt')} | "
                    f"staff: {sorted({str(s.get('teamMemberId')) for s in segments})}"
                )
                continue
            slots.append(
                {
                    "startAt": availability.get("startAt"),
                    "readableTime": format_local_time(
                        availability.get("startAt"), ctx.tenant.timezone
                    ),
                    "appointmentSegments": segments,
                }
            )

        ctx.event(
            "availability_loaded",
            services=len(ids),
            staff_member_id=staff_member_id or "any",
            raw_slots=len(availabilities),
            slots=len(slots),
        )

        return {
            "id": ",".join(ids),
            "serviceVariationIds": ids,
            "staffMemberId": staff_member_id,
            "slots": slots,
        }

    async def availability_for_request(
        self,
        ctx: RequestContext,
        request: AvailabilityRequest,
        now: Optional[datetime] = None,
    ) -> dict:
        """Availability from now through `days_ahead` days.

        A requested staff member must be on the tenant's roster. When the
        roster cannot be loaded only the id format is checked.
        """
        valid, error = await self.staff.validate_staff_member_id(ctx.tenant, request.staff_member_id)
        if not valid:
            raise AppError(
                "BOOKING_TEAM_MEMBER_NOT_FOUND",
                message=error,
                details={"staffMemberId": request.staff_member_id},
                correlation_id=ctx.correlation_id,
            )

        start = now or datetime.now(timezone.utc)
        end = start + timedelta(days=request.days_ahead)
        return await self.load_availability(
            ctx,
            request.service_variation_ids,
            request.staff_member_id,
            to_iso(start),
            to_iso(end),
        )


# Singleton instance
_engine: Optional[AvailabilityEngine] = None


def get_availability_engine() -> AvailabilityEngine:
    """Get singleton availability engine."""
    global _engine
    if _engine is None:
        _engine = AvailabilityEngine()
    return _engine
