"""
Agent Booking Ledger

Local index of Square bookings created or modified through an agent.
Keyed on booking id. Used for ownership checks when a tenant lacks
seller-level write access, and for listing an agent's upcoming bookings.

Ledger failures are logged at warning level and never raised: a booking
Square accepted must not fail because the local index is unavailable.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncContextManager, Callable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.square.normalizers import clean_big_int, parse_iso, to_iso
from app.core.tenant import TenantContext
from app.models.database import AgentBooking

logger = logging.getLogger(__name__)

UPCOMING_GRACE = timedelta(hours=1)


def extract_booking_metadata(booking: dict) -> dict[str, Any]:
    """Columns derived from a Square booking payload.

    Falls back to the first appointment segment's startAt when the
    booking itself has none.
    """
    start = booking.get("startAt")
    if not start:
        segments = booking.get("appointmentSegments") or []
        if segments and isinstance(segments[0], dict):
            start = segments[0].get("startAt")

    return {
        "booking_id": booking.get("id"),
        "location_id": booking.get("locationId"),
        "booking_start": parse_iso(start),
        "booking_status": booking.get("status"),
    }


class AgentBookingLedger:
    """
    Reads and writes agent_bookings rows.

    Args:
        session_context: Factory returning an async session context
            manager. Defaults to app.infra.database.get_db_context.
    """

    def __init__(
        self,
        session_context: Optional[Callable[[], AsyncContextManager[AsyncSession]]] = None,
    ):
        self._session_context = session_context

    def _session(self) -> AsyncContextManager[AsyncSession]:
        if self._session_context is None:
            from app.infra.database import get_db_context

            self._session_context = get_db_context
        return self._session_context()

    async def upsert(
        self,
        booking: Optional[dict],
        tenant: TenantContext,
        agent_id: Optional[str] = None,
    ) -> bool:
        """Insert or refresh the row for a booking. Returns True when written."""
        metadata = extract_booking_metadata(booking or {})
        agent = agent_id or tenant.owner_id

        if not metadata["booking_id"] or not agent:
            logger.warning(
                f"Ledger upsert skipped | booking_id: {metadata['booking_id']} | agent: {agent}"
            )
            return False

        values = {
            **metadata,
            "agent_id": agent,
            "tenant_id": tenant.tenant_id,
            "location_id": metadata["location_id"] or tenant.location_id,
            "merchant_id": tenant.merchant_id,
            "booking_payload": clean_big_int(booking),
        }
        stmt = insert(AgentBooking).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[AgentBooking.booking_id],
            set_={
                "agent_id": stmt.excluded.agent_id,
                "tenant_id": stmt.excluded.tenant_id,
                "location_id": stmt.excluded.location_id,
                "merchant_id": stmt.excluded.merchant_id,
                "booking_start": stmt.excluded.booking_start,
                "booking_status": stmt.excluded.booking_status,
                "booking_payload": stmt.excluded.booking_payload,
                "updated_at": func.now(),
            },
        )

        try:
            async with self._session() as db:
                await db.execute(stmt)
        except Exception as e:
            logger.warning(
                f"Ledger upsert failed | booking_id: {metadata['booking_id']} | error: {e}"
            )
            return False

        logger.debug(f"Ledger upsert | booking_id: {metadata['booking_id']} | agent: {agent}")
        return True

    async def remove(self, booking_id: str) -> bool:
        if not booking_id:
            return False
        try:
            async with self._session() as db:
                await db.execute(delete(AgentBooking).where(AgentBooking.booking_id == booking_id))
        except Exception as e:
            logger.warning(f"Ledger remove failed | booking_id: {booking_id} | error: {e}")
            return False
        return True

    async def is_agent_booking(self, agent_id: Optional[str], booking_id: Optional[str]) -> bool:
        """True when the ledger records `agent_id` as the booking's owner. False on error."""
        if not agent_id or not booking_id:
            return False
        try:
            async with self._session() as db:
                result = await db.execute(
                    select(AgentBooking.booking_id).where(
                        AgentBooking.booking_id == booking_id,
                        AgentBooking.agent_id == agent_id,
                    )
                )
                return result.scalar_one_or_none() is not None
        except Exception as e:
            logger.warning(
                f"Ledger ownership check failed | booking_id: {booking_id} | error: {e}"
            )
            return False

    async def list_upcoming(
        self,
        agent_id: Optional[str],
        limit: int = 10,
        now: Optional[datetime] = None,
    ) -> list[dict]:
        """Bookings starting at or after one hour ago, earliest first."""
        if not agent_id:
            return []

        cutoff = (now or datetime.now(timezone.utc)) - UPCOMING_GRACE
        try:
            async with self._session() as db:
                result = await db.execute(
                    select(AgentBooking)
                    .where(
                        AgentBooking.agent_id == agent_id,
                        AgentBooking.booking_start >= cutoff,
                    )
                    .order_by(AgentBooking.booking_start.asc())
                    .limit(limit)
                )
                rows = result.scalars().all()
        except Exception as e:
            logger.warning(f"Ledger list failed | agent: {agent_id} | error: {e}")
            return []

        return [
            {
                "bookingId": row.booking_id,
                "locationId": row.location_id,
                "merchantId": row.merchant_id,
                "startAt": to_iso(row.booking_start) if row.booking_start else None,
                "status": row.booking_status,
                "booking": row.booking_payload,
            }
            for row in rows
        ]


# Singleton instance
_ledger: Optional[AgentBookingLedger] = None


def get_booking_ledger() -> AgentBookingLedger:
    """Get singleton booking ledger."""
    global _ledger
    if _ledger is None:
        _ledger = AgentBookingLedger()
    return _ledger
