"""
Database Models

SQLAlchemy ORM models for the booking gateway's local state.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class AgentBooking(Base, TimestampMixin):
    """
    Agent booking ledger row.

    One row per Square booking created or modified through an agent.
    Used to restrict tenants without seller-level writes to their own
    bookings and to list an agent's upcoming appointments without a
    Square round trip.
    """

    __tablename__ = "agent_bookings"
    __table_args__ = (
        Index("idx_agent_bookings_agent", "agent_id", "booking_start"),
        Index("idx_agent_bookings_merchant", "merchant_id", "booking_start"),
        Index("idx_agent_bookings_location", "location_id", "booking_start"),
    )

    booking_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    location_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    merchant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    booking_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    booking_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    booking_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AgentBooking(booking_id={self.booking_id}, agent_id={self.agent_id}, "
            f"start={self.booking_start}, status={self.booking_status})>"
        )
