"""Tests for the agent booking ledger."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.infra.ledger import AgentBookingLedger, extract_booking_metadata


def session_context(db):
    """Session factory yielding the given mock session."""

    @asynccontextmanager
    async def _context():
        yield db

    return _context


class TestExtractBookingMetadata:
    """Test ledger columns derived from a booking."""

    def test_top_level_start(self):
        metadata = extract_booking_metadata(
            {"id": "BK1", "locationId": "LOC1", "startAt": "2025-01-17T15:00:00Z", "status": "ACCEPTED"}
        )

        assert metadata == {
            "booking_id": "BK1",
            "location_id": "LOC1",
            "booking_start": datetime(2025, 1, 17, 15, 0, tzinfo=timezone.utc),
            "booking_status": "ACCEPTED",
        }

    def test_falls_back_to_first_segment(self):
        metadata = extract_booking_metadata(
            {"id": "BK1", "appointmentSegments": [{"startAt": "2025-01-17T16:00:00Z"}]}
        )

        assert metadata["booking_start"] == datetime(2025, 1, 17, 16, 0, tzinfo=timezone.utc)

    def test_no_start(self):
        assert extract_booking_metadata({"id": "BK1"})["booking_start"] is None


class TestAgentBookingLedger:
    """Test ledger reads and writes against a mocked session."""

    @pytest.fixture
    def db(self):
        mock = AsyncMock()
        mock.execute = AsyncMock()
        return mock

    @pytest.fixture
    def ledger(self, db):
        return AgentBookingLedger(session_context=session_context(db))

    @pytest.mark.asyncio
    async def test_upsert(self, ledger, db, tenant):
        written = await ledger.upsert(
            {"id": "BK1", "startAt": "2025-01-17T15:00:00Z", "version": 2}, tenant
        )

        assert written is True
        db.execute.assert_awaited_once()
        params = db.execute.await_args.args[0].compile().params
        assert params["booking_id"] == "BK1"
        assert params["agent_id"] == "agent-1"
        assert params["tenant_id"] == "tenant-1"
        assert params["location_id"] == "LOC1234567890"
        assert params["booking_payload"]["version"] == "2"

    @pytest.mark.asyncio
    async def test_upsert_explicit_agent(self, ledger, db, tenant):
        await ledger.upsert({"id": "BK1"}, tenant, agent_id="agent-9")

        assert db.execute.await_args.args[0].compile().params["agent_id"] == "agent-9"

    @pytest.mark.asyncio
    async def test_upsert_without_id_skipped(self, ledger, db, tenant):
        assert await ledger.upsert({"status": "ACCEPTED"}, tenant) is False
        assert await ledger.upsert(None, tenant) is False
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upsert_failure_swallowed(self, ledger, db, tenant):
        """Test a database failure is logged, not raised."""
        db.execute.side_effect = RuntimeError("connection reset")

        assert await ledger.upsert({"id": "BK1"}, tenant) is False

    @pytest.mark.asyncio
    async def test_remove(self, ledger, db):
        assert await ledger.remove("BK1") is True
        db.execute.assert_awaited_once()

        assert await ledger.remove("") is False

    @pytest.mark.asyncio
    async def test_remove_failure_swallowed(self, ledger, db):
        db.execute.side_effect = RuntimeError("down")

        assert await ledger.remove("BK1") is False

    @pytest.mark.asyncio
    async def test_is_agent_booking(self, ledger, db):
        result = MagicMock()
        result.scalar_one_or_none.return_value = "BK1"
        db.execute.return_value = result

        assert await ledger.is_agent_booking("agent-1", "BK1") is True

        result.scalar_one_or_none.return_value = None
        assert await ledger.is_agent_booking("agent-2", "BK1") is False

    @pytest.mark.asyncio
    async def test_is_agent_booking_missing_args(self, ledger, db):
        assert await ledger.is_agent_booking(None, "BK1") is False
        assert await ledger.is_agent_booking("agent-1", None) is False
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_is_agent_booking_error_denies(self, ledger, db):
        db.execute.side_effect = RuntimeError("down")

        assert await ledger.is_agent_booking("agent-1", "BK1") is False

    @pytest.mark.asyncio
    async def test_list_upcoming(self, ledger, db):
        row = SimpleNamespace(
            booking_id="BK1",
            location_id="LOC1",
            merchant_id="M1",
            booking_start=datetime(2025, 1, 17, 15, 0, tzinfo=timezone.utc),
            booking_status="ACCEPTED",
            booking_payload={"id": "BK1"},
        )
        result = MagicMock()
        result.scalars.return_value.all.return_value = [row]
        db.execute.return_value = result

        bookings = await ledger.list_upcoming(
            "agent-1", limit=5, now=datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        )

        assert bookings == [
            {
                "bookingId": "BK1",
                "locationId": "LOC1",
                "merchantId": "M1",
                "startAt": "2025-01-17T15:00:00.000Z",
                "status": "ACCEPTED",
                "booking": {"id": "BK1"},
            }
        ]
        params = db.execute.await_args.args[0].compile().params
        assert params["agent_id_1"] == "agent-1"
        assert params["booking_start_1"] == datetime(2025, 1, 15, 11, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_list_upcoming_error_empty(self, ledger, db):
        db.execute.side_effect = RuntimeError("down")

        assert await ledger.list_upcoming("agent-1") == []
        assert await ledger.list_upcoming(None) == []
