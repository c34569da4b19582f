"""Tests for the per-tenant circuit breaker."""

from unittest.mock import AsyncMock

import pytest

from app.core.errors import CircuitBreakerOpenError
from app.core.square.circuit_breaker import CircuitBreaker, CircuitStatus, is_breaker_failure
from app.core.square.client import SquareApiError


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def server_error():
    return SquareApiError("Internal error", status_code=500)


class TestCircuitBreaker:
    """Test circuit state transitions."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=5, failure_timeout=60, reset_timeout=30, clock=clock)

    async def _fail(self, breaker, tenant_id="tenant-1", error=None):
        with pytest.raises(SquareApiError):
            await breaker.execute(tenant_id, AsyncMock(side_effect=error or server_error()))

    @pytest.mark.asyncio
    async def test_passes_result_through(self, breaker):
        result = await breaker.execute("tenant-1", AsyncMock(return_value={"ok": True}))

        assert result == {"ok": True}
        assert breaker.get_state("tenant-1")["state"] == "CLOSED"

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker, clock):
        """Test five server failures within the window reject the sixth call."""
        for _ in range(5):
            await self._fail(breaker)
            clock.advance(1)

        fn = AsyncMock()
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute("tenant-1", fn, correlation_id="c-1")

        fn.assert_not_awaited()
        assert breaker.get_state("tenant-1")["state"] == "OPEN"
        assert exc_info.value.retry_after == 29
        assert exc_info.value.correlation_id == "c-1"

    @pytest.mark.asyncio
    async def test_retry_after_matches_reset_timeout(self, breaker):
        for _ in range(5):
            await self._fail(breaker)

        assert breaker.retry_after("tenant-1") == 30

    @pytest.mark.asyncio
    async def test_client_errors_do_not_count(self, breaker):
        """Test 4xx failures propagate without touching the circuit."""
        for _ in range(10):
            await self._fail(breaker, error=SquareApiError("Not found", status_code=404))

        state = breaker.get_state("tenant-1")
        assert state["state"] == "CLOSED"
        assert state["failures"] == 0

    @pytest.mark.asyncio
    async def test_transport_failures_count(self, breaker):
        for _ in range(5):
            await self._fail(breaker, error=SquareApiError("timeout", transport_code="TIMED_OUT"))

        assert breaker.get_state("tenant-1")["state"] == "OPEN"

    @pytest.mark.asyncio
    async def test_failures_outside_window_pruned(self, breaker, clock):
        for _ in range(4):
            await self._fail(breaker)
        clock.advance(61)
        await self._fail(breaker)

        state = breaker.get_state("tenant-1")
        assert state["state"] == "CLOSED"
        assert state["failures"] == 1

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, breaker, clock):
        for _ in range(5):
            await self._fail(breaker)
        clock.advance(30)

        result = await breaker.execute("tenant-1", AsyncMock(return_value="ok"))

        assert result == "ok"
        state = breaker.get_state("tenant-1")
        assert state["state"] == "CLOSED"
        assert state["nextAttempt"] is None

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        for _ in range(5):
            await self._fail(breaker)
        clock.advance(31)

        await self._fail(breaker)

        assert breaker.get_state("tenant-1")["state"] == "OPEN"
        assert breaker.retry_after("tenant-1") == 30

    @pytest.mark.asyncio
    async def test_tenants_isolated(self, breaker):
        for _ in range(5):
            await self._fail(breaker, tenant_id="tenant-a")

        result = await breaker.execute("tenant-b", AsyncMock(return_value="ok"))

        assert result == "ok"
        assert breaker.get_state("tenant-a")["state"] == "OPEN"
        assert breaker.get_state("tenant-b")["state"] == "CLOSED"

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        for _ in range(5):
            await self._fail(breaker, tenant_id="tenant-a")
            await self._fail(breaker, tenant_id="tenant-b")

        breaker.reset("tenant-a")
        assert breaker.can_attempt("tenant-a")
        assert not breaker.can_attempt("tenant-b")

        breaker.reset()
        assert breaker.get_all_states() == {}

    @pytest.mark.asyncio
    async def test_snapshot(self, breaker):
        for _ in range(5):
            await self._fail(breaker)

        state = breaker.get_state("tenant-1")

        assert state["failures"] == 5
        assert state["nextAttempt"].endswith("Z")
        assert CircuitStatus(state["state"]) is CircuitStatus.OPEN


class TestIsBreakerFailure:
    """Test which failures count toward opening."""

    def test_classification(self):
        assert is_breaker_failure(SquareApiError("x", status_code=500))
        assert is_breaker_failure(SquareApiError("x", status_code=503))
        assert is_breaker_failure(SquareApiError("x", transport_code="DNS_NOT_FOUND"))
        assert not is_breaker_failure(SquareApiError("x", status_code=400))
        assert not is_breaker_failure(ValueError("x"))
