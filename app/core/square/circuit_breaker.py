"""
Circuit Breaker

Per-tenant state machine guarding outbound Square calls.

States:
- CLOSED: calls pass through
- OPEN: calls fail fast with CIRCUIT_BREAKER_OPEN until next_attempt
- HALF_OPEN: one trial window; success closes, failure reopens

Only server-class failures count: HTTP status >= 500, or the transport
codes CONNECTION_REFUSED / TIMED_OUT / DNS_NOT_FOUND. Client errors
(4xx) pass through without touching the circuit.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from app.config import get_settings
from app.core.errors import CircuitBreakerOpenError
from app.core.square.client import CONNECTION_REFUSED, DNS_NOT_FOUND, TIMED_OUT

logger = logging.getLogger(__name__)

T = TypeVar("T")

BREAKER_TRANSPORT_CODES = frozenset({CONNECTION_REFUSED, TIMED_OUT, DNS_NOT_FOUND})


class CircuitStatus(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitState:
    """Failure timestamps and state for one tenant."""

    state: CircuitStatus = CircuitStatus.CLOSED
    failures: list[float] = field(default_factory=list)
    next_attempt: Optional[float] = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": len(self.failures),
            "nextAttempt": (
                datetime.fromtimestamp(self.next_attempt, tz=timezone.utc)
                .isoformat()
                .replace("+00:00", "Z")
                if self.next_attempt is not None
                else None
            ),
        }


def is_breaker_failure(exc: BaseException) -> bool:
    """True when the failure should count toward opening the circuit."""
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and status_code >= 500:
        return True
    return getattr(exc, "transport_code", None) in BREAKER_TRANSPORT_CODES


class CircuitBreaker:
    """
    Per-tenant circuit breaker.

    Times are in seconds. The clock is injectable so tests can move time.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        failure_timeout: float = 60.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.failure_timeout = failure_timeout
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._circuits: dict[str, CircuitState] = {}

    def _circuit(self, tenant_id: str) -> CircuitState:
        circuit = self._circuits.get(tenant_id)
        if circuit is None:
            circuit = CircuitState()
            self._circuits[tenant_id] = circuit
        return circuit

    def record_failure(self, tenant_id: str, error: Optional[BaseException] = None) -> None:
        circuit = self._circuit(tenant_id)
        now = self._clock()

        circuit.failures.append(now)
        circuit.failures = [t for t in circuit.failures if now - t < self.failure_timeout]

        if circuit.state == CircuitStatus.HALF_OPEN or len(circuit.failures) >= self.failure_threshold:
            circuit.state = CircuitStatus.OPEN
            circuit.next_attempt = now + self.reset_timeout
            logger.error(
                f"Circuit breaker OPENED | tenant: {tenant_id} | "
                f"failures: {len(circuit.failures)} | next_attempt_in: {self.reset_timeout}s | "
                f"error: {error}"
            )

    def record_success(self, tenant_id: str) -> None:
        circuit = self._circuit(tenant_id)
        circuit.failures = []
        if circuit.state == CircuitStatus.HALF_OPEN:
            circuit.state = CircuitStatus.CLOSED
            circuit.next_attempt = None
            logger.info(f"Circuit breaker CLOSED | tenant: {tenant_id}")

    def can_attempt(self, tenant_id: str) -> bool:
        """Whether a call may proceed. Observes OPEN -> HALF_OPEN."""
        circuit = self._circuit(tenant_id)
        if circuit.state != CircuitStatus.OPEN:
            return True

        if circuit.next_attempt is not None and self._clock() >= circuit.next_attempt:
            circuit.state = CircuitStatus.HALF_OPEN
            logger.info(f"Circuit breaker HALF-OPEN | tenant: {tenant_id}")
            return True
        return False

    def retry_after(self, tenant_id: str) -> int:
        circuit = self._circuit(tenant_id)
        if circuit.next_attempt is None:
            return 0
        return max(0, math.ceil(circuit.next_attempt - self._clock()))

    async def execute(
        self,
        tenant_id: str,
        fn: Callable[[], Awaitable[T]],
        operation: str = "Square API",
        correlation_id: Optional[str] = None,
    ) -> T:
        """Run `fn` under the tenant's circuit.

        Raises:
            CircuitBreakerOpenError: circuit open, `fn` not invoked
        """
        if not self.can_attempt(tenant_id):
            retry_after = self.retry_after(tenant_id)
            logger.warning(
                f"Circuit breaker rejected request | tenant: {tenant_id} | "
                f"operation: {operation} | retry_after: {retry_after}s"
            )
            raise CircuitBreakerOpenError(tenant_id, retry_after, correlation_id=correlation_id)

        try:
            result = await fn()
        except Exception as e:
            if is_breaker_failure(e):
                self.record_failure(tenant_id, e)
            raise

        self.record_success(tenant_id)
        return result

    def get_state(self, tenant_id: str) -> dict[str, Any]:
        return self._circuit(tenant_id).snapshot()

    def get_all_states(self) -> dict[str, dict[str, Any]]:
        return {tenant_id: circuit.snapshot() for tenant_id, circuit in self._circuits.items()}

    def reset(self, tenant_id: Optional[str] = None) -> None:
        """Reset one tenant's circuit, or all of them."""
        if tenant_id:
            self._circuits.pop(tenant_id, None)
            logger.info(f"Circuit breaker reset | tenant: {tenant_id}")
        else:
            self._circuits.clear()
            logger.info("All circuit breakers reset")


# Singleton instance
_breaker: Optional[CircuitBreaker] = None


def get_circuit_breaker() -> CircuitBreaker:
    """Get singleton circuit breaker configured from settings."""
    global _breaker
    if _breaker is None:
        settings = get_settings()
        _breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker_threshold,
            failure_timeout=settings.circuit_breaker_window,
            reset_timeout=settings.circuit_breaker_reset,
        )
    return _breaker
