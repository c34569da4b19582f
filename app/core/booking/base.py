"""
Base class for tenant-scoped Square services.

Provides the shared plumbing every booking-side service needs: the
tenant's client from the factory and circuit-breaker protection for
each outbound call.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Optional

from app.core.square.circuit_breaker import CircuitBreaker, get_circuit_breaker
from app.core.square.client import SquareClient
from app.core.square.factory import ClientFactory, get_client_factory
from app.core.tenant import RequestContext

logger = logging.getLogger(__name__)


class SquareService:
    """
    Base class for services that call Square on behalf of a tenant.

    Subclasses call `_call()` for every outbound request so the tenant's
    circuit sees the outcome.
    """

    def __init__(
        self,
        factory: Optional[ClientFactory] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Args:
            factory: Client factory. If None, uses singleton.
            breaker: Circuit breaker. If None, uses singleton.
        """
        self._factory = factory
        self._breaker = breaker

    @property
    def factory(self) -> ClientFactory:
        if self._factory is None:
            self._factory = get_client_factory()
        return self._factory

    @property
    def breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = get_circuit_breaker()
        return self._breaker

    async def _call(
        self,
        ctx: RequestContext,
        operation: str,
        call: Callable[[SquareClient], Awaitable[Any]],
    ) -> Any:
        """Run one Square call for the request's tenant under its circuit."""
        client = self.factory.get_tenant_client(ctx.tenant)
        started = time.monotonic()
        try:
            return await self.breaker.execute(
                ctx.tenant.tenant_id,
                lambda: call(client),
                operation=operation,
                correlation_id=ctx.correlation_id,
            )
        finally:
            logger.debug(
                f"Square call | operation: {operation} | tenant: {ctx.tenant.tenant_id} | "
                f"duration_ms: {int((time.monotonic() - started) * 1000)} | "
                f"correlation_id: {ctx.correlation_id}"
            )
