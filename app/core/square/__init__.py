"""
Square integration layer.

Provides:
- SquareClient: async REST client for one merchant
- ClientFactory: LRU-bounded client cache per (token, environment)
- CircuitBreaker: per-tenant failure isolation
- QueryCoalescer: de-duplication of concurrent reads
- CatalogCache / StaffCache: per-tenant read caches
"""

from app.core.square.caches import (
    CatalogCache,
    StaffCache,
    get_catalog_cache,
    get_staff_cache,
    validate_service_variation_id,
)
from app.core.square.circuit_breaker import (
    CircuitBreaker,
    CircuitStatus,
    get_circuit_breaker,
    is_breaker_failure,
)
from app.core.square.client import SquareApiError, SquareClient
from app.core.square.coalescer import QueryCoalescer, get_query_coalescer
from app.core.square.factory import ClientFactory, get_client_factory

__all__ = [
    # Client
    "SquareClient",
    "SquareApiError",
    "ClientFactory",
    "get_client_factory",
    # Resilience
    "CircuitBreaker",
    "CircuitStatus",
    "get_circuit_breaker",
    "is_breaker_failure",
    "QueryCoalescer",
    "get_query_coalescer",
    # Caches
    "CatalogCache",
    "StaffCache",
    "get_catalog_cache",
    "get_staff_cache",
    "validate_service_variation_id",
]
