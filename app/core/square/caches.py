"""
Read Caches

Per-tenant catalog (appointment services) and staff caches. Entries are
fresh for a configured TTL; misses fetch through the circuit breaker, and
staff loads are also coalesced so a burst of callers makes one upstream
call.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from app.config import get_settings
from app.core.errors import AppError, from_square_error
from app.core.square.circuit_breaker import CircuitBreaker, get_circuit_breaker
from app.core.square.client import SquareClient
from app.core.square.coalescer import QueryCoalescer, get_query_coalescer
from app.core.square.factory import ClientFactory, get_client_factory
from app.core.square.normalizers import is_valid_square_id
from app.core.tenant import TenantContext

logger = logging.getLogger(__name__)

STAFF_COALESCE_TTL = 5.0


@dataclass
class CacheEntry:
    data: Any
    fetched_at: float

    def is_fresh(self, ttl: float, now: float) -> bool:
        return now - self.fetched_at < ttl


class TenantCache:
    """Tenant-keyed store with TTL staleness."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, tenant_id: str) -> Optional[Any]:
        entry = self._entries.get(tenant_id)
        if entry is not None and entry.is_fresh(self.ttl, self._clock()):
            return entry.data
        return None

    def set(self, tenant_id: str, data: Any) -> None:
        self._entries[tenant_id] = CacheEntry(data=data, fetched_at=self._clock())

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id:
            self._entries.pop(tenant_id, None)
        else:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _map_variation(variation: dict) -> dict:
    data = variation.get("itemVariationData") or {}
    money = data.get("priceMoney") or {}
    return {
        "id": variation.get("id"),
        "name": data.get("name"),
        "version": variation.get("version"),
        "price": money.get("amount"),
        "currency": money.get("currency"),
        "duration": data.get("serviceDuration"),
        "teamMemberIds": data.get("teamMemberIds") or [],
    }


def map_catalog_item(item: dict) -> dict:
    """Normalize a catalog ITEM into the service shape agents consume."""
    data = item.get("itemData") or {}
    return {
        "id": item.get("id"),
        "name": data.get("name"),
        "description": data.get("description") or "",
        "imageIds": data.get("imageIds") or [],
        "variations": [_map_variation(v) for v in data.get("variations") or []],
    }


def map_employee(employee: dict) -> dict:
    first = employee.get("firstName") or ""
    last = employee.get("lastName") or ""
    return {
        "id": employee.get("id"),
        "firstName": employee.get("firstName"),
        "lastName": employee.get("lastName"),
        "fullName": f"{first} {last}".strip(),
        "email": employee.get("email"),
        "phoneNumber": employee.get("phoneNumber"),
        "isOwner": bool(employee.get("isOwner")),
        "status": employee.get("status"),
        "locationIds": employee.get("locationIds") or [],
    }


def map_team_member(member: dict) -> dict:
    first = member.get("givenName") or ""
    last = member.get("familyName") or ""
    return {
        "id": member.get("id"),
        "firstName": member.get("givenName"),
        "lastName": member.get("familyName"),
        "fullName": f"{first} {last}".strip(),
        "email": member.get("emailAddress"),
        "phoneNumber": member.get("phoneNumber"),
        "isOwner": bool(member.get("isOwner")),
        "status": member.get("status"),
        "locationIds": (member.get("assignedLocations") or {}).get("locationIds") or [],
    }


class CatalogCache:
    """Appointment services per tenant."""

    def __init__(
        self,
        ttl: Optional[float] = None,
        factory: Optional[ClientFactory] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = TenantCache(
            ttl if ttl is not None else get_settings().catalog_ttl_seconds, clock=clock
        )
        self.factory = factory or get_client_factory()
        self.breaker = breaker or get_circuit_breaker()

    async def load(self, tenant: TenantContext, correlation_id: Optional[str] = None) -> dict:
        """Return `{"services": [...]}` for the tenant."""
        cached = self.store.get(tenant.tenant_id)
        if cached is not None:
            logger.debug(f"Cache hit | cache: catalog | tenant: {tenant.tenant_id}")
            return cached

        logger.debug(f"Cache miss | cache: catalog | tenant: {tenant.tenant_id}")
        client = self.factory.get_tenant_client(tenant)
        started = time.monotonic()

        try:
            objects = await self._fetch_all(tenant, client, correlation_id)
        except AppError:
            raise
        except Exception as e:
            logger.error(
                f"Catalog load failed | tenant: {tenant.tenant_id} | "
                f"duration_ms: {int((time.monotonic() - started) * 1000)} | {e}"
            )
            raise from_square_error(e, correlation_id=correlation_id) from e

        services = [
            map_catalog_item(obj)
            for obj in objects
            if obj.get("type") == "ITEM"
            and (obj.get("itemData") or {}).get("productType") == "APPOINTMENTS_SERVICE"
        ]
        logger.info(
            f"Catalog loaded | tenant: {tenant.tenant_id} | services: {len(services)} | "
            f"duration_ms: {int((time.monotonic() - started) * 1000)}"
        )

        data = {"services": services}
        self.store.set(tenant.tenant_id, data)
        return data

    async def _fetch_all(
        self, tenant: TenantContext, client: SquareClient, correlation_id: Optional[str]
    ) -> list[dict]:
        objects: list[dict] = []
        cursor = None
        while True:
            body: dict[str, Any] = {"objectTypes": ["ITEM"], "includeRelatedObjects": True}
            if cursor:
                body["cursor"] = cursor
            response = await self.breaker.execute(
                tenant.tenant_id,
                lambda: client.search_catalog_objects(body),
                operation="catalog_search",
                correlation_id=correlation_id,
            )
            objects.extend(response.get("objects") or [])
            cursor = response.get("cursor")
            if not cursor:
                return objects


class StaffCache:
    """Active team members per tenant."""

    def __init__(
        self,
        ttl: Optional[float] = None,
        factory: Optional[ClientFactory] = None,
        breaker: Optional[CircuitBreaker] = None,
        coalescer: Optional[QueryCoalescer] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = TenantCache(
            ttl if ttl is not None else get_settings().staff_ttl_seconds, clock=clock
        )
        self.factory = factory or get_client_factory()
        self.breaker = breaker or get_circuit_breaker()
        self.coalescer = coalescer or get_query_coalescer()

    async def load(self, tenant: TenantContext, correlation_id: Optional[str] = None) -> dict:
        """Return `{"staffMembers": [...]}` for the tenant."""
        cached = self.store.get(tenant.tenant_id)
        if cached is not None:
            logger.debug(f"Cache hit | cache: staff_members | tenant: {tenant.tenant_id}")
            return cached

        logger.debug(f"Cache miss | cache: staff_members | tenant: {tenant.tenant_id}")
        return await self.coalescer.coalesce(
            f"staff-{tenant.tenant_id}",
            lambda: self._fetch(tenant, correlation_id),
            STAFF_COALESCE_TTL,
        )

    async def _fetch(self, tenant: TenantContext, correlation_id: Optional[str]) -> dict:
        client = self.factory.get_tenant_client(tenant)

        try:
            response = await self.breaker.execute(
                tenant.tenant_id,
                lambda: client.list_employees(location_id=tenant.location_id, status="ACTIVE"),
                operation="employees_list",
                correlation_id=correlation_id,
            )
            staff = [map_employee(e) for e in response.get("employees") or []]
        except AppError:
            raise
        except Exception as employees_error:
            logger.warning(
                f"Employees list failed, trying team members search | "
                f"tenant: {tenant.tenant_id} | {employees_error}"
            )
            search_filter: dict[str, Any] = {"status": "ACTIVE"}
            if tenant.location_id:
                search_filter["locationIds"] = [tenant.location_id]
            body = {"query": {"filter": search_filter}}
            try:
                response = await self.breaker.execute(
                    tenant.tenant_id,
                    lambda: client.search_team_members(body),
                    operation="team_members_search",
                    correlation_id=correlation_id,
                )
            except AppError:
                raise
            except Exception as e:
                logger.error(f"Staff load failed | tenant: {tenant.tenant_id} | {e}")
                raise from_square_error(e, correlation_id=correlation_id) from e
            staff = [map_team_member(m) for m in response.get("teamMembers") or []]

        logger.info(f"Staff loaded | tenant: {tenant.tenant_id} | staff_members: {len(staff)}")
        data = {"staffMembers": staff}
        self.store.set(tenant.tenant_id, data)
        return data

    async def validate_staff_member_id(
        self,
        tenant: TenantContext,
        staff_member_id: Optional[str],
        check_exists: bool = True,
    ) -> tuple[bool, Optional[str]]:
        """Check a staff id. None is allowed (the filter is optional).

        When staff cannot be loaded only the format is checked.
        """
        if staff_member_id is None:
            return True, None
        if not isinstance(staff_member_id, str) or not staff_member_id.strip():
            return False, "Staff member ID cannot be empty when provided"
        if not is_valid_square_id(staff_member_id):
            return False, "Staff member ID has an invalid format"
        if not check_exists:
            return True, None

        try:
            staff = (await self.load(tenant))["staffMembers"]
        except Exception as e:
            logger.warning(f"Could not load staff members for validation: {e}")
            return True, None

        if not any(member["id"] == staff_member_id for member in staff):
            return False, "Staff member ID not found in catalog"
        return True, None


def validate_service_variation_id(
    service_variation_id: Any,
    services: Optional[list[dict]] = None,
) -> tuple[bool, Optional[str]]:
    """Check a service variation id, and its presence when a catalog is given."""
    if not isinstance(service_variation_id, str) or not service_variation_id.strip():
        return False, "Invalid service variation ID"
    if not is_valid_square_id(service_variation_id):
        return False, "Service variation ID has an invalid format"
    if services is not None:
        exists = any(
            variation.get("id") == service_variation_id
            for service in services
            for variation in service.get("variations") or []
        )
        if not exists:
            return False, "Service variation ID not found in catalog"
    return True, None


# Singleton instances
_catalog_cache: Optional[CatalogCache] = None
_staff_cache: Optional[StaffCache] = None


def get_catalog_cache() -> CatalogCache:
    global _catalog_cache
    if _catalog_cache is None:
        _catalog_cache = CatalogCache()
    return _catalog_cache


def get_staff_cache() -> StaffCache:
    global _staff_cache
    if _staff_cache is None:
        _staff_cache = StaffCache()
    return _staff_cache
