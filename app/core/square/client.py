"""
HTTP client for the Square REST API.

One client per (access token, environment). Callers pass and receive
camelCase dicts; the wire format is Square's snake_case JSON.

Square exposes:
- POST /v2/catalog/search - Search catalog objects
- GET /v2/employees - List employees
- POST /v2/team-members/search - Search team members
- POST /v2/bookings/availability/search - Search availability
- POST /v2/customers/search - Search customers
- POST /v2/customers - Create customer
- PUT /v2/customers/{id} - Update customer
- GET /v2/customers/{id} - Retrieve customer
- POST /v2/bookings - Create booking
- PUT /v2/bookings/{id} - Update booking
- POST /v2/bookings/{id}/cancel - Cancel booking
- GET /v2/bookings/{id} - Retrieve booking
- GET /v2/bookings - List bookings
"""

import logging
import re
import socket
from typing import Any, Optional

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)

BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}

# Transport failure codes counted by the circuit breaker
CONNECTION_REFUSED = "CONNECTION_REFUSED"
TIMED_OUT = "TIMED_OUT"
DNS_NOT_FOUND = "DNS_NOT_FOUND"

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def to_camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def snake_keys(value: Any) -> Any:
    """Recursively convert dict keys to snake_case."""
    if isinstance(value, dict):
        return {to_snake(k): snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [snake_keys(item) for item in value]
    return value


def camel_keys(value: Any) -> Any:
    """Recursively convert dict keys to camelCase."""
    if isinstance(value, dict):
        return {to_camel(k): camel_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camel_keys(item) for item in value]
    return value


class SquareApiError(Exception):
    """Failure talking to Square.

    Attributes:
        status_code: HTTP status, None for transport failures
        errors: Square's `errors` array (camelCased)
        transport_code: CONNECTION_REFUSED / TIMED_OUT / DNS_NOT_FOUND
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[list[dict]] = None,
        transport_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []
        self.transport_code = transport_code

    def __repr__(self) -> str:
        return (
            f"<SquareApiError(status={self.status_code}, "
            f"transport={self.transport_code}, message='{self}')>"
        )


def _transport_code(exc: httpx.TransportError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return TIMED_OUT
    cause = exc.__cause__ or exc.__context__
    while cause is not None:
        if isinstance(cause, socket.gaierror):
            return DNS_NOT_FOUND
        cause = cause.__cause__ or cause.__context__
    if "name or service not known" in str(exc).lower() or "getaddrinfo" in str(exc).lower():
        return DNS_NOT_FOUND
    return CONNECTION_REFUSED


def unwrap_result(payload: Any) -> Any:
    """Responses may arrive wrapped in a `result` envelope."""
    if isinstance(payload, dict) and "result" in payload and len(payload) == 1:
        return payload["result"]
    return payload


class SquareClient:
    """
    Async client for one merchant's Square account.

    Holds a lazily created httpx.AsyncClient; call close() when done.
    """

    def __init__(
        self,
        access_token: Optional[str],
        environment: str = "production",
        timeout: Optional[float] = None,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            access_token: Merchant OAuth or personal access token
            environment: "sandbox" or "production"
            timeout: Request timeout in seconds (defaults to settings)
            api_version: Square-Version header (defaults to settings)
            transport: Optional httpx transport (used by tests)
        """
        settings = get_settings()
        self.access_token = access_token
        self.environment = "sandbox" if environment == "sandbox" else "production"
        self.base_url = BASE_URLS[self.environment]
        self.timeout = timeout if timeout is not None else settings.square_timeout
        self.api_version = api_version or settings.square_api_version
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._in_flight = 0
        self._retired = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.access_token or ''}",
                    "Square-Version": self.api_version,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client.

        Requests already in flight finish first. A retired client that is
        used again closes its transport as soon as it goes idle.
        """
        self._retired = True
        if not self._in_flight:
            await self._shutdown()

    async def _shutdown(self) -> None:
        if self._client:
            client, self._client = self._client, None
            await client.aclose()

    @property
    def is_closed(self) -> bool:
        return self._client is None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Send a request and return the camelCased response body."""
        self._in_flight += 1
        try:
            return await self._send(method, path, body, params)
        finally:
            self._in_flight -= 1
            if self._retired and not self._in_flight:
                await self._shutdown()

    async def _send(
        self,
        method: str,
        path: str,
        body: Optional[dict],
        params: Optional[dict],
    ) -> dict:
        client = await self._get_client()

        query = None
        if params:
            query = {to_snake(k): v for k, v in params.items() if v is not None}

        try:
            response = await client.request(
                method,
                path,
                json=snake_keys(body) if body is not None else None,
                params=query,
            )
        except httpx.TransportError as e:
            code = _transport_code(e)
            logger.error(f"Square transport error | {method} {path} | code: {code} | {e}")
            raise SquareApiError(str(e) or code, transport_code=code) from e

        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            errors = camel_keys(payload.get("errors", [])) if isinstance(payload, dict) else []
            detail = errors[0].get("detail") if errors else None
            message = detail or f"Square API returned HTTP {response.status_code}"
            logger.warning(
                f"Square API error | {method} {path} | status: {response.status_code} | {message}"
            )
            raise SquareApiError(message, status_code=response.status_code, errors=errors)

        return camel_keys(unwrap_result(payload))

    # === Catalog / Team ===

    async def search_catalog_objects(self, body: dict) -> dict:
        return await self._request("POST", "/v2/catalog/search", body=body)

    async def list_employees(
        self,
        location_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> dict:
        return await self._request(
            "GET",
            "/v2/employees",
            params={"locationId": location_id, "status": status, "limit": limit, "cursor": cursor},
        )

    async def search_team_members(self, body: dict) -> dict:
        return await self._request("POST", "/v2/team-members/search", body=body)

    # === Availability ===

    async def search_availability(self, body: dict) -> dict:
        return await self._request("POST", "/v2/bookings/availability/search", body=body)

    # === Customers ===

    async def search_customers(self, body: dict) -> dict:
        return await self._request("POST", "/v2/customers/search", body=body)

    async def create_customer(self, body: dict) -> dict:
        return await self._request("POST", "/v2/customers", body=body)

    async def update_customer(self, customer_id: str, body: dict) -> dict:
        return await self._request("PUT", f"/v2/customers/{customer_id}", body=body)

    async def retrieve_customer(self, customer_id: str) -> dict:
        return await self._request("GET", f"/v2/customers/{customer_id}")

    # === Bookings ===

    async def create_booking(self, body: dict) -> dict:
        return await self._request("POST", "/v2/bookings", body=body)

    async def update_booking(self, booking_id: str, body: dict) -> dict:
        return await self._request("PUT", f"/v2/bookings/{booking_id}", body=body)

    async def cancel_booking(self, booking_id: str, body: dict) -> dict:
        return await self._request("POST", f"/v2/bookings/{booking_id}/cancel", body=body)

    async def retrieve_booking(self, booking_id: str) -> dict:
        return await self._request("GET", f"/v2/bookings/{booking_id}")

    async def list_bookings(
        self,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        customer_id: Optional[str] = None,
        team_member_id: Optional[str] = None,
        location_id: Optional[str] = None,
        start_at_min: Optional[str] = None,
        start_at_max: Optional[str] = None,
    ) -> dict:
        return await self._request(
            "GET",
            "/v2/bookings",
            params={
                "limit": limit,
                "cursor": cursor,
                "customerId": customer_id,
                "teamMemberId": team_member_id,
                "locationId": location_id,
                "startAtMin": start_at_min,
                "startAtMax": start_at_max,
            },
        )
