"""
Customer Resolver

Phone-based customer lookup (exact E.164 first, then fuzzy on digits),
creation, sparse updates, and the sanitized customer view returned to
agents.
"""

import logging
import uuid
from typing import Any, Optional

from app.core.booking.base import SquareService
from app.core.errors import AppError, from_square_error
from app.core.square.client import SquareApiError
from app.core.square.normalizers import (
    clean_big_int,
    digits_only,
    format_phone_number,
    phones_match,
    to_big_int,
    validate_email_address,
)
from app.core.tenant import RequestContext

logger = logging.getLogger(__name__)

CUSTOMER_NOTE = "Customer created via booking system"


def sanitize_customer(customer: Optional[dict]) -> Optional[dict]:
    """Customer view for agents. Addresses and other sensitive fields are dropped."""
    if not customer:
        return None
    return clean_big_int(
        {
            "id": customer.get("id"),
            "given_name": customer.get("givenName"),
            "family_name": customer.get("familyName"),
            "email_address": customer.get("emailAddress"),
            "phone_number": customer.get("phoneNumber"),
            "created_at": customer.get("createdAt"),
            "updated_at": customer.get("updatedAt"),
            "preferences": customer.get("preferences"),
            "creation_source": customer.get("creationSource"),
        }
    )


def _first(data: dict, *keys: str) -> Any:
    """First present key among aliases (None counts as absent)."""
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _canonical_phone(raw: str, ctx: RequestContext) -> str:
    result = format_phone_number(raw)
    if not result.is_valid:
        raise AppError(
            "VALIDATION_INVALID_PHONE",
            message=f"Invalid phone number: {result.error}",
            details={"field": "phoneNumber"},
            correlation_id=ctx.correlation_id,
        )
    return result.formatted


def _canonical_email(raw: str, ctx: RequestContext) -> str:
    is_valid, normalized, error = validate_email_address(raw)
    if not is_valid:
        raise AppError(
            "VALIDATION_INVALID_EMAIL",
            message=f"Invalid email: {error}",
            details={"field": "email"},
            correlation_id=ctx.correlation_id,
        )
    return normalized


class CustomerResolver(SquareService):
    """Finds, creates and updates Square customers for a tenant."""

    async def search_by_phone(self, ctx: RequestContext, phone_number: str) -> Optional[dict]:
        """Find a customer by phone. Returns the sanitized customer or None."""
        formatted = _canonical_phone(phone_number, ctx)
        query_digits = digits_only(phone_number)

        try:
            response = await self._call(
                ctx,
                "customers_search_exact",
                lambda client: client.search_customers(
                    {"query": {"filter": {"phoneNumber": {"exact": formatted}}}}
                ),
            )
            customers = response.get("customers") or []
            if customers:
                ctx.event("customer_found", search_type="exact", customer_id=customers[0].get("id"))
                return sanitize_customer(customers[0])

            response = await self._call(
                ctx,
                "customers_search_fuzzy",
                lambda client: client.search_customers(
                    {"query": {"filter": {"phoneNumber": {"fuzzy": query_digits}}}}
                ),
            )
        except SquareApiError as e:
            if e.status_code == 404:
                return None
            raise from_square_error(e, resource="customer", correlation_id=ctx.correlation_id) from e

        candidates = response.get("customers") or []
        for customer in candidates:
            if phones_match(query_digits, customer.get("phoneNumber")):
                ctx.event(
                    "customer_found",
                    search_type="fuzzy",
                    customer_id=customer.get("id"),
                    customers_checked=len(candidates),
                )
                return sanitize_customer(customer)

        if candidates:
            ctx.warn(f"Fuzzy search returned {len(candidates)} customers but none matched")
        ctx.event("customer_not_found", search_type="both")
        return None

    async def retrieve_customer(self, ctx: RequestContext, customer_id: str) -> dict:
        """Fetch a customer by id. Raises CUSTOMER_NOT_FOUND on 404."""
        try:
            response = await self._call(
                ctx, "customers_retrieve", lambda client: client.retrieve_customer(customer_id)
            )
        except SquareApiError as e:
            raise from_square_error(e, resource="customer", correlation_id=ctx.correlation_id) from e
        return sanitize_customer(response.get("customer"))

    async def create_customer(
        self,
        ctx: RequestContext,
        given_name: Optional[str] = None,
        family_name: Optional[str] = None,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> dict:
        """Create a customer from whatever identifying fields were supplied."""
        body: dict[str, Any] = {"idempotencyKey": str(uuid.uuid4()), "note": CUSTOMER_NOTE}
        if given_name and given_name.strip():
            body["givenName"] = given_name.strip()
        if family_name and family_name.strip():
            body["familyName"] = family_name.strip()
        if email and email.strip():
            body["emailAddress"] = _canonical_email(email, ctx)
        if phone_number and phone_number.strip():
            body["phoneNumber"] = _canonical_phone(phone_number, ctx)

        if not any(k in body for k in ("givenName", "familyName", "emailAddress", "phoneNumber")):
            raise AppError(
                "VALIDATION_MISSING_FIELD",
                message="At least one of firstName, lastName, email or phoneNumber is required",
                correlation_id=ctx.correlation_id,
            )

        try:
            response = await self._call(
                ctx, "customers_create", lambda client: client.create_customer(body)
            )
        except SquareApiError as e:
            raise from_square_error(
                e,
                resource="customer",
                correlation_id=ctx.correlation_id,
                conflict_code="CUSTOMER_DUPLICATE",
            ) from e

        customer = response.get("customer")
        if not customer or not customer.get("id"):
            raise AppError(
                "CUSTOMER_CREATION_FAILED",
                message="No customer returned from Square API",
                correlation_id=ctx.correlation_id,
            )

        ctx.event("customer_created", customer_id=customer["id"])
        return sanitize_customer(customer)

    async def update_customer(self, ctx: RequestContext, customer_id: str, update: dict) -> dict:
        """Sparse update. Empty or missing fields leave the stored value alone.

        Accepts `firstName|givenName`, `lastName|familyName`,
        `email|emailAddress`, `phoneNumber`, `note` and `version`.
        """
        if not customer_id or not isinstance(customer_id, str):
            raise AppError(
                "VALIDATION_MISSING_FIELD",
                message="customerId is required",
                details={"field": "customerId"},
                correlation_id=ctx.correlation_id,
            )

        first = _first(update, "firstName", "givenName")
        last = _first(update, "lastName", "familyName")
        email = _first(update, "email", "emailAddress")
        phone = update.get("phoneNumber")
        note = update.get("note")
        version = update.get("version")

        if all(v is None for v in (first, last, email, phone, note, version)):
            raise AppError(
                "VALIDATION_MISSING_FIELD",
                message="At least one field must be provided for update",
                correlation_id=ctx.correlation_id,
            )

        body: dict[str, Any] = {}
        if first:
            body["givenName"] = str(first).strip()
        if last:
            body["familyName"] = str(last).strip()
        if email:
            body["emailAddress"] = _canonical_email(email, ctx)
        if phone:
            body["phoneNumber"] = _canonical_phone(phone, ctx)
        if note:
            body["note"] = note
        if version is not None:
            try:
                body["version"] = to_big_int(version)
            except ValueError as e:
                raise AppError(
                    "VALIDATION_INVALID_FORMAT",
                    message="version must be an integer",
                    details={"field": "version"},
                    correlation_id=ctx.correlation_id,
                ) from e

        ctx.event("customer_update", customer_id=customer_id, fields=",".join(sorted(body)))

        try:
            response = await self._call(
                ctx,
                "customers_update",
                lambda client: client.update_customer(customer_id.strip(), body),
            )
        except SquareApiError as e:
            raise from_square_error(e, resource="customer", correlation_id=ctx.correlation_id) from e

        customer = response.get("customer")
        if not customer:
            raise AppError(
                "CUSTOMER_UPDATE_FAILED",
                message="No customer returned from Square API",
                correlation_id=ctx.correlation_id,
            )
        return sanitize_customer(customer)

    async def find_or_create(
        self,
        ctx: RequestContext,
        phone_number: Optional[str] = None,
        given_name: Optional[str] = None,
        family_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> dict:
        """Resolve the caller by phone, creating the customer when absent."""
        if phone_number:
            existing = await self.search_by_phone(ctx, phone_number)
            if existing:
                return existing

        return await self.create_customer(
            ctx,
            given_name=given_name,
            family_name=family_name,
            email=email,
            phone_number=phone_number,
        )


# Singleton instance
_resolver: Optional[CustomerResolver] = None


def get_customer_resolver() -> CustomerResolver:
    """Get singleton customer resolver."""
    global _resolver
    if _resolver is None:
        _resolver = CustomerResolver()
    return _resolver
