"""
Error Taxonomy

Standardized error codes for the gateway. Every failure surfaced to a
caller carries a stable string code, a numeric code, an HTTP status and
a default message.

Categories:
    1xxx: Authentication & Authorization
    2xxx: Validation
    3xxx: Booking
    4xxx: Customer
    5xxx: Square API
    6xxx: Webhook
    7xxx: System

Usage:
    from app.core.errors import create_error

    raise create_error("BOOKING_NOT_FOUND", {"bookingId": booking_id}, correlation_id)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorDefinition:
    """Numeric code, HTTP status and default message for an error code."""

    code: int
    status: int
    message: str


ErrorCodes: dict[str, ErrorDefinition] = {
    # 1xxx: Authentication & Authorization
    "AUTH_MISSING_TOKEN": ErrorDefinition(1001, 401, "Authentication token required"),
    "AUTH_INVALID_TOKEN": ErrorDefinition(1002, 401, "Invalid authentication token"),
    "AUTH_TOKEN_EXPIRED": ErrorDefinition(1003, 401, "Authentication token has expired"),
    "AUTH_SESSION_EXPIRED": ErrorDefinition(1004, 401, "Session has expired"),
    "AUTH_SESSION_NOT_FOUND": ErrorDefinition(1005, 401, "Session not found"),
    "AUTH_INSUFFICIENT_PERMISSIONS": ErrorDefinition(
        1006, 403, "Insufficient permissions for this operation"
    ),
    "AUTH_INVALID_SIGNATURE": ErrorDefinition(1007, 401, "Invalid request signature"),
    "AUTH_TENANT_NOT_FOUND": ErrorDefinition(1008, 404, "Tenant configuration not found"),
    # 2xxx: Validation
    "VALIDATION_MISSING_FIELD": ErrorDefinition(2001, 400, "Required field is missing"),
    "VALIDATION_INVALID_FORMAT": ErrorDefinition(2002, 400, "Invalid field format"),
    "VALIDATION_OUT_OF_RANGE": ErrorDefinition(2003, 400, "Value is out of acceptable range"),
    "VALIDATION_INVALID_PHONE": ErrorDefinition(2004, 400, "Invalid phone number format"),
    "VALIDATION_INVALID_EMAIL": ErrorDefinition(2005, 400, "Invalid email address format"),
    "VALIDATION_INVALID_DATE": ErrorDefinition(2006, 400, "Invalid date or time format"),
    "VALIDATION_PAST_DATE": ErrorDefinition(2007, 400, "Date cannot be in the past"),
    "VALIDATION_INVALID_DURATION": ErrorDefinition(2008, 400, "Invalid service duration"),
    "VALIDATION_INVALID_ACTION": ErrorDefinition(2009, 400, "Invalid action"),
    # 3xxx: Booking
    "BOOKING_NOT_FOUND": ErrorDefinition(3001, 404, "Booking not found"),
    "BOOKING_SLOT_UNAVAILABLE": ErrorDefinition(
        3002, 409, "The requested time slot is no longer available"
    ),
    "BOOKING_CONFLICT": ErrorDefinition(
        3003, 409, "Booking conflicts with existing appointment"
    ),
    "BOOKING_CREATION_FAILED": ErrorDefinition(3004, 500, "Failed to create booking"),
    "BOOKING_UPDATE_FAILED": ErrorDefinition(3005, 500, "Failed to update booking"),
    "BOOKING_CANCEL_FAILED": ErrorDefinition(3006, 500, "Failed to cancel booking"),
    "BOOKING_ALREADY_CANCELLED": ErrorDefinition(
        3007, 400, "Booking has already been cancelled"
    ),
    "BOOKING_TOO_SHORT_NOTICE": ErrorDefinition(
        3008, 400, "Booking requires more advance notice"
    ),
    "BOOKING_SERVICE_NOT_FOUND": ErrorDefinition(3009, 404, "Requested service not found"),
    "BOOKING_TEAM_MEMBER_NOT_FOUND": ErrorDefinition(
        3010, 404, "Requested team member not available"
    ),
    "BOOKING_VERSION_CONFLICT": ErrorDefinition(
        3011, 409, "Booking was modified by another process"
    ),
    # 4xxx: Customer
    "CUSTOMER_NOT_FOUND": ErrorDefinition(4001, 404, "Customer not found"),
    "CUSTOMER_CREATION_FAILED": ErrorDefinition(4002, 500, "Failed to create customer"),
    "CUSTOMER_UPDATE_FAILED": ErrorDefinition(4003, 500, "Failed to update customer"),
    "CUSTOMER_DUPLICATE": ErrorDefinition(4004, 409, "Customer already exists"),
    "CUSTOMER_SEARCH_FAILED": ErrorDefinition(4005, 500, "Failed to search customers"),
    "CUSTOMER_VERSION_CONFLICT": ErrorDefinition(
        4006, 409, "Customer was modified by another process"
    ),
    # 5xxx: Square API
    "SQUARE_API_ERROR": ErrorDefinition(5001, 502, "Square API returned an error"),
    "SQUARE_AUTH_FAILED": ErrorDefinition(
        5002, 401, "Square authentication failed - invalid access token"
    ),
    "SQUARE_RATE_LIMIT": ErrorDefinition(5003, 429, "Square API rate limit exceeded"),
    "SQUARE_TIMEOUT": ErrorDefinition(5004, 504, "Square API request timeout"),
    "SQUARE_NETWORK_ERROR": ErrorDefinition(
        5005, 503, "Network error communicating with Square"
    ),
    "SQUARE_INVALID_REQUEST": ErrorDefinition(
        5006, 400, "Invalid request sent to Square API"
    ),
    "SQUARE_RESOURCE_NOT_FOUND": ErrorDefinition(5007, 404, "Resource not found in Square"),
    "SQUARE_LOCATION_NOT_FOUND": ErrorDefinition(5008, 404, "Square location not found"),
    # 6xxx: Webhook
    "WEBHOOK_INVALID_SIGNATURE": ErrorDefinition(6001, 401, "Invalid webhook signature"),
    "WEBHOOK_INVALID_PAYLOAD": ErrorDefinition(6002, 400, "Invalid webhook payload format"),
    "WEBHOOK_PROCESSING_FAILED": ErrorDefinition(6003, 500, "Webhook processing failed"),
    "WEBHOOK_EVENT_TYPE_UNKNOWN": ErrorDefinition(6004, 400, "Unknown webhook event type"),
    "WEBHOOK_DUPLICATE_EVENT": ErrorDefinition(
        6005, 200, "Duplicate webhook event (already processed)"
    ),
    # 7xxx: System
    "SYSTEM_CONFIGURATION_ERROR": ErrorDefinition(7001, 500, "System configuration error"),
    "SYSTEM_SECRET_STORE_ERROR": ErrorDefinition(7002, 500, "Secret store error"),
    "SYSTEM_DATABASE_ERROR": ErrorDefinition(7003, 500, "Database operation failed"),
    "SYSTEM_EMAIL_FAILED": ErrorDefinition(7004, 500, "Failed to send email notification"),
    "SYSTEM_SMS_FAILED": ErrorDefinition(7005, 500, "Failed to send SMS notification"),
    "SYSTEM_CACHE_ERROR": ErrorDefinition(7006, 500, "Cache operation failed"),
    "CIRCUIT_BREAKER_OPEN": ErrorDefinition(
        7007, 503, "Service temporarily unavailable, please retry later"
    ),
    "SYSTEM_RATE_LIMITED": ErrorDefinition(7008, 429, "Too many requests to the gateway"),
    "SYSTEM_INTERNAL_ERROR": ErrorDefinition(7999, 500, "Internal server error"),
}

# Resources whose 404 / 409 map to their own category
_NOT_FOUND_BY_RESOURCE = {
    "booking": "BOOKING_NOT_FOUND",
    "customer": "CUSTOMER_NOT_FOUND",
    "location": "SQUARE_LOCATION_NOT_FOUND",
}
_CONFLICT_BY_RESOURCE = {
    "booking": "BOOKING_VERSION_CONFLICT",
    "customer": "CUSTOMER_VERSION_CONFLICT",
}


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AppError(Exception):
    """Categorized error with a stable code, HTTP status and details."""

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        definition = ErrorCodes.get(code, ErrorCodes["SYSTEM_INTERNAL_ERROR"])
        self.code = code
        self.error_code = definition.code
        self.status_code = definition.status
        self.message = message or definition.message
        self.details = details or {}
        self.correlation_id = correlation_id
        super().__init__(self.message)

    @property
    def headers(self) -> Optional[dict[str, str]]:
        return None

    def to_response(self) -> dict[str, Any]:
        """Error envelope returned to callers."""
        body = {
            "success": False,
            "message": self.message,
            "code": self.code,
            "errorCode": self.error_code,
            "details": self.details,
            "timestamp": _utcnow_iso(),
            "statusCode": self.status_code,
        }
        if self.correlation_id:
            body["correlationId"] = self.correlation_id
        return body

    def __repr__(self) -> str:
        return f"<AppError(code={self.code}, status={self.status_code}, message='{self.message}')>"


class CircuitBreakerOpenError(AppError):
    """Raised when a tenant's circuit is open and calls are short-circuited."""

    def __init__(self, tenant_id: str, retry_after: int, correlation_id: Optional[str] = None):
        super().__init__(
            "CIRCUIT_BREAKER_OPEN",
            details={"tenantId": tenant_id, "retryAfter": retry_after},
            correlation_id=correlation_id,
        )
        self.tenant_id = tenant_id
        self.retry_after = retry_after

    @property
    def headers(self) -> Optional[dict[str, str]]:
        return {"Retry-After": str(self.retry_after)}

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["retryAfter"] = self.retry_after
        return body


def create_error(
    code: str,
    details: Optional[dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
    message: Optional[str] = None,
) -> AppError:
    """Create a standardized error.

    Unknown codes become SYSTEM_INTERNAL_ERROR with the original code
    preserved in details.
    """
    details = dict(details or {})
    if code not in ErrorCodes:
        logger.warning(f"Unknown error code requested: {code}")
        details["originalErrorCode"] = code
        return AppError(
            "SYSTEM_INTERNAL_ERROR",
            message=f"Unknown error code: {code}",
            details=details,
            correlation_id=correlation_id,
        )
    return AppError(
        code,
        message=message or details.pop("message", None),
        details=details,
        correlation_id=correlation_id,
    )


def is_error_type(error: BaseException, code: str) -> bool:
    return isinstance(error, AppError) and error.code == code


def is_error_category(error: BaseException, category_prefix: int) -> bool:
    """True when the error's numeric code falls in the category (e.g. 5 for Square)."""
    if not isinstance(error, AppError):
        return False
    start = category_prefix * 1000
    return start <= error.error_code <= start + 999


def get_error_info(error: BaseException) -> dict[str, Any]:
    """Flatten an error for logging."""
    if isinstance(error, AppError):
        return {
            "code": error.code,
            "errorCode": error.error_code,
            "statusCode": error.status_code,
            "message": error.message,
            "details": error.details,
            "correlationId": error.correlation_id,
        }
    return {
        "code": "UNKNOWN",
        "errorCode": 7999,
        "statusCode": 500,
        "message": str(error),
        "details": {},
        "correlationId": None,
    }


def from_square_error(
    exc: Exception,
    resource: Optional[str] = None,
    correlation_id: Optional[str] = None,
    conflict_code: Optional[str] = None,
) -> AppError:
    """Map a Square client failure onto the taxonomy.

    Args:
        exc: Exception raised by the Square client
        resource: "booking", "customer" or "location" for 404/409 mapping
        correlation_id: Request correlation id
        conflict_code: Override for 409 (e.g. CUSTOMER_DUPLICATE on create)
    """
    if isinstance(exc, AppError):
        return exc

    status_code = getattr(exc, "status_code", None)
    transport_code = getattr(exc, "transport_code", None)
    details: dict[str, Any] = {"upstreamMessage": str(exc)}
    upstream_errors = getattr(exc, "errors", None)
    if upstream_errors:
        details["squareErrors"] = upstream_errors

    if transport_code == "TIMED_OUT":
        code = "SQUARE_TIMEOUT"
    elif transport_code in ("CONNECTION_REFUSED", "DNS_NOT_FOUND"):
        code = "SQUARE_NETWORK_ERROR"
    elif status_code == 400:
        code = "SQUARE_INVALID_REQUEST"
    elif status_code == 401:
        code = "SQUARE_AUTH_FAILED"
    elif status_code == 403:
        code = "AUTH_INSUFFICIENT_PERMISSIONS"
    elif status_code == 404:
        code = _NOT_FOUND_BY_RESOURCE.get(resource or "", "SQUARE_RESOURCE_NOT_FOUND")
    elif status_code == 409:
        code = conflict_code or _CONFLICT_BY_RESOURCE.get(resource or "", "BOOKING_CONFLICT")
    elif status_code == 429:
        code = "SQUARE_RATE_LIMIT"
    else:
        code = "SQUARE_API_ERROR"

    if status_code is not None:
        details["upstreamStatus"] = status_code

    return AppError(code, details=details, correlation_id=correlation_id)
