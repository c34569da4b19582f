"""Tests for the error taxonomy."""

import pytest

from app.core.errors import (
    AppError,
    CircuitBreakerOpenError,
    ErrorCodes,
    create_error,
    from_square_error,
    get_error_info,
    is_error_category,
    is_error_type,
)
from app.core.square.client import SquareApiError


class TestAppError:
    """Test AppError construction and envelope."""

    def test_defaults_from_code(self):
        error = AppError("BOOKING_NOT_FOUND", details={"bookingId": "BK1"}, correlation_id="c-1")

        assert error.status_code == 404
        assert error.error_code == 3001
        assert error.message == "Booking not found"
        assert str(error) == "Booking not found"

    def test_to_response(self):
        body = AppError("BOOKING_SLOT_UNAVAILABLE", correlation_id="c-1").to_response()

        assert body["success"] is False
        assert body["code"] == "BOOKING_SLOT_UNAVAILABLE"
        assert body["errorCode"] == 3002
        assert body["statusCode"] == 409
        assert body["correlationId"] == "c-1"
        assert body["timestamp"].endswith("Z")

    def test_no_correlation_id_omitted(self):
        assert "correlationId" not in AppError("VALIDATION_MISSING_FIELD").to_response()

    def test_codes_unique(self):
        """Test numeric codes are unique across the taxonomy."""
        numbers = [definition.code for definition in ErrorCodes.values()]

        assert len(numbers) == len(set(numbers))

    def test_circuit_open_error(self):
        error = CircuitBreakerOpenError("tenant-1", retry_after=30, correlation_id="c-1")

        assert error.status_code == 503
        assert error.headers == {"Retry-After": "30"}
        assert error.to_response()["retryAfter"] == 30
        assert error.details["tenantId"] == "tenant-1"


class TestHelpers:
    """Test create_error and the type predicates."""

    def test_create_error_known(self):
        error = create_error("CUSTOMER_NOT_FOUND", {"customerId": "C1"}, "c-1")

        assert error.code == "CUSTOMER_NOT_FOUND"
        assert error.details == {"customerId": "C1"}
        assert error.correlation_id == "c-1"

    def test_create_error_message_from_details(self):
        error = create_error("BOOKING_CONFLICT", {"message": "Double booked", "id": "BK1"})

        assert error.message == "Double booked"
        assert error.details == {"id": "BK1"}

    def test_create_error_unknown_code(self):
        error = create_error("NOT_A_CODE")

        assert error.code == "SYSTEM_INTERNAL_ERROR"
        assert error.details["originalErrorCode"] == "NOT_A_CODE"

    def test_predicates(self):
        error = AppError("SQUARE_TIMEOUT")

        assert is_error_type(error, "SQUARE_TIMEOUT")
        assert not is_error_type(ValueError("x"), "SQUARE_TIMEOUT")
        assert is_error_category(error, 5)
        assert not is_error_category(error, 3)

    def test_get_error_info_plain_exception(self):
        info = get_error_info(RuntimeError("boom"))

        assert info["code"] == "UNKNOWN"
        assert info["statusCode"] == 500
        assert info["message"] == "boom"


class TestFromSquareError:
    """Test mapping Square client failures onto the taxonomy."""

    @pytest.mark.parametrize(
        "status_code,resource,expected",
        [
            (400, None, "SQUARE_INVALID_REQUEST"),
            (401, None, "SQUARE_AUTH_FAILED"),
            (403, None, "AUTH_INSUFFICIENT_PERMISSIONS"),
            (404, "booking", "BOOKING_NOT_FOUND"),
            (404, "customer", "CUSTOMER_NOT_FOUND"),
            (404, None, "SQUARE_RESOURCE_NOT_FOUND"),
            (409, "booking", "BOOKING_VERSION_CONFLICT"),
            (429, None, "SQUARE_RATE_LIMIT"),
            (500, None, "SQUARE_API_ERROR"),
        ],
    )
    def test_status_mapping(self, status_code, resource, expected):
        error = from_square_error(
            SquareApiError("upstream", status_code=status_code), resource=resource
        )

        assert error.code == expected
        assert error.details["upstreamStatus"] == status_code

    def test_conflict_override(self):
        error = from_square_error(
            SquareApiError("dup", status_code=409),
            resource="customer",
            conflict_code="CUSTOMER_DUPLICATE",
        )

        assert error.code == "CUSTOMER_DUPLICATE"

    def test_transport_codes(self):
        timeout = from_square_error(SquareApiError("slow", transport_code="TIMED_OUT"))
        refused = from_square_error(SquareApiError("down", transport_code="CONNECTION_REFUSED"))

        assert timeout.code == "SQUARE_TIMEOUT"
        assert refused.code == "SQUARE_NETWORK_ERROR"
        assert "upstreamStatus" not in refused.details

    def test_square_errors_kept(self):
        errors = [{"category": "INVALID_REQUEST_ERROR", "detail": "bad"}]

        error = from_square_error(SquareApiError("bad", status_code=400, errors=errors))

        assert error.details["squareErrors"] == errors

    def test_app_error_passthrough(self):
        original = AppError("CIRCUIT_BREAKER_OPEN")

        assert from_square_error(original) is original
