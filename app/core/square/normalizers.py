"""
Value Normalizers

Big-integer safe conversion, phone and email canonicalization, Square id
checks, and display formatting for prices, durations and slot times.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.errors import AppError

# Largest integer a JSON consumer can hold without precision loss
MAX_SAFE_INTEGER = 2**53 - 1

# Keys whose integer values are Square big integers (versions, money amounts)
BIG_INT_KEYS = frozenset(
    {
        "version",
        "serviceVariationVersion",
        "bookingVersion",
        "amount",
        "price",
    }
)

DEFAULT_DAYS_AHEAD = 14
MIN_DAYS_AHEAD = 1
MAX_DAYS_AHEAD = 90

_NON_DIGITS = re.compile(r"\D")
_PHONE_PUNCTUATION = re.compile(r"[\s\-().]")
_US_PHONE = re.compile(r"^\+?1?[2-9]\d{2}[2-9]\d{2}\d{4}$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SQUARE_ID = re.compile(r"^[A-Z0-9_-]+$", re.IGNORECASE)
_DAYS_AHEAD = re.compile(r"^\s*\d+\s*$")

MAX_EMAIL_LENGTH = 254


# === Big integers ===


def big_int_to_string(value: Any) -> str:
    """Render a big integer (or anything) as a string; None becomes '0'."""
    if value is None:
        return "0"
    return str(value)


def to_big_int(value: Any) -> int:
    """Convert an int or numeric string to int for Square payloads."""
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert bool to big integer: {value}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError(f"Cannot convert {type(value).__name__} to big integer: {value}")


def clean_big_int(obj: Any, key: Optional[str] = None) -> Any:
    """Recursively make a payload JSON-safe for agent consumers.

    Integers under big-integer keys, and integers beyond the JS-safe range,
    become strings. Decimals become strings, datetimes ISO strings. The
    function is idempotent.
    """
    if isinstance(obj, dict):
        return {k: clean_big_int(v, k) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [clean_big_int(item, key) for item in obj]
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, int):
        if key in BIG_INT_KEYS or abs(obj) > MAX_SAFE_INTEGER:
            return str(obj)
        return obj
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    return obj


def format_price(price: Any) -> str:
    """Format an amount in cents as $D.CC."""
    if not price:
        return "$0.00"
    cents = int(price) if not isinstance(price, str) else int(price.strip() or 0)
    return f"${cents / 100:.2f}"


def duration_to_minutes(duration_ms: Any) -> int:
    """Convert milliseconds to whole minutes (rounded)."""
    if not duration_ms:
        return 0
    return int(round(int(duration_ms) / 60000))


# === Phone / email ===


@dataclass
class PhoneResult:
    """Outcome of phone canonicalization."""

    is_valid: bool
    formatted: Optional[str] = None
    original: Optional[str] = None
    error: Optional[str] = None


def digits_only(value: Optional[str]) -> str:
    return _NON_DIGITS.sub("", value or "")


def validate_phone_number(phone: Optional[str]) -> list[str]:
    """Validate an already-formatted number. Returns the list of problems."""
    if not phone or not isinstance(phone, str):
        return ["Phone number is required and must be a string"]

    errors = []
    digits = digits_only(phone)
    if len(digits) < 10:
        errors.append("Phone number must have at least 10 digits")
    if len(digits) > 15:
        errors.append("Phone number cannot exceed 15 digits")

    # US pattern applies to North American numbers only
    is_us = len(digits) == 10 or (len(digits) == 11 and digits.startswith("1"))
    if is_us and not _US_PHONE.match(_PHONE_PUNCTUATION.sub("", phone)):
        errors.append(
            "Invalid US phone number format. Expected format: +12155551234 or (215) 555-1234"
        )
    return errors


def format_phone_number(phone: Optional[str]) -> PhoneResult:
    """Canonicalize a phone number to E.164.

    - 10 digits: +1XXXXXXXXXX
    - 11 digits starting with 1: +1XXXXXXXXXX
    - '+' followed by 10-15 digits: kept (punctuation stripped)
    """
    if not phone or not isinstance(phone, str):
        return PhoneResult(
            is_valid=False,
            original=phone,
            error="Phone number is required and must be a string",
        )

    digits = digits_only(phone)
    stripped = phone.strip()

    if len(digits) == 10:
        formatted = f"+1{digits}"
    elif len(digits) == 11 and digits.startswith("1"):
        formatted = f"+{digits}"
    elif stripped.startswith("+") and 10 <= len(digits) <= 15:
        formatted = f"+{digits}"
    else:
        return PhoneResult(
            is_valid=False,
            original=phone,
            error=(
                f"Invalid phone number format. Got {len(digits)} digits. Expected "
                "10-digit US number (e.g., 2155551234) or international format (+441234567890)"
            ),
        )

    problems = validate_phone_number(formatted)
    if problems:
        return PhoneResult(is_valid=False, original=phone, error="; ".join(problems))

    return PhoneResult(is_valid=True, formatted=formatted, original=phone)


def phones_match(query_digits: str, candidate: Optional[str]) -> bool:
    """Digit equality, accepting the US 10 <-> 11 digit equivalence."""
    candidate_digits = digits_only(candidate)
    if not query_digits or not candidate_digits:
        return False
    if query_digits == candidate_digits:
        return True
    if len(query_digits) == 10 and candidate_digits == f"1{query_digits}":
        return True
    if len(candidate_digits) == 10 and query_digits == f"1{candidate_digits}":
        return True
    return False


def validate_email_address(email: Any) -> tuple[bool, Optional[str], Optional[str]]:
    """Validate an email.

    Returns:
        (is_valid, normalized lowercase email, error message)
    """
    if not email:
        return False, None, "Email address is required"
    if not isinstance(email, str):
        return False, None, "Email address must be a string"

    candidate = email.strip()
    if not _EMAIL.match(candidate):
        return False, None, "Invalid email address format"
    if len(candidate) > MAX_EMAIL_LENGTH:
        return False, None, "Email address is too long"
    return True, candidate.lower(), None


# === Identifiers / request values ===


def is_valid_square_id(value: Any) -> bool:
    """Square ids are 10-100 characters of [A-Z0-9_-], case-insensitive."""
    return (
        isinstance(value, str)
        and 10 <= len(value) <= 100
        and bool(_SQUARE_ID.match(value))
    )


def validate_square_id(value: Any, field_name: str) -> str:
    """Return the id or raise VALIDATION_INVALID_FORMAT."""
    if not value:
        raise AppError(
            "VALIDATION_MISSING_FIELD",
            message=f"{field_name} is required",
            details={"field": field_name},
        )
    if not is_valid_square_id(value):
        raise AppError(
            "VALIDATION_INVALID_FORMAT",
            message=f"{field_name} has an invalid format",
            details={"field": field_name, "value": str(value)[:50]},
        )
    return value


def validate_days_ahead(value: Any) -> int:
    """Parse the availability horizon. Missing means 14; range is 1..90."""
    if value is None or value == "":
        return DEFAULT_DAYS_AHEAD

    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _DAYS_AHEAD.match(value):
        parsed = int(value)
    else:
        parsed = None

    if parsed is None or not MIN_DAYS_AHEAD <= parsed <= MAX_DAYS_AHEAD:
        raise AppError(
            "VALIDATION_OUT_OF_RANGE",
            message=(
                f"daysAhead parameter must be between {MIN_DAYS_AHEAD} and "
                f"{MAX_DAYS_AHEAD} (defaults to {DEFAULT_DAYS_AHEAD} if not provided)"
            ),
            details={"field": "daysAhead", "value": str(value)[:20]},
        )
    return parsed


# === Time ===


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 instant into an aware datetime. None when unparseable."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso(value: datetime) -> str:
    """UTC ISO string with millisecond precision and a Z suffix."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def _zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "America/New_York")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("America/New_York")


def _count(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def format_local_time(iso: Any, tz_name: Optional[str] = None) -> str:
    """Readable slot time in the tenant's zone, e.g. 'Mon, Jan 5, 10:00 AM'."""
    moment = parse_iso(iso)
    if moment is None:
        return ""
    local = moment.astimezone(_zone(tz_name))
    hour = local.hour % 12 or 12
    return f"{local:%a, %b} {local.day}, {hour}:{local:%M} {local:%p}"


def relative_timeframe(target: Any, now: Optional[datetime] = None) -> str:
    """Human label for how far a date is from now ('tomorrow', 'in 3 weeks')."""
    moment = parse_iso(target)
    if moment is None:
        return ""
    now = now or datetime.now(timezone.utc)
    days = (moment.date() - now.astimezone(moment.tzinfo).date()).days

    if days == 0:
        return "today"
    if days == 1:
        return "tomorrow"
    if days == -1:
        return "yesterday"
    if 1 < days < 7:
        return f"in {_count(days, 'day')}"
    if 7 <= days < 14:
        return "next week"
    if 14 <= days < 30:
        return f"in {_count(days // 7, 'week')}"
    if 30 <= days < 60:
        return "next month"
    if days >= 60:
        return f"in {_count(days // 30, 'month')}"
    if -7 < days < -1:
        return f"{_count(-days, 'day')} ago"
    return f"{_count(-days // 7, 'week')} ago"
