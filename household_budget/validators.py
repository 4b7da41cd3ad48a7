import re
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones


MAX_AMOUNT = Decimal("100000000")
MAX_DESCRIPTION_LENGTH = 100
MAX_NAME_LENGTH = 100
MAX_KEYWORD_LENGTH = 100
PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 6

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MONTH_RE = re.compile(r"^\d{4}-\d{2}$")
HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
PIN_RE = re.compile(r"^[0-9]+$")


class ValidationError(ValueError):
    """Raised for malformed user input; surfaced as a 400 response."""


class NotFoundError(LookupError):
    pass


class PersistenceError(RuntimeError):
    """Raised when the database cannot complete a read or write."""


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be initialized."""


def validate_pin(pin, field_name="PIN"):
    if not isinstance(pin, str) or not PIN_RE.fullmatch(pin) or not (PIN_MIN_LENGTH <= len(pin) <= PIN_MAX_LENGTH):
        raise ValidationError(f"{field_name} must be {PIN_MIN_LENGTH}-{PIN_MAX_LENGTH} digits")
    return pin


def validate_uuid(value, field_name="ID"):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    try:
        parsed = uuid.UUID(value.strip())
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: must be a valid UUID") from None
    if parsed.version != 4:
        raise ValidationError(f"Invalid {field_name}: must be a valid UUID")
    return str(parsed)


def is_valid_uuid(value):
    try:
        validate_uuid(value)
    except ValidationError:
        return False
    return True


def validate_color(color):
    if not isinstance(color, str) or not HEX_COLOR_RE.fullmatch(color):
        raise ValidationError("Color must be a valid hex color format (e.g., #FF5733)")
    return color


def validate_name(name, field_name="Name"):
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"{field_name} cannot be empty")
    cleaned = name.strip()
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"{field_name} must be {MAX_NAME_LENGTH} characters or less")
    return cleaned


def validate_keyword(keyword):
    if not isinstance(keyword, str) or not keyword.strip():
        raise ValidationError("Keyword cannot be empty")
    if len(keyword) > MAX_KEYWORD_LENGTH:
        raise ValidationError(f"Keyword must be {MAX_KEYWORD_LENGTH} characters or less")
    return keyword.strip().lower()


def validate_description(description, required=False):
    if description is None or (isinstance(description, str) and not description.strip()):
        if required:
            raise ValidationError("Description is required")
        return None
    if not isinstance(description, str):
        raise ValidationError("Description must be text")
    cleaned = description.strip()
    if len(cleaned) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less")
    return cleaned


def parse_iso_date(value):
    if not isinstance(value, str) or not DATE_RE.fullmatch(value.strip()):
        raise ValidationError("Invalid date format. Expected YYYY-MM-DD")
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("Invalid date value") from None


def validate_month(month):
    if not isinstance(month, str) or not MONTH_RE.fullmatch(month):
        raise ValidationError("Invalid month format. Expected YYYY-MM")
    if not 1 <= int(month[5:7]) <= 12:
        raise ValidationError("Invalid month format. Expected YYYY-MM")
    return month


def to_cents(value, field_name="Amount", allow_zero=False, allow_negative=False):
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a valid number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a valid number") from None
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a valid number")
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field_name} exceeds maximum allowed value")
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents == 0 and not allow_zero:
        raise ValidationError(f"{field_name} must not be zero")
    if cents < 0 and not allow_negative:
        raise ValidationError(f"{field_name} must be positive")
    return cents


def cents_to_amount(cents):
    return float(Decimal(cents) / 100)


def validate_timezone(timezone):
    if not isinstance(timezone, str) or not timezone.strip():
        raise ValidationError("Timezone is required")
    if timezone == "UTC":
        return timezone
    if timezone not in available_timezones():
        raise ValidationError("Unknown timezone")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("Unknown timezone") from None
    return timezone
