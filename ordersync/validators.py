"""
Input validation for sync CLI parameters.

All validators raise ValidationError on invalid input.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple

from ordersync.exceptions import ValidationError

MAX_BATCH_SIZE = 200
MAX_HISTORICAL_DAYS = 730


def validate_date_string(value: str, field: str = "date", format: str = "%Y-%m-%d") -> date:
    """
    Validate and parse a date string.

    Raises:
        ValidationError: If date is missing or in the wrong format
    """
    if not value:
        raise ValidationError(field, "Date is required", value)

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    try:
        return datetime.strptime(value, format).date()
    except ValueError:
        raise ValidationError(field, f"Invalid date format. Expected {format}", value)


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max)


def resolve_date_window(
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    days: int = 30,
    max_days: int = MAX_HISTORICAL_DAYS,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """
    Turn CLI date options into a naive-UTC [from, to] window.

    - both given: from start of day to end of day
    - only from: from start of day until now
    - only to: ``days`` before to, until end of that day
    - neither: the last ``days`` days, ending at the end of today

    Raises:
        ValidationError: bad date strings, from after to, or a window
            spanning more than ``max_days`` days
    """
    if days < 1:
        raise ValidationError("days", "Must be at least 1", days)

    now = now or datetime.now(timezone.utc).replace(tzinfo=None)

    if from_date and to_date:
        start = _start_of_day(validate_date_string(from_date, "from"))
        end = _end_of_day(validate_date_string(to_date, "to"))
    elif from_date:
        start = _start_of_day(validate_date_string(from_date, "from"))
        end = now
    elif to_date:
        end = _end_of_day(validate_date_string(to_date, "to"))
        start = _start_of_day(end.date() - timedelta(days=days))
    else:
        end = _end_of_day(now.date())
        start = _start_of_day(end.date() - timedelta(days=days))

    if start > end:
        raise ValidationError(
            "date_range",
            "Start date must be before or equal to end date",
            f"{start.date()} to {end.date()}",
        )

    span_days = (end.date() - start.date()).days
    if span_days > max_days:
        raise ValidationError(
            "date_range",
            f"Date range cannot exceed {max_days} days",
            f"{span_days} days",
        )

    return start, end


def validate_batch_size(value: int, max_size: int = MAX_BATCH_SIZE) -> int:
    """
    Cap the batch size at what one remote request accepts.

    Raises:
        ValidationError: value below 1 or not an integer
    """
    try:
        size = int(value)
    except (TypeError, ValueError):
        raise ValidationError("batch_size", "Must be an integer", value)

    if size < 1:
        raise ValidationError("batch_size", "Must be at least 1", value)

    return min(size, max_size)
