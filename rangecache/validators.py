"""
Input validation functions for fetch parameters.

All validators raise ValidationError on invalid input.
"""

import re
from datetime import date, datetime
from typing import Iterable, Optional, Tuple, Union

from rangecache.exceptions import ValidationError


VALID_GRANULARITIES = {"daily", "hourly"}

# Maximum allowed values
MAX_RANGE_DAYS = 3 * 366
MAX_SPAN_DAYS = 366

_METRIC_RE = re.compile(r"^[A-Za-z0-9_]+$")


def validate_date_string(
    value: Union[str, date],
    field: str = "date",
    format: str = "%Y-%m-%d"
) -> date:
    """
    Validate and parse a date string.

    Args:
        value: Date string (or an already parsed date)
        field: Field name for error messages
        format: Expected date format (default: YYYY-MM-DD)

    Returns:
        Parsed date object

    Raises:
        ValidationError: If date is invalid or in wrong format
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    if not value:
        raise ValidationError(field, "Date is required", value)

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    try:
        return datetime.strptime(value, format).date()
    except ValueError:
        raise ValidationError(
            field,
            f"Invalid date format. Expected {format}",
            value
        )


def validate_date_range(
    start_date: Union[str, date],
    end_date: Union[str, date],
    max_days: int = MAX_RANGE_DAYS
) -> Tuple[date, date]:
    """
    Validate a date range.

    Args:
        start_date: Start date (YYYY-MM-DD)
        end_date: End date (YYYY-MM-DD)
        max_days: Maximum allowed range in days

    Returns:
        Tuple of (start_date, end_date) as date objects

    Raises:
        ValidationError: If dates are invalid or range is too large
    """
    start = validate_date_string(start_date, "start_date")
    end = validate_date_string(end_date, "end_date")

    if start > end:
        raise ValidationError(
            "date_range",
            "Start date must be before or equal to end date",
            f"{start} to {end}"
        )

    days_diff = (end - start).days
    if days_diff > max_days:
        raise ValidationError(
            "date_range",
            f"Date range cannot exceed {max_days} days",
            f"{days_diff} days"
        )

    return start, end


def validate_metric(
    value: Optional[str],
    field: str = "metric",
    allowed: Optional[Iterable[str]] = None
) -> str:
    """
    Validate a metric name.

    The metric is embedded in cache keys, so it must not contain ':'.

    Raises:
        ValidationError: If metric is missing, malformed or not allowed
    """
    if value is None or value == "":
        raise ValidationError(field, "Metric is required")

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    value = value.strip()

    if not _METRIC_RE.match(value):
        raise ValidationError(field, "Contains invalid characters", value)

    if allowed is not None:
        allowed = set(allowed)
        if value not in allowed:
            raise ValidationError(
                field,
                f"Must be one of: {', '.join(sorted(allowed))}",
                value
            )

    return value


def validate_granularity(
    value: Optional[str],
    field: str = "granularity",
) -> str:
    """Validate a granularity; None/empty defaults to 'daily'."""
    if value is None or value == "":
        return "daily"

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    value = value.lower().strip()

    if value not in VALID_GRANULARITIES:
        raise ValidationError(
            field,
            f"Must be one of: {', '.join(sorted(VALID_GRANULARITIES))}",
            value
        )

    return value


def validate_span_days(
    value: int,
    field: str = "max_span_days",
    min_value: int = 1,
    max_value: int = MAX_SPAN_DAYS
) -> int:
    """
    Validate a chunk span in days.

    Raises:
        ValidationError: If the span is out of range
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(field, "Must be an integer", value)

    if value < min_value:
        raise ValidationError(field, f"Must be at least {min_value}", value)

    if value > max_value:
        raise ValidationError(field, f"Cannot exceed {max_value}", value)

    return value
