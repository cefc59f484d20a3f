"""
Tests for rangecache.validators module.
"""
import pytest
from datetime import date, datetime

from rangecache.validators import (
    validate_date_string,
    validate_date_range,
    validate_metric,
    validate_granularity,
    validate_span_days,
)
from rangecache.exceptions import ValidationError


class TestValidateDateString:
    """Tests for validate_date_string function."""

    def test_valid_date(self):
        """Valid date string should return date object."""
        assert validate_date_string("2024-01-15") == date(2024, 1, 15)

    def test_date_passthrough(self):
        """Date and datetime objects are accepted as-is."""
        assert validate_date_string(date(2024, 1, 15)) == date(2024, 1, 15)
        assert validate_date_string(datetime(2024, 1, 15, 10, 30)) == date(2024, 1, 15)

    def test_invalid_format(self):
        """Invalid format should raise ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            validate_date_string("15-01-2024")
        assert "Invalid date format" in str(exc_info.value)

    def test_invalid_date(self):
        """Invalid date should raise ValidationError."""
        with pytest.raises(ValidationError):
            validate_date_string("2024-02-30")

    def test_empty_string(self):
        """Empty string should raise ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            validate_date_string("")
        assert "required" in str(exc_info.value).lower()

    def test_non_string(self):
        """Non-string should raise ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            validate_date_string(20240115)
        assert "string" in str(exc_info.value).lower()


class TestValidateDateRange:
    """Tests for validate_date_range function."""

    def test_valid_range(self):
        start, end = validate_date_range("2024-01-01", "2024-01-25")
        assert start == date(2024, 1, 1)
        assert end == date(2024, 1, 25)

    def test_single_day(self):
        """Start equal to end is a valid one-day range."""
        start, end = validate_date_range("2024-01-01", "2024-01-01")
        assert start == end

    def test_reversed_range(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_date_range("2024-01-25", "2024-01-01")
        assert exc_info.value.field == "date_range"

    def test_too_long(self):
        with pytest.raises(ValidationError, match="cannot exceed 30 days"):
            validate_date_range("2024-01-01", "2024-03-01", max_days=30)


class TestValidateMetric:
    """Tests for validate_metric function."""

    def test_valid(self):
        assert validate_metric(" sessions ") == "sessions"

    def test_missing(self):
        with pytest.raises(ValidationError, match="required"):
            validate_metric(None)

    def test_colon_rejected(self):
        """Metrics are embedded in keys and cannot contain ':'."""
        with pytest.raises(ValidationError):
            validate_metric("sessions:extra")

    def test_allowed_list(self):
        assert validate_metric("views", allowed=["sessions", "views"]) == "views"
        with pytest.raises(ValidationError, match="Must be one of"):
            validate_metric("clicks", allowed=["sessions", "views"])


class TestValidateGranularity:
    """Tests for validate_granularity function."""

    def test_default_daily(self):
        assert validate_granularity(None) == "daily"
        assert validate_granularity("") == "daily"

    def test_case_insensitive(self):
        assert validate_granularity("Hourly") == "hourly"

    def test_invalid(self):
        with pytest.raises(ValidationError):
            validate_granularity("weekly")


class TestValidateSpanDays:
    """Tests for validate_span_days function."""

    def test_valid(self):
        assert validate_span_days(10) == 10

    def test_zero(self):
        with pytest.raises(ValidationError, match="at least 1"):
            validate_span_days(0)

    def test_bool_rejected(self):
        with pytest.raises(ValidationError):
            validate_span_days(True)

    def test_too_large(self):
        with pytest.raises(ValidationError):
            validate_span_days(1000)
