"""
Custom exception hierarchy for analytics fetch operations.

Exception Hierarchy:
    AnalyticsError (base)
    ├── RateLimitedError         - API throttled the request (retryable)
    └── TransportError           - Network/timeout issues (not retried here)
        ├── AnalyticsAPIError    - API returned error response
        └── AnalyticsDataError   - Invalid response structure

    ValidationError              - Input validation failed
    ConfigurationError           - Required configuration missing
"""
from typing import Any, Optional


class AnalyticsError(Exception):
    """Base exception for all analytics API errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class RateLimitedError(AnalyticsError):
    """
    API rejected the request because of its rate ceiling (HTTP 429).

    retry_after carries the server-supplied hint in seconds, when present.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        retry_after: Optional[float] = None,
        status_code: int = 429,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after
        self.status_code = status_code


class TransportError(AnalyticsError):
    """
    Network-related errors (timeout, connection refused, etc.).

    The orchestrator records these as failed chunks instead of retrying.
    """

    def __init__(self, message: str, details: str = None, status_code: int = None):
        super().__init__(message, details)
        self.status_code = status_code


class AnalyticsAPIError(TransportError):
    """
    API returned an error response.

    Check status_code and error_code for specifics.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        error_code: str = None,
    ):
        super().__init__(message, details, status_code=status_code)
        self.error_code = error_code


class AnalyticsDataError(TransportError):
    """
    API response has unexpected structure.

    The API returned a payload we cannot read rows from.
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating caller input before any cache or network work.
    """

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass
