"""
Custom exception hierarchy for the order sync engine.

Exception Hierarchy:
    GatewayError (base)            - Remote order API failure
    ├── GatewayConnectionError     - Network/timeout issues (recoverable)
    ├── GatewayAuthError           - Session rejected after re-auth (fatal)
    └── GatewayDataError           - Invalid response structure (fatal)

    OrderMappingError              - One order could not be mapped for import
    SyncAlreadyRunningError        - Unique-run lock is held for a stream
    ValidationError                - Input validation failed
    QueryTimeoutError              - DuckDB statement exceeded its timeout
"""
from datetime import datetime
from typing import Any, Dict, Optional

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class GatewayError(Exception):
    """Base exception for all remote order API errors."""

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        retry_after: int = None,
    ):
        self.message = message
        self.details = details
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    @property
    def is_timeout(self) -> bool:
        return self.status_code == 408

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and 500 <= self.status_code < 600

    @property
    def is_retryable(self) -> bool:
        """Timeouts, rate limits and 5xx responses are worth another attempt."""
        return self.status_code in RETRYABLE_STATUS_CODES or self.is_server_error

    @property
    def retry_after_seconds(self) -> Optional[int]:
        """Explicit wait requested by the API. Only meaningful for rate limits."""
        if not self.is_rate_limited or self.retry_after is None:
            return None
        return int(self.retry_after)

    @property
    def user_message(self) -> str:
        """Plain-language message for progress displays."""
        if self.is_rate_limited:
            return "Too many requests to the order API. Please wait a moment and try again."
        if self.is_timeout:
            return "The order API is taking too long to respond. Please try again."
        if self.status_code == 503:
            return "The order API is temporarily unavailable. Please try again in a few minutes."
        if self.status_code == 502:
            return "Unable to reach the order API. Please try again shortly."
        if self.is_server_error:
            return "The order API is experiencing technical difficulties. Please try again later."
        if self.status_code == 401:
            return "The order API session has expired. Please reconnect the account."
        if self.status_code == 403:
            return "The account does not have permission to access this order API resource."
        if self.status_code == 404:
            return "The requested order API resource was not found."
        return "An error occurred while communicating with the order API. Please try again."

    def to_dict(self) -> Dict[str, Any]:
        """Context for structured log lines."""
        return {
            "error_class": type(self).__name__,
            "error": str(self),
            "status_code": self.status_code,
            "is_retryable": self.is_retryable,
            "is_timeout": self.is_timeout,
            "is_rate_limited": self.is_rate_limited,
            "retry_after": self.retry_after_seconds,
        }


class GatewayConnectionError(GatewayError):
    """
    Network-related errors (timeout, connection refused, etc.).

    These are recoverable with retry.
    """

    @property
    def is_retryable(self) -> bool:
        return True


class GatewayAuthError(GatewayError):
    """
    Session token rejected (401/403) even after a fresh authentication.

    Never retried by the sync engine.
    """

    @property
    def is_retryable(self) -> bool:
        return False


class GatewayDataError(GatewayError):
    """
    API response has unexpected structure.

    This indicates a contract violation - the API returned
    data in a format we don't understand.
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got

    @property
    def is_retryable(self) -> bool:
        return False


class OrderMappingError(Exception):
    """A single remote order could not be mapped to a local row."""

    def __init__(self, message: str, external_id: str = None, order_number: Any = None):
        self.message = message
        self.external_id = external_id
        self.order_number = order_number
        super().__init__(message)

    def __str__(self) -> str:
        ident = self.external_id or "<missing id>"
        if self.order_number is not None:
            return f"{self.message} (order {ident}, #{self.order_number})"
        return f"{self.message} (order {ident})"


class SyncAlreadyRunningError(Exception):
    """Another run of the same sync stream holds the unique-run lock."""

    def __init__(self, stream_name: str, held_until: Optional[datetime] = None):
        self.stream_name = stream_name
        self.held_until = held_until
        message = f"Sync '{stream_name}' is already running"
        if held_until:
            message = f"{message} (lock held until {held_until.isoformat()})"
        super().__init__(message)


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating CLI parameters before a run is started.
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


class QueryTimeoutError(Exception):
    """Database statement exceeded timeout."""

    def __init__(self, query: str, timeout: float, details: str = None):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        self.details = details
        message = f"Query timed out after {timeout}s"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)
