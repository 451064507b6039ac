"""
Lotline - Custom Exception Hierarchy

Provides structured, typed exceptions with error codes for consistent
error handling across the application.

Usage:
    from lotline.exceptions import NotFoundError, StoreUnavailable

    # In endpoint
    raise NotFoundError("Job lot mapping", job_id)

    # In a store implementation
    raise StoreUnavailable("lot_sequence_counters", "increment failed")
"""
from typing import Any, Dict, Optional


class LotlineException(Exception):
    """
    Base exception for all Lotline errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "NOT_FOUND", "VALIDATION_ERROR")
        status_code: HTTP status code to return
        details: Additional context for debugging
    """

    error_code: str = "LOTLINE_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# ===================
# 400 Bad Request Errors
# ===================


class ValidationError(LotlineException):
    """Raised when input validation fails."""

    error_code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details=details)


class InvalidLotConfig(ValidationError):
    """Raised when a lot number template configuration is malformed."""

    error_code = "INVALID_LOT_CONFIG"


# ===================
# 404 Not Found Errors
# ===================


class NotFoundError(LotlineException):
    """Raised when a resource is not found."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Any = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["resource"] = resource
        if resource_id is not None:
            details["resource_id"] = str(resource_id)
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, details=details)


# ===================
# 503 Service Unavailable Errors
# ===================


class StoreUnavailable(LotlineException):
    """
    Raised when backing persistence cannot be reached.

    Lot mapping resolution and raw counters recover from this locally; the
    mint endpoints surface it as a 503.
    """

    error_code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(
        self,
        store: str = "Store",
        message: str = "temporarily unavailable",
        *,
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["store"] = store
        if retry_after:
            details["retry_after_seconds"] = retry_after
        self.store = store
        super().__init__(f"{store} {message}", details=details)
