"""
Standard Error Codes

Consistent error codes across all API endpoints with HTTP status mapping.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """API error codes."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # Business logic errors
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    DLQ_ENTRY_NOT_FOUND = "DLQ_ENTRY_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    # Server errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


# HTTP status code mapping
ERROR_STATUS_CODES = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.DLQ_ENTRY_NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.CONCURRENCY_CONFLICT: 409,
    ErrorCode.INVALID_STATE_TRANSITION: 422,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}


def get_status_code(error_code: ErrorCode) -> int:
    """
    Get HTTP status code for an error code.

    Args:
        error_code: The error code

    Returns:
        HTTP status code (defaults to 500 if not mapped)
    """
    return ERROR_STATUS_CODES.get(error_code, 500)


def is_client_error(error_code: ErrorCode) -> bool:
    """Check if the error code represents a client error (4xx)."""
    status = get_status_code(error_code)
    return 400 <= status < 500
