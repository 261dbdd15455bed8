"""
Shared API Components

Error codes, exceptions and the standard error body.
"""

from .error_codes import ErrorCode, ERROR_STATUS_CODES, get_status_code, is_client_error
from .exceptions import APIException, ValidationError, NotFoundError, ServiceUnavailableError
from .responses import ErrorBody, ErrorDetail

__all__ = [
    "ErrorCode",
    "ERROR_STATUS_CODES",
    "get_status_code",
    "is_client_error",
    "APIException",
    "ValidationError",
    "NotFoundError",
    "ServiceUnavailableError",
    "ErrorBody",
    "ErrorDetail",
]
