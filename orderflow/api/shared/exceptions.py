"""
API Exception Classes

Custom exceptions that map to standard error responses.
"""

from typing import List, Optional

from .error_codes import ErrorCode, get_status_code
from .responses import ErrorDetail


class APIException(Exception):
    """
    Base exception for API errors.

    The error handler catches these and returns the standard error body.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = get_status_code(code)
        super().__init__(message)


class ValidationError(APIException):
    """
    Validation error for invalid request data.

    HTTP Status: 400
    """

    def __init__(self, message: str, details: Optional[List[ErrorDetail]] = None):
        super().__init__(code=ErrorCode.VALIDATION_ERROR, message=message, details=details)


class NotFoundError(APIException):
    """
    Resource not found error.

    HTTP Status: 404
    """

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"

        code_map = {
            "Order": ErrorCode.ORDER_NOT_FOUND,
            "DLQ entry": ErrorCode.DLQ_ENTRY_NOT_FOUND,
        }
        super().__init__(code=code_map.get(resource, ErrorCode.NOT_FOUND), message=message)
        self.resource = resource
        self.resource_id = resource_id


class ServiceUnavailableError(APIException):
    """
    A dependency the endpoint needs is not available.

    HTTP Status: 503
    """

    def __init__(self, message: str = "Service unavailable"):
        super().__init__(code=ErrorCode.SERVICE_UNAVAILABLE, message=message)
