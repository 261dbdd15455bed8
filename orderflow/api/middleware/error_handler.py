"""
Global Error Handler

Catches exceptions and returns the standard flat error body. Raw driver
and transport errors are logged with their traceback and reported to the
client only as INTERNAL_ERROR.
"""

import logging
import traceback
from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ...core.errors import ConcurrencyConflict, InvalidStateTransition, OrderNotFound, OutboxError
from ..shared.error_codes import ErrorCode, get_status_code
from ..shared.exceptions import APIException
from ..shared.responses import ErrorBody, ErrorDetail

logger = logging.getLogger(__name__)

# Domain failures that are the caller's business; everything else is internal
DOMAIN_ERROR_CODES: Dict[Type[OutboxError], ErrorCode] = {
    OrderNotFound: ErrorCode.ORDER_NOT_FOUND,
    InvalidStateTransition: ErrorCode.INVALID_STATE_TRANSITION,
    ConcurrencyConflict: ErrorCode.CONCURRENCY_CONFLICT,
}

HTTP_STATUS_CODES: Dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def error_response(code: ErrorCode, message: str, details=None, status: int = None) -> JSONResponse:
    status = status or get_status_code(code)
    body = ErrorBody(code=code.value, message=message, status=status, details=details)
    return JSONResponse(status_code=status, content=body.to_content())


def register_error_handlers(app: FastAPI):
    """
    Register all error handlers on the FastAPI app.

    This function sets up exception handlers for:
    - APIException (custom API errors)
    - OutboxError (domain and delivery failures)
    - RequestValidationError (FastAPI validation)
    - HTTPException (routing errors such as unknown paths)
    - Generic Exception (catch-all for unexpected errors)
    """

    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        """Handle custom API exceptions."""
        logger.warning(
            f"API Error: {exc.code.value} - {exc.message}",
            extra={"error_code": exc.code.value, "path": request.url.path}
        )
        return error_response(exc.code, exc.message, exc.details, exc.status_code)

    @app.exception_handler(OutboxError)
    async def domain_exception_handler(request: Request, exc: OutboxError):
        """Map domain failures to client errors; hide the rest."""
        code = next(
            (code for error_type, code in DOMAIN_ERROR_CODES.items() if isinstance(exc, error_type)),
            None
        )
        if code is None:
            logger.error(
                f"Unhandled {type(exc).__name__}: {exc}",
                extra={"error_code": exc.code, "path": request.url.path}
            )
            return error_response(ErrorCode.INTERNAL_ERROR, "An internal error occurred")

        logger.info(
            f"Domain Error: {code.value} - {exc.message}",
            extra={"error_code": code.value, "path": request.url.path}
        )
        return error_response(code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle FastAPI validation errors."""
        details = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            details.append(ErrorDetail(
                field=field,
                message=error["msg"],
                code=error["type"]
            ))

        logger.warning(
            f"Validation Error: {len(details)} field(s)",
            extra={"path": request.url.path, "errors": [d.model_dump() for d in details]}
        )
        return error_response(ErrorCode.VALIDATION_ERROR, "Request validation failed", details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.BAD_REQUEST)
        return error_response(code, str(exc.detail), status=exc.status_code)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(
            f"Unhandled Exception: {type(exc).__name__}: {exc}",
            extra={"path": request.url.path, "traceback": traceback.format_exc()}
        )

        # Don't expose internal details
        return error_response(ErrorCode.INTERNAL_ERROR, "An internal error occurred")
