"""
Error Handling Utilities
Provides sanitized error messages and consistent error responses.
"""

import logging
from enum import Enum
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.integrations.xero.exceptions import RateLimitedError, XeroIntegrationError

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Error codes for frontend handling (non-Xero errors)."""

    AUTHENTICATION_FAILED = "authentication_failed"
    VALIDATION_ERROR = "validation_error"
    INTERNAL_ERROR = "internal_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


# User-friendly error messages
ERROR_MESSAGES = {
    ErrorCode.AUTHENTICATION_FAILED: "Invalid or expired token",
    ErrorCode.VALIDATION_ERROR: "Invalid request. Please check your input and try again.",
    ErrorCode.INTERNAL_ERROR: "An unexpected error occurred. Please try again later.",
    ErrorCode.SERVICE_UNAVAILABLE: "Service temporarily unavailable. Please try again in a moment.",
}


def sanitize_error_message(
    exception: Exception,
    error_code: ErrorCode,
    log_details: bool = True,
) -> str:
    """
    Sanitize error message for user-facing responses.

    Logs full exception details internally but returns user-friendly message.

    Args:
        exception: The exception that occurred
        error_code: Error code for categorization
        log_details: Whether to log full exception details

    Returns:
        User-friendly error message
    """
    if log_details:
        logger.error(
            "Error [%s]: %s",
            error_code.value,
            str(exception),
            exc_info=exception,
        )

    return ERROR_MESSAGES.get(error_code, ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR])


def get_error_code_for_exception(exception: Exception) -> tuple[ErrorCode, int]:
    """
    Map unexpected exception types to error codes and HTTP status codes.

    Args:
        exception: The exception that occurred

    Returns:
        Tuple of (error_code, http_status_code)
    """
    if isinstance(exception, ValueError):
        return ErrorCode.VALIDATION_ERROR, status.HTTP_400_BAD_REQUEST

    return ErrorCode.INTERNAL_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR


async def xero_exception_handler(_request: Request, exc: XeroIntegrationError) -> JSONResponse:
    """
    Render Xero integration errors with their stable code and message.

    Server-side failures (5xx) are logged at error level, the rest at info.
    """
    if exc.status_code >= 500:
        logger.error("Xero integration error [%s]: %s", exc.code, exc.message)
    else:
        logger.info("Xero integration error [%s]: %s", exc.code, exc.message)

    content = {
        "success": False,
        "error_code": exc.code,
        "message": exc.message,
    }
    content.update(exc.extra())

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def global_exception_handler(_request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for FastAPI.

    Catches all unhandled exceptions and returns sanitized error responses.
    Excludes HTTPException (intentional responses) and ValidationError (FastAPI validation).
    """
    # Don't handle HTTPException - those are intentional responses
    if isinstance(exc, HTTPException):
        raise exc

    # Don't handle RequestValidationError - FastAPI handles this
    if isinstance(exc, RequestValidationError):
        raise exc

    error_code, http_status = get_error_code_for_exception(exc)
    message = sanitize_error_message(exc, error_code)

    return JSONResponse(
        status_code=http_status,
        content={
            "success": False,
            "error_code": error_code.value,
            "message": message,
        },
    )


def create_error_response(
    error_code: ErrorCode,
    message: Optional[str] = None,
    http_status: Optional[int] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    """
    Create a standardized HTTPException with error code.

    Args:
        error_code: Error code enum
        message: Optional custom message (uses default if not provided)
        http_status: Optional HTTP status code (uses default if not provided)
        headers: Optional response headers

    Returns:
        HTTPException with standardized format
    """
    if message is None:
        message = ERROR_MESSAGES.get(error_code, ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR])

    if http_status is None:
        if error_code == ErrorCode.AUTHENTICATION_FAILED:
            http_status = status.HTTP_401_UNAUTHORIZED
        elif error_code == ErrorCode.SERVICE_UNAVAILABLE:
            http_status = status.HTTP_503_SERVICE_UNAVAILABLE
        elif error_code == ErrorCode.VALIDATION_ERROR:
            http_status = status.HTTP_400_BAD_REQUEST
        else:
            http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    return HTTPException(
        status_code=http_status,
        detail={
            "error_code": error_code.value,
            "message": message,
        },
        headers=headers,
    )
