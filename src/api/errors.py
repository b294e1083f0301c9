"""Structured error taxonomy for the compliance gateway API.

Provides a canonical set of error codes that clients can switch on, ensuring
consistent error handling across all endpoints and middleware layers.

Policy blocks are NOT errors: a blocked send is a 200 with ``blocked=true``.
These codes cover requests the API could not process at all.

Usage::

    from src.api.errors import ErrorCode, error_response

    return JSONResponse(
        status_code=502,
        content=error_response(ErrorCode.TRANSPORT_ERROR, "SMS provider rejected the message."),
    )
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Canonical error codes for API responses.

    Client applications should switch on ``error.code`` (not HTTP status)
    to differentiate error handling paths.
    """

    UNAUTHORIZED = "unauthorized"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    INVALID_PHONE_NUMBER = "invalid_phone_number"
    TRANSPORT_ERROR = "transport_error"
    INTERNAL_ERROR = "internal_error"
    VALIDATION_ERROR = "validation_error"


def error_response(code: ErrorCode, message: str) -> dict:
    """Build a structured error response body.

    Args:
        code: One of the ``ErrorCode`` enum values.
        message: Human-readable error description.

    Returns:
        Dict with ``error`` object containing ``code`` and ``message``.
    """
    return {"error": {"code": code.value, "message": message}}
