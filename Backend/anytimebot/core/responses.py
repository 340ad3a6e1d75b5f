"""
Standardized API Response Module

Provides consistent response formatting across all API endpoints.

RESPONSE FORMAT:
    Success:
        {
            "data": <response data>,
            "status": "success"
        }

    Error:
        {
            "error": {
                "code": "ERROR_CODE",
                "message": "Human-readable message",
                "details": {...}  # Optional extra context
            },
            "status": "error"
        }

Handlers raise HTTPException as usual; the app-level exception handlers in
main.py convert them into the error envelope using error_code_for_status().
"""

from typing import Any, Optional


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Authorization errors (403)
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Validation errors (400 / 422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Conflict errors (409)
    CONFLICT = "CONFLICT"

    # Throttling (429)
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors (500 / 502)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"


_STATUS_CODES = {
    400: ErrorCodes.INVALID_INPUT,
    401: ErrorCodes.AUTHENTICATION_REQUIRED,
    403: ErrorCodes.AUTHORIZATION_DENIED,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
    422: ErrorCodes.VALIDATION_ERROR,
    429: ErrorCodes.RATE_LIMITED,
    502: ErrorCodes.UPSTREAM_ERROR,
}


def error_code_for_status(status_code: int) -> str:
    return _STATUS_CODES.get(status_code, ErrorCodes.INTERNAL_ERROR)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any, **extra: Any) -> dict:
    """
    Create a standardized success response dict.

    Extra keyword arguments (e.g. pagination) are added next to "data".
    """
    response = {"data": data, "status": "success"}
    response.update(extra)
    return response


def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Create a standardized error response dict."""
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response
