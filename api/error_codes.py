"""Centralized error code to HTTP status mapping."""
from checkout_handler.exceptions import ErrorCode

# Map internal error codes to HTTP status codes and user-friendly messages
ERROR_CODE_MAP = {
    ErrorCode.VALIDATION_ERROR: {
        "status": 422,
        "message": "Validation failed"
    },
    ErrorCode.INPUT_VALIDATION_ERROR: {
        "status": 422,
        "message": "Validation failed"
    },
    ErrorCode.RESOURCE_NOT_FOUND: {
        "status": 404,
        "message": "Resource not found"
    },
    ErrorCode.LOCK_NOT_FOUND: {
        "status": 404,
        "message": "Checkout lock not found"
    },
    ErrorCode.RESOURCE_CONFLICT: {
        "status": 409,
        "message": "Conflicting request"
    },
    ErrorCode.LOCK_CONFLICT: {
        "status": 409,
        "message": "Cart is already being checked out"
    },
    ErrorCode.CART_LOCKED: {
        "status": 409,
        "message": "Cart is locked for checkout"
    },
    ErrorCode.FINGERPRINT_MISMATCH: {
        "status": 409,
        "message": "Cart changed since checkout started"
    },
    ErrorCode.LOCK_EXPIRED: {
        "status": 410,
        "message": "Checkout lock is no longer active"
    },
    ErrorCode.UNAUTHORIZED: {
        "status": 401,
        "message": "Authentication required"
    },
    ErrorCode.FORBIDDEN: {
        "status": 403,
        "message": "Forbidden"
    },
    ErrorCode.SESSION_MISMATCH: {
        "status": 403,
        "message": "Checkout lock is held by a different session"
    },
    ErrorCode.THROTTLED: {
        "status": 429,
        "message": "Too many checkout attempts"
    },
    ErrorCode.SERVICE_UNAVAILABLE: {
        "status": 503,
        "message": "Service unavailable"
    },
    ErrorCode.DEPENDENCY_ERROR: {
        "status": 502,
        "message": "Downstream service error"
    },
    ErrorCode.TIMEOUT_ERROR: {
        "status": 503,
        "message": "Database timed out"
    },
    ErrorCode.DATABASE_ERROR: {
        "status": 500,
        "message": "Database operation failed"
    },
    ErrorCode.DATABASE_CONNECTION_ERROR: {
        "status": 500,
        "message": "Database operation failed"
    },
    ErrorCode.DATABASE_CONSTRAINT_ERROR: {
        "status": 500,
        "message": "Database operation failed"
    },
    ErrorCode.CONFIGURATION_ERROR: {
        "status": 500,
        "message": "Service misconfigured"
    },
    ErrorCode.INTERNAL_ERROR: {
        "status": 500,
        "message": "Internal server error"
    },
}


def get_http_status(error_code: ErrorCode) -> tuple[int, str]:
    """
    Get HTTP status code and message for an error code.

    Args:
        error_code: Internal error code

    Returns:
        Tuple of (status_code, message)
    """
    mapping = ERROR_CODE_MAP.get(error_code, {
        "status": 500,
        "message": "Internal server error"
    })

    return mapping["status"], mapping["message"]
