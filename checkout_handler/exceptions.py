"""
Exception definitions for checkout locking.
Defines custom exceptions used throughout the checkout handler.
"""
from enum import Enum
from typing import Optional, Dict, Any
import traceback

class ErrorCode(Enum):
    """Standardized error codes for application exceptions."""
    # Validation errors (1000-1999)
    VALIDATION_ERROR = 1000
    INPUT_VALIDATION_ERROR = 1002

    # Resource errors (2000-2999)
    RESOURCE_NOT_FOUND = 2000
    RESOURCE_CONFLICT = 2002
    LOCK_NOT_FOUND = 2100
    LOCK_CONFLICT = 2101
    CART_LOCKED = 2102
    LOCK_EXPIRED = 2103
    FINGERPRINT_MISMATCH = 2104

    # Authentication/Authorization errors (3000-3999)
    UNAUTHORIZED = 3000
    FORBIDDEN = 3001
    SESSION_MISMATCH = 3002

    # Database errors (4000-4999)
    DATABASE_ERROR = 4000
    DATABASE_CONNECTION_ERROR = 4001
    DATABASE_CONSTRAINT_ERROR = 4002

    # Service errors (5000-5999)
    SERVICE_UNAVAILABLE = 5000
    DEPENDENCY_ERROR = 5001
    TIMEOUT_ERROR = 5002

    # Throttling errors (6000-6999)
    THROTTLED = 6000

    # Configuration errors (7000-7999)
    CONFIGURATION_ERROR = 7000

    # System errors (9000-9999)
    INTERNAL_ERROR = 9000


class BaseAppException(Exception):
    """Base exception for all application exceptions."""
    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        original_exception: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        self.message = message
        self.error_code = error_code
        self.original_exception = original_exception
        self.details = details or {}
        self.stack_trace = traceback.format_exc() if original_exception else None

        # Add additional kwargs to details
        for key, value in kwargs.items():
            self.details[key] = value

        if original_exception:
            self.details["original_error"] = str(original_exception)

        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        result = {
            "error_code": self.error_code.value,
            "error_type": self.error_code.name,
            "message": self.message
        }

        if self.details:
            result["details"] = self.details

        # Stack trace is filtered out before anything reaches a client
        if self.stack_trace:
            result["stack_trace"] = self.stack_trace

        return result


class ValidationError(BaseAppException):
    """Exception raised for validation errors."""
    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class ResourceNotFoundError(BaseAppException):
    """Exception raised when a resource is not found."""
    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.RESOURCE_NOT_FOUND,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class LockNotFoundError(ResourceNotFoundError):
    """Raised when a checkout lock id does not exist."""
    def __init__(self, lock_id: Optional[str], message: Optional[str] = None, **kwargs):
        super().__init__(
            message or f"Checkout lock {lock_id} not found",
            resource_type="checkout_lock",
            resource_id=lock_id,
            error_code=ErrorCode.LOCK_NOT_FOUND,
            **kwargs
        )


class LockConflictError(BaseAppException):
    """
    Raised when another holder owns the active lock for a cart.

    Carries the conflicting lock id and its lease deadline so clients
    can decide whether to wait or poll the status endpoint.
    """
    def __init__(
        self,
        message: str,
        cart_id: Optional[str] = None,
        lock_id: Optional[str] = None,
        expires_at: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.LOCK_CONFLICT,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if cart_id:
            details["cart_id"] = cart_id
        if lock_id:
            details["lock_id"] = lock_id
        if expires_at:
            details["expires_at"] = expires_at

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class CartLockedError(LockConflictError):
    """Raised when a cart mutation is attempted during an active checkout."""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code=ErrorCode.CART_LOCKED, **kwargs)


class LockExpiredError(BaseAppException):
    """Raised when a transition targets a lock that is no longer active."""
    def __init__(
        self,
        message: str,
        lock_id: Optional[str] = None,
        state: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.LOCK_EXPIRED,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if lock_id:
            details["lock_id"] = lock_id
        if state:
            details["state"] = state

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class SessionMismatchError(BaseAppException):
    """Raised when a session other than the holder touches a lock."""
    def __init__(
        self,
        message: str = "Checkout lock is held by a different session",
        lock_id: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.SESSION_MISMATCH,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if lock_id:
            details["lock_id"] = lock_id

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class FingerprintMismatchError(BaseAppException):
    """Raised when the cart changed since the lock was taken."""
    def __init__(
        self,
        message: str = "Cart contents changed since checkout started",
        lock_id: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.FINGERPRINT_MISMATCH,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if lock_id:
            details["lock_id"] = lock_id

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class ThrottledError(BaseAppException):
    """Raised when a checkout-initiation attempt exceeds a throttle tier."""
    def __init__(
        self,
        message: str,
        scope: Optional[str] = None,
        retry_after: int = 1,
        limit: Optional[int] = None,
        error_code: ErrorCode = ErrorCode.THROTTLED,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if scope:
            details["scope"] = scope
        if limit is not None:
            details["limit"] = limit
        details["retry_after"] = retry_after
        self.retry_after = retry_after

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class DownstreamFailure(BaseAppException):
    """
    Wraps a failure reported by a checkout phase handler.

    Never raised past the pipeline; it is recorded as the lock's
    failure_reason instead.
    """
    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.DEPENDENCY_ERROR,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if phase:
            details["phase"] = phase
        self.phase = phase

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )

    @property
    def reason(self) -> str:
        if self.phase:
            return f"{self.phase}: {self.message}"
        return self.message


class DatabaseError(BaseAppException):
    """Exception raised for database errors."""
    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )


class UnauthorizedError(BaseAppException):
    """Exception raised for unauthorized access."""
    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNAUTHORIZED,
        **kwargs
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            **kwargs
        )


class ServiceUnavailableError(BaseAppException):
    """Exception raised when a collaborator is not configured or reachable."""
    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.SERVICE_UNAVAILABLE,
        **kwargs
    ):
        details = kwargs.pop("details", {}) or {}
        if service:
            details["service"] = service

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            **kwargs
        )
