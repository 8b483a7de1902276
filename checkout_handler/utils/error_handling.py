"""
Error handling utilities for the checkout handler.

This module provides common error handling functions used throughout
the checkout handler codebase.
"""
import functools
from typing import Callable, TypeVar, Dict, Any, Optional, Type

from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

from checkout_handler.exceptions import BaseAppException, DatabaseError, ErrorCode
from checkout_handler.utils.logging import get_context_logger

R = TypeVar('R')

# Fragments of driver messages for failures that succeed on a second try
_RETRYABLE_FRAGMENTS = (
    "deadlock",
    "lock timeout",
    "database is locked",
    "could not serialize",
    "serialization failure",
    "lost connection",
    "server closed the connection",
)


def handle_database_error(
    exception: Exception,
    operation: str,
    logger: Any = None,
    trace_id: Optional[str] = None,
    error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
    details: Optional[Dict[str, Any]] = None
) -> None:
    """
    Standardized handler for database errors.

    Args:
        exception: The exception that occurred
        operation: Description of the operation that failed
        logger: Logger instance to use (optional)
        trace_id: Trace ID for logging context (optional)
        error_code: Error code to use (default: DATABASE_ERROR)
        details: Additional error details (optional)

    Raises:
        DatabaseError: A standardized error wrapping the original exception
    """
    if logger is None:
        logger = get_context_logger("database", trace_id=trace_id)

    error_msg = f"Database error in {operation}: {str(exception)}"
    error_details = details or {}

    if isinstance(exception, IntegrityError):
        error_code = ErrorCode.DATABASE_CONSTRAINT_ERROR
        error_details["error_type"] = "constraint_violation"
    elif isinstance(exception, OperationalError):
        lowered = str(exception).lower()
        if "timeout" in lowered or "timed out" in lowered:
            error_code = ErrorCode.TIMEOUT_ERROR
            error_details["error_type"] = "timeout"
        elif "connection" in lowered:
            error_code = ErrorCode.DATABASE_CONNECTION_ERROR
            error_details["error_type"] = "connection_error"

    logger.error(error_msg)

    raise DatabaseError(
        error_msg,
        error_code=error_code,
        original_exception=exception,
        operation=operation,
        details=error_details
    )


def is_safe_to_retry(exception: Exception) -> bool:
    """
    Determine if an exception is safe to retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if isinstance(exception, SQLAlchemyError):
        error_str = str(exception).lower()
        return any(fragment in error_str for fragment in _RETRYABLE_FRAGMENTS)
    return False


def with_error_handling(
    operation_name: Optional[str] = None,
    trace_id_param: str = 'trace_id',
    db_param: str = 'db'
) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """
    Decorator to standardize error handling across service functions.

    Application exceptions pass through untouched so the API layer can
    map them to HTTP statuses. Raw SQLAlchemy errors are rolled back and
    wrapped in DatabaseError.

    Args:
        operation_name: Name of the operation (defaults to function name)
        trace_id_param: Name of the parameter containing trace_id
        db_param: Name of the parameter containing the database session
    """
    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> R:
            operation = operation_name or func.__name__
            trace_id = kwargs.get(trace_id_param)
            logger = get_context_logger(operation, trace_id=trace_id)

            try:
                return func(*args, **kwargs)
            except BaseAppException:
                raise
            except SQLAlchemyError as e:
                db = kwargs.get(db_param) or (args[0] if args else None)
                if db is not None and hasattr(db, 'rollback'):
                    db.rollback()
                handle_database_error(e, operation, logger, trace_id=trace_id)

        return wrapper
    return decorator
