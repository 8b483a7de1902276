"""Transaction management utilities."""
from contextlib import contextmanager
from typing import Any, Optional, Callable, TypeVar
import functools
import random
import time

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError, IntegrityError

from checkout_handler.utils.logging import get_context_logger
from checkout_handler.utils.error_handling import is_safe_to_retry
from checkout_handler.exceptions import DatabaseError, ErrorCode

R = TypeVar('R')

MAX_RETRIES = 5
RETRY_DELAY_MS = 25
MAX_RETRY_DELAY_MS = 1000


@contextmanager
def transaction_scope(
    db: Session,
    trace_id: Optional[str] = None,
    operation: str = "transaction"
) -> Any:
    """
    Provide a transactional scope around a series of operations.

    Commits on success and rolls back on any exception. IntegrityError
    is re-raised untouched because a unique violation is how callers
    learn that a conditional insert lost; OperationalError is re-raised
    untouched so `run_with_retry` can classify it. Any other SQLAlchemy
    error is wrapped in DatabaseError.

    Args:
        db: Database session
        trace_id: Trace ID for logging (optional)
        operation: Label used in logs and in the wrapped error

    Yields:
        Database session for use in operations

    Raises:
        DatabaseError: If a non-retryable database error occurs
        Original exception: Any other exception raised in the with block
    """
    logger = get_context_logger("transaction", trace_id=trace_id)

    try:
        yield db
        db.commit()
    except (IntegrityError, OperationalError) as e:
        db.rollback()
        logger.debug(f"{operation} rolled back: {type(e).__name__}")
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error in {operation}: {type(e).__name__}: {str(e)}")
        raise DatabaseError(
            f"Database error: {str(e)}",
            error_code=ErrorCode.DATABASE_ERROR,
            original_exception=e,
            operation=operation
        )
    except Exception as e:
        db.rollback()
        logger.debug(f"{operation} rolled back due to {type(e).__name__}")
        raise


def run_with_retry(
    db: Session,
    func: Callable[[], R],
    trace_id: Optional[str] = None,
    operation: str = "transaction",
    max_retries: int = MAX_RETRIES,
    retry_delay_ms: int = RETRY_DELAY_MS,
    max_retry_delay_ms: int = MAX_RETRY_DELAY_MS
) -> R:
    """
    Call `func` and retry it when the store reports a transient failure.

    `func` owns its own transaction(s); by the time an OperationalError
    reaches this loop the session has already been rolled back by
    `transaction_scope`. Deadlocks, serialization failures and SQLite's
    "database is locked" are retried with exponential backoff and jitter.

    Raises:
        DatabaseError: If the failure persists after max_retries attempts
    """
    logger = get_context_logger("transaction", trace_id=trace_id)

    delay_ms = retry_delay_ms
    for attempt in range(1, max_retries + 1):
        try:
            return func()
        except OperationalError as e:
            db.rollback()
            if not is_safe_to_retry(e) or attempt == max_retries:
                logger.error(f"{operation} failed after {attempt} attempt(s): {str(e)}")
                raise DatabaseError(
                    f"{operation} failed after {attempt} attempt(s)",
                    error_code=ErrorCode.DATABASE_ERROR,
                    original_exception=e,
                    operation=operation,
                    details={"attempts": attempt, "max_retries": max_retries}
                )
            logger.warning(
                f"Transient error in {operation} (attempt {attempt}/{max_retries}), "
                f"retrying in {delay_ms}ms: {str(e)}"
            )
            time.sleep(delay_ms / 1000)
            delay_ms = min(delay_ms * 2, max_retry_delay_ms) + random.randint(0, min(100, delay_ms))

    # Unreachable: the loop either returns or raises
    raise DatabaseError(f"{operation} exhausted retries", operation=operation)


def with_retry(operation: Optional[str] = None) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """
    Decorator form of `run_with_retry` for methods taking `db` as the
    first argument after self.

    Example:
        @with_retry("renew")
        def renew(self, db, lock_id, ...):
            ...
    """
    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        @functools.wraps(func)
        def wrapper(self, db: Session, *args, **kwargs) -> R:
            return run_with_retry(
                db,
                lambda: func(self, db, *args, **kwargs),
                trace_id=kwargs.get("trace_id"),
                operation=operation or func.__name__
            )
        return wrapper
    return decorator
