"""
Utility functions for the checkout handler.

This module provides common utility functions used throughout
the checkout handler, including transaction management and logging.
"""
from .transaction import (
    transaction_scope,
    run_with_retry,
    with_retry
)
from .logging import (
    get_context_logger,
    with_context,
    configure_logging
)
from .datetime_utils import (
    ensure_timezone_aware,
    parse_iso_datetime,
    format_iso_datetime,
    get_current_datetime,
    start_of_day
)
from .validation import (
    validate_input,
    validate_and_raise,
    validate_idempotency_key,
    validate_identifier,
    validate_metadata_field_size
)
from .error_handling import (
    handle_database_error,
    is_safe_to_retry,
    with_error_handling
)

__all__ = [
    # Transaction management
    "transaction_scope",
    "run_with_retry",
    "with_retry",

    # Logging
    "get_context_logger",
    "with_context",
    "configure_logging",

    # Datetime utilities
    "ensure_timezone_aware",
    "parse_iso_datetime",
    "format_iso_datetime",
    "get_current_datetime",
    "start_of_day",

    # Validation
    "validate_input",
    "validate_and_raise",
    "validate_idempotency_key",
    "validate_identifier",
    "validate_metadata_field_size",

    # Error handling
    "handle_database_error",
    "is_safe_to_retry",
    "with_error_handling",
]
