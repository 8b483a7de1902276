"""
Validation utilities for the checkout handler.

This module provides the identifier and payload checks applied at the
service boundary, independent of the pydantic models at the HTTP edge.
"""
import re
import json
from typing import Optional, Pattern, Tuple, Union, Dict, Any

from checkout_handler.exceptions import ValidationError, ErrorCode

# Common validation patterns
IDEMPOTENCY_KEY_REGEX = re.compile(r'^[a-zA-Z0-9\-_\.:]+$')
IDENTIFIER_REGEX = re.compile(r'^[a-zA-Z0-9\-_\.:]+$')

# Common validation constants
MAX_IDEMPOTENCY_KEY_LENGTH = 128
MAX_IDENTIFIER_LENGTH = 128
MAX_REASON_LENGTH = 255
MAX_PHASE_LENGTH = 64
MAX_METADATA_SIZE_KB = 64


def validate_input(
    field_name: str,
    value: Optional[str],
    required: bool = True,
    max_length: Optional[int] = None,
    min_length: Optional[int] = None,
    pattern: Optional[Union[str, Pattern]] = None,
    custom_error_message: Optional[str] = None
) -> Tuple[bool, Optional[str], str]:
    """
    Validate an input string against common validation rules.

    Args:
        field_name: Name of the field being validated (for error messages)
        value: Value to validate
        required: Whether the field is required (default: True)
        max_length: Maximum allowed length (optional)
        min_length: Minimum required length (optional)
        pattern: Regex pattern to match (optional)
        custom_error_message: Optional custom error message

    Returns:
        Tuple of (is_valid, error_message, normalized_value)
    """
    if value is None or not str(value).strip():
        if required:
            return False, custom_error_message or f"{field_name} is required", ""
        return True, None, ""

    normalized_value = str(value).strip()

    if min_length is not None and len(normalized_value) < min_length:
        return False, custom_error_message or f"{field_name} must be at least {min_length} characters", normalized_value

    if max_length is not None and len(normalized_value) > max_length:
        return False, custom_error_message or f"{field_name} is too long (maximum {max_length} characters)", normalized_value

    if pattern:
        if isinstance(pattern, str):
            pattern = re.compile(pattern)
        if not pattern.match(normalized_value):
            return False, custom_error_message or f"{field_name} has invalid format", normalized_value

    return True, None, normalized_value


def validate_and_raise(
    field_name: str,
    value: Optional[str],
    required: bool = True,
    max_length: Optional[int] = None,
    min_length: Optional[int] = None,
    pattern: Optional[Union[str, Pattern]] = None,
    error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    custom_error_message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> str:
    """
    Validate an input and raise ValidationError if invalid.

    Returns:
        Normalized value if valid

    Raises:
        ValidationError: If validation fails
    """
    is_valid, error_message, normalized_value = validate_input(
        field_name=field_name,
        value=value,
        required=required,
        max_length=max_length,
        min_length=min_length,
        pattern=pattern,
        custom_error_message=custom_error_message
    )

    if not is_valid:
        error_details = details or {}
        if max_length is not None:
            error_details["max_length"] = max_length
        if min_length is not None:
            error_details["min_length"] = min_length

        raise ValidationError(
            error_message,
            error_code=error_code,
            field=field_name,
            value=value,
            details=error_details
        )

    return normalized_value


def validate_idempotency_key(key: Optional[str], required: bool = True) -> str:
    """Idempotency keys: 1-128 chars of [A-Za-z0-9._:-]."""
    return validate_and_raise(
        "idempotency_key",
        key,
        required=required,
        max_length=MAX_IDEMPOTENCY_KEY_LENGTH,
        pattern=IDEMPOTENCY_KEY_REGEX,
        custom_error_message=None if key else "Idempotency-Key is required"
    )


def validate_identifier(field_name: str, value: Optional[str], required: bool = True) -> str:
    return validate_and_raise(
        field_name,
        value,
        required=required,
        max_length=MAX_IDENTIFIER_LENGTH,
        pattern=IDENTIFIER_REGEX
    )


def validate_metadata_field_size(
    metadata: Optional[Dict[str, Any]],
    max_size_kb: int = MAX_METADATA_SIZE_KB,
    field_name: str = "metadata"
) -> Dict[str, Any]:
    """
    Validate that metadata is a JSON-serializable dict under `max_size_kb`.

    Raises:
        ValidationError: If metadata is not a dict, not serializable or too large
    """
    if not metadata:
        return {}

    if not isinstance(metadata, dict):
        raise ValidationError(
            f"{field_name} must be a dictionary",
            field=field_name,
            details={"actual_type": type(metadata).__name__}
        )

    try:
        serialized = json.dumps(metadata)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Invalid {field_name} format: {str(e)}",
            field=field_name,
            details={"error": str(e)}
        )

    size_kb = len(serialized) / 1024
    if size_kb > max_size_kb:
        raise ValidationError(
            f"{field_name} exceeds maximum size of {max_size_kb}KB",
            field=field_name,
            details={"size_kb": round(size_kb, 1), "max_size_kb": max_size_kb}
        )

    return dict(metadata)
