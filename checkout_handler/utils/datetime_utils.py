"""
Datetime utilities for the checkout handler.

Lease arithmetic compares timestamps read back from the store, and
some drivers hand those back naive. Everything here normalizes to UTC.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger("checkout.utils.datetime")

def ensure_timezone_aware(
    dt: Optional[datetime],
    default_timezone: timezone = timezone.utc,
    field_name: Optional[str] = None
) -> Optional[datetime]:
    """
    Ensure a datetime object has timezone information.

    Naive datetimes are assumed to already be in `default_timezone`.

    Args:
        dt: Datetime object to ensure has timezone info
        default_timezone: Timezone to use if dt is naive (default: UTC)
        field_name: Optional field name for logging context

    Returns:
        Timezone-aware datetime object or None
    """
    if dt is None:
        return None

    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        field_info = f" for {field_name}" if field_name else ""
        logger.debug(f"Converting naive datetime{field_info} to UTC")
        return dt.replace(tzinfo=default_timezone)

    return dt

def parse_iso_datetime(
    date_string: Optional[str],
    default_timezone: timezone = timezone.utc,
    field_name: Optional[str] = None
) -> Optional[datetime]:
    """
    Parse an ISO format datetime string into a timezone-aware datetime object.

    Returns None if the string is empty or unparseable.
    """
    if not date_string:
        return None

    try:
        dt = datetime.fromisoformat(date_string.replace('Z', '+00:00'))
        return ensure_timezone_aware(dt, default_timezone, field_name)
    except (ValueError, AttributeError) as e:
        field_info = f" for {field_name}" if field_name else ""
        logger.warning(f"Failed to parse datetime string{field_info}: {date_string} - {str(e)}")
        return None

def format_iso_datetime(
    dt: Optional[datetime],
    include_microseconds: bool = True
) -> Optional[str]:
    """Format a datetime object as an ISO format string (None passes through)."""
    if dt is None:
        return None

    dt = ensure_timezone_aware(dt)

    if include_microseconds:
        return dt.isoformat()
    return dt.replace(microsecond=0).isoformat()

def get_current_datetime() -> datetime:
    """
    Get the current datetime with UTC timezone.

    Returns:
        Current timezone-aware datetime
    """
    return datetime.now(timezone.utc)

def start_of_day(dt: datetime) -> datetime:
    """Midnight UTC of the day containing `dt`."""
    dt = ensure_timezone_aware(dt)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)
