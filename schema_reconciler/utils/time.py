"""
UTC timestamp utilities for Schema Reconciler.

All timestamps MUST be in UTC with explicit timezone markers. Backup artifacts
and the backup manifest are named and sorted by these timestamps, so naive
datetimes are rejected.

This module provides:
- utc_now(): Current time as timezone-aware datetime
- utc_timestamp(): ISO 8601 timestamp string with 'Z' suffix
- backup_suffix_from_timestamp(): Compact filesystem-safe slug for backup files

Examples:
    >>> from schema_reconciler.utils.time import utc_timestamp, backup_suffix_from_timestamp
    >>> utc_timestamp()
    '2026-10-18T08:30:45Z'
    >>> backup_suffix_from_timestamp()
    '20261018T083045Z'
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """
    Return current time in UTC with timezone info.

    Returns:
        datetime: Current UTC time with tzinfo=timezone.utc

    Note:
        NEVER use datetime.now() without timezone parameter.
        NEVER use datetime.utcnow() (deprecated, returns naive datetime).
    """
    return datetime.now(UTC)


def utc_timestamp() -> str:
    """
    Return ISO 8601 timestamp string with 'Z' suffix.

    Format: YYYY-MM-DDTHH:MM:SSZ

    Returns:
        str: ISO 8601 formatted timestamp in UTC
    """
    return utc_now().strftime("%Y-%m-%dT%H:%M:%SZ")


def backup_suffix_from_timestamp(dt: datetime | None = None) -> str:
    """
    Generate a backup filename suffix from a UTC timestamp.

    Format: YYYYMMDDTHHMMSSZ (no separators in date or time)
    Example: 20261018T083045Z

    The suffix contains no colons, so it is safe on every filesystem, and
    sorts chronologically as a plain string.

    Args:
        dt: Optional datetime to convert. If None, uses utc_now().
            Must be timezone-aware if provided.

    Returns:
        str: Filesystem-safe timestamp slug

    Raises:
        ValueError: If dt is provided but is naive (missing timezone)

    Examples:
        >>> from datetime import datetime, timezone
        >>> backup_suffix_from_timestamp(datetime(2026, 10, 18, 8, 30, 45, tzinfo=timezone.utc))
        '20261018T083045Z'
    """
    if dt is None:
        dt = utc_now()

    if dt.tzinfo is None:
        raise ValueError(
            "Datetime must be timezone-aware (use timezone.utc). "
            "Got naive datetime. Use utc_now() or ensure dt has tzinfo set."
        )

    return dt.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")

