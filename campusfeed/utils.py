"""Utility functions for campusfeed.

This module provides common helper functions for datetime handling, media URL
resolution, display formatting and identifier handling.
"""

import uuid
from datetime import UTC, datetime

from dateutil import parser as dateutil_parser  # type: ignore[import-untyped]

TEMP_ID_PREFIX = "temp-"


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse ISO8601 timestamp string into timezone-aware UTC datetime.

    Naive timestamps (the backend emits them) are assumed to be UTC.

    Args:
        value: ISO8601 timestamp string, datetime object, or None

    Returns:
        Parsed timezone-aware datetime in UTC, or None if input is None

    Raises:
        ValueError: If timestamp format is invalid

    Example:
        >>> dt = parse_datetime("2024-01-15T10:30:00Z")
        >>> dt.tzinfo
        datetime.timezone.utc
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    dt = dateutil_parser.isoparse(value)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)

    return dt.astimezone(UTC)


def utc_now() -> datetime:
    """Get current UTC timestamp as timezone-aware datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime | None) -> str | None:
    """Format datetime as ISO8601 string with 'Z' suffix.

    Example:
        >>> format_iso(datetime(2024, 1, 15, 10, 30, tzinfo=UTC))
        '2024-01-15T10:30:00Z'
    """
    if dt is None:
        return None
    return dt.isoformat().replace("+00:00", "Z")


def format_display_date(dt: datetime | None) -> str:
    """Short date used under posts, comments and notifications.

    Example:
        >>> format_display_date(datetime(2024, 1, 5, tzinfo=UTC))
        'Jan 5, 2024'
    """
    if dt is None:
        return ""
    return f"{dt:%b} {dt.day}, {dt.year}"


def format_display_time(dt: datetime | None) -> str:
    """Hour and minute used for stories and chat messages.

    Example:
        >>> format_display_time(datetime(2024, 1, 5, 9, 7, tzinfo=UTC))
        '09:07'
    """
    if dt is None:
        return ""
    return f"{dt:%H:%M}"


def full_media_url(base_url: str, path: str | None) -> str | None:
    """Resolve a media reference returned by the backend to an absolute URL.

    Absolute ``http(s)`` and ``blob:`` references pass through unchanged;
    relative paths are joined onto the API base URL.

    Example:
        >>> full_media_url("http://api", "static/a.png")
        'http://api/static/a.png'
        >>> full_media_url("http://api", None) is None
        True
    """
    if not path:
        return None
    if path.startswith(("http", "blob:")):
        return path
    clean = path if path.startswith("/") else f"/{path}"
    return f"{base_url.rstrip('/')}{clean}"


def default_avatar_url(seed: str) -> str:
    """Generated avatar used when a user has no profile picture."""
    return f"https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


def default_group_image_url(seed: str) -> str:
    """Generated cover used when a group has no image."""
    return f"https://api.dicebear.com/7.x/identicon/svg?seed={seed}"


def redact_token(token: str | None) -> str:
    """Redact sensitive tokens for safe logging.

    Example:
        >>> redact_token("abcdefghijklmnop")
        'abcdefgh...mnop'
        >>> redact_token("short")
        '***'
        >>> redact_token(None)
        'None'
    """
    if not token:
        return "None"
    return f"{token[:8]}...{token[-4:]}" if len(token) > 12 else "***"


def normalize_id(id_value: str | int | None) -> str | None:
    """Normalize ID value to string format.

    Example:
        >>> normalize_id(123)
        '123'
        >>> normalize_id(None) is None
        True
    """
    if id_value is None:
        return None
    return str(id_value)


def temp_id() -> str:
    """Identifier for an optimistic entity that the server has not confirmed."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex[:12]}"


def is_temp_id(id_value: str | None) -> bool:
    """Whether an identifier was produced by :func:`temp_id`."""
    return bool(id_value) and str(id_value).startswith(TEMP_ID_PREFIX)
