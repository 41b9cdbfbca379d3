"""
Helper Utilities Module
Common utility functions used across the application.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz
from dateutil import parser as date_parser


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def parse_datetime(dt_string: Optional[str]) -> Optional[datetime]:
    """
    Parse a platform datetime string to a naive UTC datetime.

    Args:
        dt_string: ISO 8601 datetime string, with or without offset

    Returns:
        datetime object or None if parsing fails
    """
    if not dt_string:
        return None

    if isinstance(dt_string, datetime):
        parsed = dt_string
    else:
        try:
            parsed = date_parser.parse(dt_string)
        except (ValueError, TypeError, OverflowError):
            return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(pytz.UTC).replace(tzinfo=None)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format a stored naive UTC datetime as ISO 8601 for JSON output."""
    if value is None:
        return None
    return value.isoformat()


def days_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    """
    Calculate the duration in days between two datetimes.

    Args:
        start: Start datetime
        end: End datetime

    Returns:
        Duration in days rounded to 2 decimals, or None when either bound is missing
        or the end precedes the start
    """
    if not start or not end or end < start:
        return None

    delta = end - start
    return round(delta.total_seconds() / 86400, 2)


def chunk_list(items: List[Any], size: int) -> List[List[Any]]:
    """Split ``items`` into consecutive groups of at most ``size``."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


def safe_get(data: Any, *path, default=None) -> Any:
    """
    Follow a path of dict keys and list indexes through a platform payload.

    ``safe_get(pr, 'createdBy', 'uniqueName')`` or ``safe_get(thread, 'comments', 0, 'id')``;
    any missing step or null value yields ``default``.
    """
    current = data
    for step in path:
        if isinstance(current, dict):
            current = current.get(step)
        elif isinstance(current, list) and isinstance(step, int) and -len(current) <= step < len(current):
            current = current[step]
        else:
            return default
        if current is None:
            return default
    return current


def sanitize_string(text: Optional[str], max_length: int = None) -> Optional[str]:
    """Drop NUL bytes (rejected by PostgreSQL text columns) and truncate with an ellipsis."""
    if text is None:
        return None

    text = str(text).replace('\x00', '')
    if max_length and len(text) > max_length:
        text = text[:max_length - 3] + '...'
    return text


def strip_ref_prefix(ref_name: Optional[str]) -> Optional[str]:
    """Strip the 'refs/heads/' prefix from a git ref name."""
    if not ref_name:
        return ref_name
    prefix = 'refs/heads/'
    return ref_name[len(prefix):] if ref_name.startswith(prefix) else ref_name


def paginate_info(page: int, page_size: int, total: int) -> Dict:
    """Build the pagination block returned by list endpoints."""
    total_pages = (total + page_size - 1) // page_size if page_size > 0 else 0
    return {
        'page': page,
        'pageSize': page_size,
        'total': total,
        'totalPages': total_pages,
        'hasNext': page < total_pages,
        'hasPrev': page > 1
    }
