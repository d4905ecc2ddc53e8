"""Shared parsing utilities for aggregator payloads.

Centralises the value coercion the sync service needs: ISO 8601
timestamps, decimal amounts, and HTTP ``Retry-After`` values.
"""

import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

_LEADING_INT_RE = re.compile(r"^\s*(\d+)")


def parse_iso_datetime(value) -> datetime | None:
    """Parse an ISO 8601 string (or date/datetime object) to a UTC-aware datetime.

    Handles:
    - Z suffix ("2024-02-01T00:00:00Z")
    - Standard ISO with offset ("2024-02-01T00:00:00+00:00")
    - Date-only strings ("2024-02-01"), taken as midnight UTC
    - datetime/date objects passed through with UTC normalisation

    Returns:
        A timezone-aware UTC datetime, or None if the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None

    value_str = value.strip()
    if not value_str:
        return None

    if value_str.endswith("Z"):
        value_str = value_str[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(value_str)
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        pass

    try:
        d = date.fromisoformat(value_str)
        return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
    except ValueError:
        return None


def to_decimal(value) -> Decimal | None:
    """Coerce a provider amount (string, int, float or Decimal) to Decimal.

    Returns None for missing, non-numeric, or non-finite values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, float):
        value = str(value)
    if not isinstance(value, (int, str)):
        return None
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def parse_retry_after(headers: Mapping[str, str] | None) -> int | None:
    """Extract ``Retry-After`` seconds from response headers.

    Header names are matched case-insensitively. Only the delta-seconds
    form is understood; an HTTP-date or garbage value yields None.
    """
    if not headers:
        return None
    for key, value in headers.items():
        if str(key).lower() != "retry-after":
            continue
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        match = _LEADING_INT_RE.match(str(value))
        return int(match.group(1)) if match else None
    return None
