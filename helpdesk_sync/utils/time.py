"""Time Utilities - UTC timestamps and parsing"""
from datetime import datetime, timezone
from typing import Any, Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    dt = date_parser.isoparse(iso_string)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion of a record timestamp to an aware datetime.

    Accepts datetimes, ISO strings (with or without offset, as written by
    both the ticket backend and the email provider) and epoch seconds.
    Empty and unparseable values become None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return parse_iso(value)
        except ValueError:
            try:
                dt = date_parser.parse(value)
            except (ValueError, OverflowError):
                return None
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None

