"""Time Utilities - UTC timestamps and due-date arithmetic"""
from datetime import datetime, timezone, timedelta
from typing import Any, Optional
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted date or datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Best-effort conversion of context values (datetime or ISO string) to UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return parse_iso(value)
        except ValueError:
            return None
    return None


def add_days(dt: datetime, days: float) -> datetime:
    """Add days to datetime"""
    return dt + timedelta(days=days)


def calculate_due_date(start_time: datetime, duration_days: Optional[float]) -> Optional[datetime]:
    """
    Calculate due datetime from start time and a duration in days

    Returns:
        Due datetime, or None when no duration is configured
    """
    if not duration_days:
        return None
    return add_days(start_time, duration_days)


def is_overdue(due_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Check if due datetime has passed"""
    if due_date is None:
        return False
    return (now or utc_now()) > ensure_utc(due_date)


def days_overdue(due_date: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole days elapsed since the due date (0 when not overdue)"""
    if not is_overdue(due_date, now):
        return 0
    delta = (now or utc_now()) - ensure_utc(due_date)
    return delta.days


def start_of_month(dt: datetime) -> datetime:
    """First instant of the month containing dt"""
    return ensure_utc(dt).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
