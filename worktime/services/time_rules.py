"""
Date and duration rules for timesheet entries.
Task dates cross the store boundary as DD/MM/YYYY strings; audit stamps are
DD/MM/YYYY HH:mm in the configured local timezone. Nothing here normalizes to UTC.
"""
from datetime import date, datetime, timedelta
from typing import Optional
import pytz
from ..config import settings

TASK_DATE_FORMAT = "%d/%m/%Y"
STAMP_FORMAT = "%d/%m/%Y %H:%M"


def date_part(value) -> str:
    """
    Return the DD/MM/YYYY slice of a stored date string, dropping any trailing time.

    Args:
        value: Stored TaskDate (may be None, padded, or "DD/MM/YYYY HH:mm")

    Returns:
        Trimmed date part, or "" when empty
    """
    if value is None:
        return ""
    text = str(value).strip()
    if not text:
        return ""
    return text.split(" ")[0]


def parse_task_date(value) -> Optional[date]:
    """
    Parse a DD/MM/YYYY (optionally with trailing time) string as a local date.

    Returns:
        date, or None when the value is not a valid day string
    """
    part = date_part(value)
    if not part:
        return None
    try:
        return datetime.strptime(part, TASK_DATE_FORMAT).date()
    except ValueError:
        return None


def now_local(timezone_str: Optional[str] = None) -> datetime:
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return datetime.now(tz)


def now_stamp(timezone_str: Optional[str] = None) -> str:
    """Current local time formatted as DD/MM/YYYY HH:mm (audit-trail format)."""
    try:
        return now_local(timezone_str).strftime(STAMP_FORMAT)
    except pytz.UnknownTimeZoneError:
        return datetime.utcnow().strftime(STAMP_FORMAT)


def minutes_to_hours(minutes) -> float:
    """Hours for a minute count, rounded to two decimals like the stored TaskTime."""
    return round((int(minutes or 0)) / 60, 2)


def modified_since(task_date: str, days_back: int = 2) -> Optional[str]:
    """
    ISO timestamp of local midnight `days_back` days before the task date.
    Used to bound the row fetch for a panel date.
    """
    day = parse_task_date(task_date)
    if day is None:
        return None
    start = datetime.combine(day, datetime.min.time()) - timedelta(days=days_back)
    return start.strftime("%Y-%m-%dT%H:%M:%S")
