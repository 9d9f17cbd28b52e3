import calendar
import re
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from flask import current_app

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_date(value):
    """YYYY-MM-DD -> date, or None when the value is malformed."""
    if not isinstance(value, str) or not DATE_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def normalize_time(value):
    """Accept "H:MM", "HH:MM" or "HH:MM:SS" and return "HH:MM" (None if invalid)."""
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    candidate = f"{parts[0].zfill(2)}:{parts[1]}"
    return candidate if TIME_RE.match(candidate) else None


def to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def local_now() -> datetime:
    """Naive local wall-clock time in the business timezone."""
    tz = ZoneInfo(current_app.config.get("TIMEZONE", "UTC"))
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def date_range(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def add_months(moment: datetime, months: int = 1) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)
