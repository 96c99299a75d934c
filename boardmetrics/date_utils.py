"""Shared date parsing and calendar arithmetic helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FRACTION_RE = re.compile(r"\.(\d+)")


def _normalize_fraction(token: str) -> str:
    # Tracker timestamps carry 1-7 fractional digits; fromisoformat wants at most 6.
    def _fix(match: re.Match[str]) -> str:
        digits = match.group(1)[:6]
        return "." + digits.ljust(6, "0")

    return _FRACTION_RE.sub(_fix, token, count=1)


def parse_datetime(value: Any) -> datetime | None:
    """Parse mixed inputs into an aware datetime. Naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    token = value.strip()
    if not token:
        return None
    if _DATE_ONLY_RE.match(token):
        try:
            return datetime.combine(date.fromisoformat(token), time.min, tzinfo=timezone.utc)
        except ValueError:
            return None
    token = _normalize_fraction(token.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(token)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_datetime(value: datetime | None) -> str | None:
    """Serialize for storage, keeping the original UTC offset."""
    if value is None:
        return None
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def to_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def days_between(start: datetime | date, end: datetime | date) -> int:
    """Signed calendar-day difference; time of day is discarded."""
    start_day = start.date() if isinstance(start, datetime) else start
    end_day = end.date() if isinstance(end, datetime) else end
    return (end_day - start_day).days


def add_business_days(start: date, days: int) -> date:
    """Add ``days`` weekdays to ``start``. Saturday and Sunday are skipped.

    Raises OverflowError when the result falls past ``date.max``.
    """
    if days <= 0:
        return start
    # Counting from a weekend day gives the same result as counting from Friday.
    current = start - timedelta(days=max(0, start.weekday() - 4))
    weeks, remainder = divmod(days, 5)
    current += timedelta(weeks=weeks)
    added = 0
    while added < remainder:
        current += timedelta(days=1)
        if current.weekday() >= 5:
            continue
        added += 1
    return current
