"""Shared date normalization and schedule calendar helpers."""
from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Python weekday numbering: Monday=0 ... Sunday=6
DEFAULT_WEEKEND_DAYS = (5, 6)


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_date(value: Any) -> date | None:
    """Convert mixed date inputs (ISO strings, timestamps, dates) into a `date`."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if _DATE_ONLY_RE.match(token):
            try:
                return date.fromisoformat(token)
            except ValueError:
                return None
        parsed = _parse_datetime_token(token)
        if parsed:
            return parse_date(parsed)
    return None


def format_date(value: date | None) -> str | None:
    return value.isoformat() if value else None


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def max_date(values: Iterable[date | None]) -> date | None:
    valid = [v for v in values if v is not None]
    return max(valid) if valid else None


def min_date(values: Iterable[date | None]) -> date | None:
    valid = [v for v in values if v is not None]
    return min(valid) if valid else None


class ScheduleCalendar:
    """Day arithmetic for schedule propagation.

    In calendar mode durations are plain day offsets. In working-day mode
    weekend days and holidays are skipped, matching how project boards count
    effort.
    """

    def __init__(
        self,
        working_days_only: bool = False,
        weekend_days: Iterable[int] = DEFAULT_WEEKEND_DAYS,
        holidays: Iterable[date | str] = (),
    ):
        self.working_days_only = working_days_only
        self.weekend_days = frozenset(int(d) for d in weekend_days)
        self.holidays = frozenset(d for d in (parse_date(h) for h in holidays) if d)

    def is_working_day(self, day: date) -> bool:
        if day.weekday() in self.weekend_days:
            return False
        return day not in self.holidays

    def next_working_day(self, day: date) -> date:
        """Return `day` itself if it is a working day, else the next one."""
        if not self.working_days_only:
            return day
        current = day
        # A full year of non-working days means the calendar is misconfigured.
        for _ in range(366):
            if self.is_working_day(current):
                return current
            current += timedelta(days=1)
        raise ValueError("Calendar has no working days")

    def add_days(self, start: date, days: float) -> date:
        whole = max(0, math.ceil(days))
        if not self.working_days_only:
            return start + timedelta(days=whole)
        current = start
        remaining = whole
        while remaining > 0:
            current += timedelta(days=1)
            if self.is_working_day(current):
                remaining -= 1
        return current

    def days_between(self, start: date, end: date) -> int:
        """Signed day count from `start` to `end` in this calendar's units."""
        if end < start:
            return -self.days_between(end, start)
        if not self.working_days_only:
            return (end - start).days
        count = 0
        current = start
        while current < end:
            current += timedelta(days=1)
            if self.is_working_day(current):
                count += 1
        return count
