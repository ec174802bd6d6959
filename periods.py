import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import GoalPeriod, StatsPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def month_bounds(year: int, month: int) -> tuple[date, date]:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return first, next_month - timedelta(days=1)


def parse_day(value: str) -> Optional[date]:
    """Read the date part of an ISO date or datetime cell."""
    value = (value or "").strip()
    if len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def goal_window(period: GoalPeriod, *, today: Optional[date] = None) -> Period:
    today = today or local_today()
    if period == GoalPeriod.daily:
        return Period(period.value, today, today)
    if period == GoalPeriod.weekly:
        # weeks start on Sunday
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return Period(period.value, start, start + timedelta(days=6))
    if period == GoalPeriod.yearly:
        return Period(period.value, date(today.year, 1, 1), date(today.year, 12, 31))
    start, end = month_bounds(today.year, today.month)
    return Period(period.value, start, end)


def stats_window(
    period: StatsPeriod,
    year: Optional[int] = None,
    month: Optional[int] = None,
    *,
    today: Optional[date] = None,
) -> Optional[Period]:
    today = today or local_today()
    year = year or today.year
    month = month or today.month
    if period == StatsPeriod.all:
        return None
    if period == StatsPeriod.day:
        return Period(period.value, today, today)
    if period == StatsPeriod.year:
        return Period(period.value, date(year, 1, 1), date(year, 12, 31))
    first, last = month_bounds(year, month)
    if period == StatsPeriod.week:
        day = today.day if (today.year, today.month) == (year, month) else 1
        week = math.ceil(day / 7)
        start = first + timedelta(days=(week - 1) * 7)
        end = min(start + timedelta(days=6), last)
        return Period(period.value, start, end)
    return Period(period.value, first, last)
