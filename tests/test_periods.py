from datetime import date

from models import GoalPeriod, StatsPeriod
from periods import goal_window, month_bounds, parse_day, stats_window


def test_month_bounds_handles_december_and_leap_years() -> None:
    assert month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))
    assert month_bounds(2025, 12) == (date(2025, 12, 1), date(2025, 12, 31))


def test_goal_windows() -> None:
    wednesday = date(2025, 3, 12)
    assert goal_window(GoalPeriod.daily, today=wednesday).start == wednesday

    week = goal_window(GoalPeriod.weekly, today=wednesday)
    assert (week.start, week.end) == (date(2025, 3, 9), date(2025, 3, 15))

    sunday = date(2025, 3, 9)
    assert goal_window(GoalPeriod.weekly, today=sunday).start == sunday

    month = goal_window(GoalPeriod.monthly, today=wednesday)
    assert (month.start, month.end) == (date(2025, 3, 1), date(2025, 3, 31))
    assert month.contains(date(2025, 3, 31))
    assert not month.contains(date(2025, 4, 1))

    year = goal_window(GoalPeriod.yearly, today=wednesday)
    assert (year.start, year.end) == (date(2025, 1, 1), date(2025, 12, 31))


def test_stats_week_is_clamped_to_month_end() -> None:
    window = stats_window(StatsPeriod.week, 2025, 3, today=date(2025, 3, 30))
    assert (window.start, window.end) == (date(2025, 3, 29), date(2025, 3, 31))

    other_month = stats_window(StatsPeriod.week, 2025, 1, today=date(2025, 3, 30))
    assert (other_month.start, other_month.end) == (date(2025, 1, 1), date(2025, 1, 7))

    assert stats_window(StatsPeriod.all, today=date(2025, 3, 30)) is None


def test_parse_day_reads_date_prefix() -> None:
    assert parse_day("2025-03-01T10:00:00.000Z") == date(2025, 3, 1)
    assert parse_day("2025-03-01") == date(2025, 3, 1)
    assert parse_day("03/01/2025") is None
    assert parse_day("") is None
