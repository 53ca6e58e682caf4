from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


class RoutineStatus(str, Enum):
    ok = "ok"
    due_soon = "due_soon"
    overdue = "overdue"


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Calendar-month addition; the day snaps to month end when it does not exist."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    day = min(base.day, dim)
    return date(year, month, day)


def routine_next_date(last_date: date, interval_months: int) -> date:
    if interval_months < 1:
        raise ValueError("Interval must be at least one month")
    return add_months(last_date, interval_months)


def routine_status(
    next_date: date, *, today: Optional[date] = None, lookahead_days: int = 7
) -> RoutineStatus:
    today = today or local_today()
    if next_date < today:
        return RoutineStatus.overdue
    if next_date <= today + timedelta(days=lookahead_days):
        return RoutineStatus.due_soon
    return RoutineStatus.ok
