"""Calendar month arithmetic"""

from datetime import date
import calendar


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def month_start(value: date) -> date:
    return value.replace(day=1)


def month_end(value: date) -> date:
    return value.replace(day=calendar.monthrange(value.year, value.month)[1])
