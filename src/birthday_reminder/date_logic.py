from __future__ import annotations

from datetime import date

from birthday_reminder.errors import InvalidDate
from birthday_reminder.models import BirthdayEntry


def is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def validate_month_day(month: int, day: int) -> None:
    if isinstance(month, bool) or not isinstance(month, int):
        raise InvalidDate(f"Invalid month: {month!r}")
    if isinstance(day, bool) or not isinstance(day, int):
        raise InvalidDate(f"Invalid day: {day!r}")

    if month < 1 or month > 12:
        raise InvalidDate(f"Invalid month: {month}")

    if day < 1 or day > 31:
        raise InvalidDate(f"Invalid day: {day}")

    # 2000 is a leap year, so 29 February passes.
    try:
        date(2000, month, day)
    except ValueError as exc:
        raise InvalidDate(f"Invalid day/month combination: {day:02d}-{month:02d}") from exc


def birthday_date_for_year(entry: BirthdayEntry, year: int) -> date:
    if entry.month == 2 and entry.day == 29 and not is_leap_year(year):
        return date(year, 2, 28)
    return date(year, entry.month, entry.day)


def occurs_on(entry: BirthdayEntry, today: date) -> bool:
    return birthday_date_for_year(entry, today.year) == today


def next_birthday(entry: BirthdayEntry, today: date) -> date:
    this_year = birthday_date_for_year(entry, today.year)
    if this_year >= today:
        return this_year
    return birthday_date_for_year(entry, today.year + 1)


def days_until_birthday(entry: BirthdayEntry, today: date) -> int:
    nxt = next_birthday(entry, today)
    return (nxt - today).days
