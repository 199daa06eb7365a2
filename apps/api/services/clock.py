"""UTC time helpers shared by the billing services."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Calendar month arithmetic, clamping to the last day of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def is_billing_day(anchor: Optional[datetime], today: date) -> bool:
    """True when ``today`` is the monthly anniversary of ``anchor``.

    Anchors on the 29th-31st fall on the last day of months that are shorter.
    """
    if anchor is None:
        return False
    last_day = calendar.monthrange(today.year, today.month)[1]
    return today.day == min(as_utc(anchor).day, last_day)


def next_cycle_end(anchor: datetime, current_end: Optional[datetime]) -> datetime:
    """First monthly anniversary of ``anchor`` strictly after ``current_end``.

    Counting from the anchor keeps a 31st-of-month subscription on the 31st
    after passing through a shorter month.
    """
    anchor = as_utc(anchor)
    floor = as_utc(current_end) or anchor
    months = 1
    while add_months(anchor, months) <= floor:
        months += 1
    return add_months(anchor, months)
