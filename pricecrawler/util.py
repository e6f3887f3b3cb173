"""Formatting and date helpers shared by crawlers, pushers and reports."""

from __future__ import annotations

import calendar
import hashlib
import os
import re
from datetime import date, datetime, timedelta
from typing import Iterator
from zoneinfo import ZoneInfo

DATE_FORMAT = "%Y-%m-%d"

_DURATION_UNITS = (
    ("day", 86400),
    ("hour", 3600),
    ("minute", 60),
    ("second", 1),
)
_SNAKE_BOUNDARY_RE = re.compile(r"([a-z0-9])([A-Z])")
_SNAKE_SEPARATOR_RE = re.compile(r"[^0-9a-zA-Z]+")


def format_number(value: int | float) -> str:
    """Return ``value`` with thousands separators (``12345 -> '12,345'``)."""

    if isinstance(value, float) and not value.is_integer():
        return f"{value:,.2f}"
    return f"{int(value):,}"


def format_duration(seconds: float, *, largest: int = 2) -> str:
    """Humanize a duration keeping only the ``largest`` most significant units."""

    remaining = int(round(max(0.0, seconds)))
    if remaining == 0:
        return "0 seconds"

    parts: list[str] = []
    for name, size in _DURATION_UNITS:
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount} {name}{'' if amount == 1 else 's'}")
        if len(parts) >= largest:
            break
    return " ".join(parts)


def snake_case(value: str) -> str:
    spaced = _SNAKE_BOUNDARY_RE.sub(r"\1_\2", value)
    return _SNAKE_SEPARATOR_RE.sub("_", spaced).strip("_").lower()


def random_sha1() -> str:
    return hashlib.sha1(os.urandom(32)).hexdigest()


def parse_date(value: str | date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value.strip(), DATE_FORMAT).date()


def format_date(value: str | date | datetime) -> str:
    return parse_date(value).strftime(DATE_FORMAT)


def today(timezone: str | None = None) -> date:
    if timezone:
        return datetime.now(ZoneInfo(timezone)).date()
    return date.today()


def yesterday(timezone: str | None = None) -> date:
    return today(timezone) - timedelta(days=1)


def last_week(timezone: str | None = None) -> date:
    return today(timezone) - timedelta(days=7)


def last_month(timezone: str | None = None) -> date:
    current = today(timezone)
    year, month = (current.year, current.month - 1) if current.month > 1 else (current.year - 1, 12)
    day = min(current.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def last_date_of_month(value: str | date | datetime) -> date:
    parsed = parse_date(value)
    return parsed.replace(day=calendar.monthrange(parsed.year, parsed.month)[1])


def date_range(start: str | date, end: str | date, step: int = 1) -> Iterator[date]:
    """Yield dates from ``start`` to ``end`` inclusive, in either direction."""

    if step <= 0:
        raise ValueError("step must be a positive number of days")

    current = parse_date(start)
    last = parse_date(end)
    delta = timedelta(days=step if last >= current else -step)
    while (current <= last) if delta.days > 0 else (current >= last):
        yield current
        current += delta
