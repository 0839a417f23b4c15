"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import date, datetime, time, timedelta, timezone

import pendulum

DEFAULT_TZ = "America/Los_Angeles"
WEEKDAY_ABBREVIATIONS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_in_tz(tz_name: str | None = None) -> pendulum.DateTime:
    tz = pendulum.timezone(tz_name or timezone_name())
    return pendulum.now(tz)


def today_in_tz(tz_name: str | None = None) -> date:
    return now_in_tz(tz_name).date()


def in_timezone(moment: datetime, tz_name: str) -> pendulum.DateTime:
    """Express an instant in the civil time of ``tz_name``.

    Naive datetimes are taken to be UTC, which is how the database hands them back.
    """
    return pendulum.instance(ensure_utc(moment)).in_timezone(tz_name)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def weekday_abbreviation(value: date) -> str:
    return WEEKDAY_ABBREVIATIONS[value.weekday()]


def parse_iso_date(value: str) -> date:
    return pendulum.parse(value).date()


def parse_compact_date(value: str) -> date:
    """Parse GA4's ``YYYYMMDD`` date dimension, falling back to ISO strings."""
    if len(value) == 8 and value.isdigit():
        return date(int(value[:4]), int(value[4:6]), int(value[6:]))
    return parse_iso_date(value)


def parse_clock_time(value: str | time) -> time:
    if isinstance(value, time):
        return value
    parts = [int(part) for part in value.split(":")]
    while len(parts) < 3:
        parts.append(0)
    return time(parts[0], parts[1], parts[2])


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def lookback_window(days: int, tz_name: str | None = None, *, today: date | None = None) -> tuple[date, date]:
    """Return ``(start, end)`` covering ``days`` days and ending the day before ``today``."""
    today = today or today_in_tz(tz_name)
    return today - timedelta(days=days), today - timedelta(days=1)
