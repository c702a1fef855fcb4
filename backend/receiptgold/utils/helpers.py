"""Miscellaneous helper functions."""

from __future__ import annotations

import calendar
import datetime as dt
from typing import Any, Optional


def utcnow() -> dt.datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    The standard ``datetime.fromisoformat`` helper does not accept a lowercase
    ``z`` as the UTC designator. Some data sources provide timestamps that end
    with ``z`` instead of the canonical ``Z``. This function normalises that
    case and returns ``None`` if the value cannot be parsed.
    """
    if not value:
        return None
    try:
        if value.endswith("z"):
            value = value[:-1] + "Z"
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None


def from_unix(ts: Any) -> Optional[dt.datetime]:
    """Convert provider epoch seconds into a naive UTC datetime."""
    if ts is None or ts == "":
        return None
    try:
        return dt.datetime.fromtimestamp(int(ts), tz=dt.timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def from_unix_ms(ts: Any) -> Optional[dt.datetime]:
    """Convert epoch milliseconds (RevenueCat) into a naive UTC datetime."""
    if ts is None or ts == "":
        return None
    try:
        return from_unix(int(ts) // 1000)
    except (TypeError, ValueError):
        return None


def isoformat(value: Optional[dt.datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_naive_utc(value).isoformat() + "Z"


def month_key(when: dt.datetime) -> str:
    """Return the ``YYYY-MM`` bucket for ``when``."""
    return f"{when.year:04d}-{when.month:02d}"


def month_start(when: dt.datetime) -> dt.datetime:
    return dt.datetime(when.year, when.month, 1)


def add_months(when: dt.datetime, months: int) -> dt.datetime:
    """Shift ``when`` by whole calendar months, clamping the day.

    ``add_months(Jan 31, 1)`` is Feb 28 (or 29), matching how billing
    periods roll on short months.
    """
    index = when.month - 1 + months
    year = when.year + index // 12
    month = index % 12 + 1
    day = min(when.day, calendar.monthrange(year, month)[1])
    return when.replace(year=year, month=month, day=day)
