from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tradecalc.core.errors import CalendarError


@lru_cache(maxsize=64)
def get_zone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for ``name`` raising CalendarError when unknown."""

    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise CalendarError(f"Unknown time zone: {name}") from exc


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any, zone: ZoneInfo) -> datetime:
    """Return a tz-aware datetime for ``value``.

    - tz-aware datetimes are returned unchanged.
    - tz-naive datetimes, dates and ISO strings without an offset are treated
      as wall-clock time in ``zone``.
    - anything else raises CalendarError.
    """

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=zone)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time(), tzinfo=zone)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError as exc:
            raise CalendarError(f"Invalid date: {value}") from exc
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=zone)
        return parsed
    raise CalendarError(f"Invalid date: {value!r}")


def wall_clock(day: date, seconds: float, zone: ZoneInfo) -> datetime:
    """Aware datetime for ``seconds`` of wall-clock time after ``day`` midnight."""

    naive = datetime.combine(day, time()) + timedelta(seconds=seconds)
    return naive.replace(tzinfo=zone)


def seconds_of_day(value: datetime) -> float:
    """Wall-clock seconds since local midnight, including microseconds."""

    return (
        value.hour * 3600
        + value.minute * 60
        + value.second
        + value.microsecond / 1_000_000
    )


__all__ = [
    "get_zone",
    "utc_now",
    "parse_timestamp",
    "wall_clock",
    "seconds_of_day",
]
