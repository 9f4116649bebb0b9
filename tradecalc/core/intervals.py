from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Tuple

from tradecalc.core.errors import UnknownFieldError

_MINUTE = 60 * 1000
_DAY = 24 * 60 * _MINUTE

# Nominal durations used for ordering only; calendar arithmetic lives in
# tradecalc.services.periods.
MILLIS: Dict[str, int] = {
    "m1": _MINUTE,
    "m2": 2 * _MINUTE,
    "m5": 5 * _MINUTE,
    "m10": 10 * _MINUTE,
    "m15": 15 * _MINUTE,
    "m20": 20 * _MINUTE,
    "m30": 30 * _MINUTE,
    "m60": 60 * _MINUTE,
    "m120": 120 * _MINUTE,
    "m240": 240 * _MINUTE,
    "day": _DAY,
    "week": 7 * _DAY,
    "month": 31 * _DAY,
    "quarter": 3 * 31 * _DAY,
    "year": 365 * _DAY,
}

VALUES: Tuple[str, ...] = tuple(MILLIS)

MINUTE_INTERVALS = frozenset(v for v in VALUES if re.fullmatch(r"m\d+", v))


def is_interval(value: Any) -> bool:
    return isinstance(value, str) and value in MILLIS


def interval_minutes(interval: str) -> int:
    """Tick size in minutes for the m* intervals."""

    if interval not in MINUTE_INTERVALS:
        raise UnknownFieldError(f"Not a minute interval: {interval}")
    return int(interval[1:])


def _millis_of(item: Any) -> int:
    if isinstance(item, str):
        if item not in MILLIS:
            raise UnknownFieldError(
                f"Unknown interval: {item} must be one of {', '.join(VALUES)}"
            )
        return MILLIS[item]
    if isinstance(item, dict):
        return int(item["millis"])
    return int(getattr(item, "millis"))


def sort_intervals(items: Iterable[Any]) -> List[Any]:
    """Sort interval names (or objects exposing ``millis``) by duration.

    The sort is stable so equal durations keep their input order.
    """

    return sorted(items, key=_millis_of)


def unique_sorted(items: Iterable[str]) -> List[str]:
    """Deduplicate interval names preserving first occurrence, then sort."""

    seen: Dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return sort_intervals(seen)


__all__ = [
    "MILLIS",
    "VALUES",
    "MINUTE_INTERVALS",
    "is_interval",
    "interval_minutes",
    "sort_intervals",
    "unique_sorted",
]
