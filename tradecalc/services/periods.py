from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo

from tradecalc.core.errors import CalendarError
from tradecalc.core.intervals import MILLIS, MINUTE_INTERVALS, interval_minutes
from tradecalc.core.market_hours import (
    DAY_SECONDS,
    SessionHours,
    SessionOptions,
    resolve_options,
)
from tradecalc.core.time_utils import get_zone, parse_timestamp, wall_clock

# A Monday; trading-day and week indexes count from here.
_EPOCH_MONDAY = date(1970, 1, 5)
_ONE_MICROSECOND = timedelta(microseconds=1)

# Sessions per bar for day and coarser intervals, used for warm-up sizing.
_BARS_PER_DAY = {
    "day": 1.0,
    "week": 1 / 5,
    "month": 1 / 21,
    "quarter": 1 / 63,
    "year": 1 / 252,
}


def _trading_day_index(day: date) -> int:
    weeks, _ = divmod((day - _EPOCH_MONDAY).days, 7)
    return weeks * 5 + day.weekday()


def _trading_day(index: int) -> date:
    weeks, weekday = divmod(index, 5)
    return _EPOCH_MONDAY + timedelta(days=weeks * 7 + weekday)


# -----------------------------------------------------------------------------
# Clocks
#
# A clock numbers the grid instants of one interval class with integer
# positions. floor/ceil snap an instant onto the grid, and inc/dec/diff are
# plain integer arithmetic on positions.
# -----------------------------------------------------------------------------


class _Clock:
    zone: ZoneInfo

    def pos_floor(self, when: datetime) -> int:
        raise NotImplementedError

    def pos_ceil(self, when: datetime) -> int:
        raise NotImplementedError

    def at(self, position: int) -> datetime:
        raise NotImplementedError

    def floor(self, when: datetime) -> datetime:
        return self.at(self.pos_floor(when))

    def ceil(self, when: datetime) -> datetime:
        return self.at(self.pos_ceil(when))

    def inc(self, when: datetime, amount: int) -> datetime:
        if amount == 0:
            return self.ceil(when)
        return self.at(self.pos_ceil(when) + amount)

    def dec(self, when: datetime, amount: int) -> datetime:
        if amount == 0:
            return self.floor(when)
        return self.at(self.pos_floor(when) - amount)

    def diff(self, to: datetime, since: datetime) -> int:
        steps = self.pos_floor(to) - self.pos_ceil(since)
        if steps >= 0:
            return steps
        if to.timestamp() < since.timestamp():
            return -self.diff(since, to)
        return 0


class _ContinuousClock(_Clock):
    """Always-open market: a fixed grid of ``tick`` seconds, no gaps."""

    def __init__(self, zone: ZoneInfo, tick: int) -> None:
        self.zone = zone
        self.tick = tick
        probe = datetime(2001, 1, 1, 12)
        offset = zone.utcoffset(probe) or timedelta(0)
        dst = zone.dst(probe) or timedelta(0)
        # Standard offset keeps hourly ticks on the hour in local time.
        self.offset = int((offset - dst).total_seconds())

    def pos_floor(self, when: datetime) -> int:
        return math.floor((when.timestamp() + self.offset) / self.tick)

    def pos_ceil(self, when: datetime) -> int:
        return math.ceil((when.timestamp() + self.offset) / self.tick)

    def at(self, position: int) -> datetime:
        return datetime.fromtimestamp(position * self.tick - self.offset, self.zone)


class _SessionClock(_Clock):
    """Mon-Fri sessions with ticks on a wall-clock grid inside each session.

    Ticks of a session are the grid instants in (open, close] plus the close
    itself. With ``tick`` of None a session has a single tick, its close.
    A session's open shares its position with the prior session's close, so
    overnight and weekend gaps are never counted.
    """

    def __init__(self, zone: ZoneInfo, hours: SessionHours, tick: Optional[int]) -> None:
        self.zone = zone
        self.hours = hours
        self.tick = tick
        self.start = hours.start
        self.end = hours.end + DAY_SECONDS if hours.overnight else hours.end
        if tick is None:
            self.size = 1
        else:
            self.size = (
                self.end // tick - self.start // tick + (1 if self.end % tick else 0)
            )

    # Session geometry ------------------------------------------------------

    def _base(self, day: date) -> date:
        return day - timedelta(days=1) if self.hours.overnight else day

    def _opens(self, day: date) -> datetime:
        return wall_clock(self._base(day), self.start, self.zone)

    def _closes(self, day: date) -> datetime:
        return wall_clock(self._base(day), self.end, self.zone)

    def _wall(self, index: int) -> float:
        if index <= 0:
            return self.start
        if index >= self.size or self.tick is None:
            return self.end
        return (self.start // self.tick + index) * self.tick

    def _floor_index(self, wall: float) -> int:
        if wall >= self.end:
            return self.size
        if self.tick is None:
            return 0
        return max(int(wall // self.tick) - self.start // self.tick, 0)

    def _ceil_index(self, wall: float) -> int:
        if wall <= self.start:
            return 0
        if self.tick is None:
            return self.size
        return min(math.ceil(wall / self.tick) - self.start // self.tick, self.size)

    def _locate(self, when: datetime) -> Tuple[str, date, float]:
        """Return ("in", day, wall) or ("gap", next_day, 0) for ``when``."""

        local = when.astimezone(self.zone)
        stamp = when.timestamp()
        today = local.date()
        for offset in (-1, 0, 1):
            day = today + timedelta(days=offset)
            if day.weekday() >= 5:
                continue
            if self._opens(day).timestamp() <= stamp <= self._closes(day).timestamp():
                base = datetime.combine(self._base(day), time())
                wall = (local.replace(tzinfo=None) - base).total_seconds()
                return "in", day, wall
        day = today - timedelta(days=1)
        while day.weekday() >= 5 or self._opens(day).timestamp() <= stamp:
            day += timedelta(days=1)
        return "gap", day, 0.0

    def pos_floor(self, when: datetime) -> int:
        state, day, wall = self._locate(when)
        if state == "gap":
            return _trading_day_index(day) * self.size
        return _trading_day_index(day) * self.size + self._floor_index(wall)

    def pos_ceil(self, when: datetime) -> int:
        state, day, wall = self._locate(when)
        if state == "gap":
            return _trading_day_index(day) * self.size
        return _trading_day_index(day) * self.size + self._ceil_index(wall)

    def at(self, position: int) -> datetime:
        index, tick = divmod(position, self.size)
        if tick == 0:
            index, tick = index - 1, self.size
        day = _trading_day(index)
        return wall_clock(self._base(day), self._wall(tick), self.zone)

    def floor(self, when: datetime) -> datetime:
        state, day, wall = self._locate(when)
        if state == "gap":
            return self._opens(day)
        index = self._floor_index(wall)
        if index == 0:
            return self._opens(day)
        return wall_clock(self._base(day), self._wall(index), self.zone)

    def ceil(self, when: datetime) -> datetime:
        state, day, wall = self._locate(when)
        if state == "gap":
            return self.at(_trading_day_index(day) * self.size)
        index = self._ceil_index(wall)
        if index == 0:
            return self._opens(day)
        return wall_clock(self._base(day), self._wall(index), self.zone)


class _CalendarClock(_Clock):
    """Week, month, quarter and year grids at local midnight."""

    def __init__(self, zone: ZoneInfo, unit: str) -> None:
        self.zone = zone
        self.unit = unit

    def _index(self, day: date) -> int:
        if self.unit == "week":
            return (day - _EPOCH_MONDAY).days // 7
        months = day.year * 12 + day.month - 1
        if self.unit == "month":
            return months
        if self.unit == "quarter":
            return months // 3
        return day.year

    def at(self, position: int) -> datetime:
        if self.unit == "week":
            day = _EPOCH_MONDAY + timedelta(days=7 * position)
        elif self.unit == "month":
            day = date(position // 12, position % 12 + 1, 1)
        elif self.unit == "quarter":
            months = position * 3
            day = date(months // 12, months % 12 + 1, 1)
        else:
            day = date(position, 1, 1)
        return datetime.combine(day, time(), tzinfo=self.zone)

    def pos_floor(self, when: datetime) -> int:
        return self._index(when.astimezone(self.zone).date())

    def pos_ceil(self, when: datetime) -> int:
        position = self.pos_floor(when)
        if self.at(position).timestamp() < when.timestamp():
            return position + 1
        return position


def _create_clock(options: SessionOptions, interval: str) -> _Clock:
    zone = get_zone(options.security_tz)
    if interval in MINUTE_INTERVALS:
        hours = options.session_hours(interval)
        tick = interval_minutes(interval) * 60
        if hours.is_24h:
            return _ContinuousClock(zone, tick)
        return _SessionClock(zone, hours, tick)
    if interval == "day":
        return _SessionClock(zone, options.session_hours(interval), None)
    return _CalendarClock(zone, interval)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def _as_amount(amount: Any) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise CalendarError(f"Amount must be a number, not {amount!r}")
    if not math.isfinite(amount):
        raise CalendarError(f"Amount must be finite, not {amount}")
    return amount


class Period:
    """Calendar arithmetic for one interval and market session.

    Inputs may be datetimes or ISO-8601 strings; naive values are read in
    ``tz``. Results are tz-aware datetimes in ``tz``.
    """

    def __init__(self, options: SessionOptions) -> None:
        if not options.interval:
            raise CalendarError("An interval is required to create a period")
        self.options = options
        self.value: str = options.interval
        self.millis: int = MILLIS[options.interval]
        self._display = get_zone(options.tz)
        self._clock = _create_clock(options, options.interval)

    def __repr__(self) -> str:
        return f"Period({self.value!r}, security_tz={self.options.security_tz!r})"

    def _read(self, when: Any) -> datetime:
        return parse_timestamp(when, self._display)

    def _show(self, when: datetime) -> datetime:
        return when.astimezone(self._display)

    def floor(self, when: Any) -> datetime:
        return self._show(self._clock.floor(self._read(when)))

    def ceil(self, when: Any) -> datetime:
        return self._show(self._clock.ceil(self._read(when)))

    def inc(self, when: Any, amount: float = 1) -> datetime:
        amount = _as_amount(amount)
        if amount < 0:
            return self.dec(when, -amount)
        start = self._read(when)
        whole = math.floor(amount)
        fraction = amount - whole
        if not fraction:
            return self._show(self._clock.inc(start, int(whole)))
        point = self._clock.inc(start, int(whole) + 1)
        segment = self._clock.floor(point - _ONE_MICROSECOND)
        return self._show(_between(segment, point, fraction))

    def dec(self, when: Any, amount: float = 1) -> datetime:
        amount = _as_amount(amount)
        if amount < 0:
            return self.inc(when, -amount)
        start = self._read(when)
        whole = math.floor(amount)
        fraction = amount - whole
        if not fraction:
            return self._show(self._clock.dec(start, int(whole)))
        point = self._clock.dec(start, int(whole))
        segment = self._clock.floor(point - _ONE_MICROSECOND)
        return self._show(_between(point, segment, fraction))

    def diff(self, to: Any, since: Any) -> int:
        """Signed number of grid steps from ``since`` to ``to``."""

        return self._clock.diff(self._read(to), self._read(since))


def _between(origin: datetime, target: datetime, fraction: float) -> datetime:
    stamp = origin.timestamp() + fraction * (target.timestamp() - origin.timestamp())
    return datetime.fromtimestamp(stamp, origin.tzinfo)


def create_period(options: Any) -> Period:
    """Build a Period from session options (mapping or SessionOptions)."""

    return Period(resolve_options(options))


def day_length(options: SessionOptions) -> float:
    """Number of ``options.interval`` bars in one trading session."""

    interval = options.interval or "day"
    if interval in MINUTE_INTERVALS:
        hours = options.session_hours(interval)
        seconds = DAY_SECONDS if hours.is_24h else hours.length
        return seconds / (interval_minutes(interval) * 60)
    return _BARS_PER_DAY[interval]


__all__ = ["Period", "create_period", "day_length"]
