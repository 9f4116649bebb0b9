from __future__ import annotations

from datetime import datetime

import pytest

from tradecalc.core.errors import CalendarError
from tradecalc.services.periods import create_period, day_length

ALWAYS_OPEN = {
    "tz": "UTC",
    "open_time": "00:00:00",
    "liquid_hours": "00:00:00 - 24:00:00",
    "trading_hours": "00:00:00 - 24:00:00",
}


def test_period_exposes_interval_metadata() -> None:
    period = create_period({"interval": "m5"})
    assert period.value == "m5"
    assert period.millis == 5 * 60 * 1000


def test_minute_increment_skips_the_weekend() -> None:
    m1 = create_period({"interval": "m1"})
    friday_close = "2015-02-27T20:00:00-05:00"
    assert m1.inc(friday_close, 1).isoformat() == "2015-03-02T04:01:00-05:00"
    assert m1.dec("2015-03-02T04:01:00-05:00", 1).isoformat() == "2015-02-27T20:00:00-05:00"


def test_minute_floor_and_ceil() -> None:
    m15 = create_period({"interval": "m15"})
    assert m15.floor("2015-02-27T10:07:00-05:00").isoformat() == "2015-02-27T10:00:00-05:00"
    assert m15.ceil("2015-02-27T10:07:00-05:00").isoformat() == "2015-02-27T10:15:00-05:00"
    # Outside the session floor moves to the next open.
    assert m15.floor("2015-02-28T12:00:00-05:00").isoformat() == "2015-03-02T04:00:00-05:00"


SESSIONS = {
    "regular": {},
    "extended": {"rth": False},
    "overnight": {"trading_hours": "17:00:00 - 16:00:00", "liquid_hours": "17:00:00 - 16:00:00"},
    "always_open": ALWAYS_OPEN,
}

STARTS = [
    "2015-02-25T10:00:30-05:00",  # mid-session
    "2015-02-25T02:15:00-05:00",  # pre-open
    "2015-02-25T21:30:00-05:00",  # post-close
    "2015-02-28T12:00:00-05:00",  # Saturday
    "2015-03-01T18:00:00-05:00",  # Sunday evening
    "2015-03-06T16:00:00-05:00",  # close before a daylight saving change
]


@pytest.mark.parametrize("session", sorted(SESSIONS))
@pytest.mark.parametrize(
    "interval", ["m1", "m30", "m60", "m120", "m240", "day", "week", "month", "quarter", "year"]
)
def test_increment_and_diff_are_inverse(interval: str, session: str) -> None:
    period = create_period({"interval": interval, **SESSIONS[session]})
    for start in STARTS:
        for n in (0, 1, 7, 40):
            later = period.inc(start, n)
            assert period.diff(later, start) == n
            assert period.diff(start, later) == -n
            earlier = period.dec(start, n)
            assert period.diff(start, earlier) == n
            assert period.diff(earlier, start) == -n


def test_day_floor_and_ceil_follow_liquid_hours() -> None:
    day = create_period({"interval": "day"})
    assert day.ceil("2015-02-27T12:00:00-05:00").isoformat() == "2015-02-27T16:00:00-05:00"
    assert day.floor("2015-02-27T12:00:00-05:00").isoformat() == "2015-02-27T09:30:00-05:00"
    assert day.inc("2015-02-27T16:00:00-05:00", 1).isoformat() == "2015-03-02T16:00:00-05:00"
    assert day.dec("2015-02-27T16:00:00-05:00", 1).isoformat() == "2015-02-26T16:00:00-05:00"


def test_day_crosses_daylight_saving_at_the_same_wall_clock() -> None:
    day = create_period({"interval": "day"})
    assert day.inc("2015-03-06T16:00:00-05:00", 1).isoformat() == "2015-03-09T16:00:00-04:00"


def test_calendar_intervals_start_at_midnight() -> None:
    week = create_period({"interval": "week"})
    assert week.ceil("2015-02-25T12:00:00-05:00").isoformat() == "2015-03-02T00:00:00-05:00"
    month = create_period({"interval": "month"})
    assert month.floor("2015-02-15T12:00:00-05:00").isoformat() == "2015-02-01T00:00:00-05:00"
    assert month.inc("2015-02-01T00:00:00-05:00", 1).isoformat() == "2015-03-01T00:00:00-05:00"
    quarter = create_period({"interval": "quarter"})
    assert quarter.floor("2015-05-15").isoformat() == "2015-04-01T00:00:00-04:00"


def test_always_open_market_has_no_gaps() -> None:
    m60 = create_period({"interval": "m60", **ALWAYS_OPEN})
    assert m60.inc("2015-02-28T05:30:00Z", 1).isoformat() == "2015-02-28T07:00:00+00:00"
    assert m60.diff("2015-03-01T05:00:00Z", "2015-02-28T05:00:00Z") == 24


def test_fractional_amounts_interpolate() -> None:
    m60 = create_period({"interval": "m60", **ALWAYS_OPEN})
    assert m60.inc("2015-02-28T05:00:00Z", 1.5).isoformat() == "2015-02-28T06:30:00+00:00"


def test_negative_amounts_reverse_direction() -> None:
    m1 = create_period({"interval": "m1"})
    start = "2015-02-27T10:00:00-05:00"
    assert m1.inc(start, -2) == m1.dec(start, 2)


def test_naive_inputs_are_read_in_the_display_zone() -> None:
    m1 = create_period({"interval": "m1"})
    assert m1.ceil(datetime(2015, 2, 27, 10, 0, 30)).isoformat() == "2015-02-27T10:01:00-05:00"


def test_display_zone_differs_from_the_security_zone() -> None:
    day = create_period({"interval": "day", "tz": "Europe/London", "security_tz": "America/New_York"})
    assert day.ceil("2015-02-27T17:00:00+00:00").isoformat() == "2015-02-27T21:00:00+00:00"


def test_invalid_input_raises() -> None:
    m1 = create_period({"interval": "m1"})
    with pytest.raises(CalendarError):
        m1.floor("not a date")
    with pytest.raises(CalendarError):
        m1.inc("2015-02-27T10:00:00-05:00", "two")  # type: ignore[arg-type]
    with pytest.raises(CalendarError):
        create_period({})


def test_day_length_counts_bars_per_session() -> None:
    assert day_length(create_period({"interval": "m60"}).options) == 16
    assert day_length(create_period({"interval": "m30", "rth": False}).options) == 32
    assert day_length(create_period({"interval": "day"}).options) == 1
    assert day_length(create_period({"interval": "m60", **ALWAYS_OPEN}).options) == 24


def test_month_period_uses_the_calendar_grid() -> None:
    month = create_period({"interval": "month"})
    assert month.inc("2015-02-25T10:00:00-05:00", 1).isoformat() == "2015-04-01T00:00:00-04:00"
    assert month.dec("2015-02-25T10:00:00-05:00", 1).isoformat() == "2015-01-01T00:00:00-05:00"
    assert day_length(month.options) == pytest.approx(1 / 21)
