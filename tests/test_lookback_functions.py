from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List
from zoneinfo import ZoneInfo

import pytest

from tradecalc.core.errors import LiteralArgumentError
from tradecalc.services.expressions import parse

FIELDS = {"day": ["close", "high", "ending"], "m60": ["close", "ending"]}

NY = ZoneInfo("America/New_York")

# stockcharts.com Bollinger band reference series
BB_CLOSES = [
    86.1557, 89.0867, 88.7829, 90.3228, 89.0671, 91.1453, 89.4397, 89.175, 86.9302, 87.6752,
    86.9596, 89.4299, 89.3221, 88.7241, 87.4497, 87.2634, 89.4985, 87.9006, 89.126, 90.7043,
]

# stockcharts.com RSI reference series
RSI_CLOSES = [
    44.3389, 44.0902, 44.1497, 43.6124, 44.3278, 44.8264, 45.0955, 45.4245,
    45.8433, 46.0826, 45.8931, 46.0328, 45.614, 46.282, 46.282,
]


def _closes(values: List[float]) -> List[Dict[str, Any]]:
    return [{"day": {"close": v}} for v in values]


def _daily(days: List[str]) -> List[Dict[str, Any]]:
    return [{"day": {"ending": f"{d}T16:00:00-05:00", "close": i}} for i, d in enumerate(days)]


def _hourly() -> List[Dict[str, Any]]:
    """Thursday and Friday 2015-02-26/27 hourly bars; close is the bar index."""

    endings: List[datetime] = []
    for day in (26, 27):
        last = 20 if day == 26 else 12
        endings.extend(datetime(2015, 2, day, h, tzinfo=NY) for h in range(5, last + 1))
    return [{"m60": {"ending": e.isoformat(), "close": i}} for i, e in enumerate(endings)]


def test_bollinger_band_reference_values() -> None:
    sma = parse("SMA(20, day.close)", FIELDS)
    stdev = parse("STDEV(20, day.close)", FIELDS)
    assert sma.warm_up_length == 19
    assert sma(_closes(BB_CLOSES)) == pytest.approx(88.70794, abs=0.01)
    assert stdev(_closes(BB_CLOSES)) == pytest.approx(1.291961214, abs=0.01)

    later = BB_CLOSES + [92.9001]
    assert sma(_closes(later)) == pytest.approx(89.04516, abs=0.01)
    assert stdev(_closes(later)) == pytest.approx(1.4520538118, abs=0.01)


def test_rsi_reference_values() -> None:
    rsi = parse("RSI(14, day.close)", FIELDS)
    assert rsi.warm_up_length == 264
    assert rsi(_closes(RSI_CLOSES)) == pytest.approx(70.5327894837, abs=0.01)
    assert rsi(_closes(RSI_CLOSES + [46.0028])) == pytest.approx(66.3185618052, abs=0.01)


def test_enough_history_gives_a_stable_result() -> None:
    sma = parse("SMA(20, day.close)", FIELDS)
    longer = [80.0, 81.0, 82.0, 83.0, 84.0] + BB_CLOSES
    assert sma(_closes(longer)) == sma(_closes(BB_CLOSES))


def test_ema_of_one_is_the_last_value() -> None:
    ema = parse("EMA(1, day.close)", FIELDS)
    assert ema.warm_up_length == 0
    assert ema(_closes([1, 2, 3])) == 3
    assert parse("EMA(10, day.close)", FIELDS).warm_up_length == 99


def test_ema_seeds_with_the_simple_average() -> None:
    ema = parse("EMA(2, day.close)", FIELDS)
    # seed (1 + 3) / 2 = 2, then 2/3 * 6 + 1/3 * 2
    assert ema(_closes([1, 3, 6])) == pytest.approx(14 / 3)


def test_window_statistics() -> None:
    bars = _closes([1, 5, 2, 3])
    assert parse("HIGHEST(3, day.close)", FIELDS)(bars) == 5
    assert parse("LOWEST(3, day.close)", FIELDS)(bars) == 2
    assert parse("OFFSET(1, day.close)", FIELDS)(bars) == 2
    assert parse("DIRECTION(3, day.close)", FIELDS)(_closes([1, 2, 2, 2])) == 1
    assert parse("DIRECTION(3, day.close)", FIELDS)(_closes([3, 2, 2, 2])) == -1
    assert parse("PF(4, day.close)", FIELDS)(_closes([10, 12, 11, 14, 13])) == pytest.approx(2.5)


def test_age_of_high_keeps_the_earliest_peak() -> None:
    highs = [1, 2, 3, 4, 5, 6, 7, 8, 20, 9, 10, 11, 20, 12, 13, 14]
    bars = [{"day": {"high": h}} for h in highs]
    aoh = parse("AOH(16, day.high)", FIELDS)
    assert aoh.warm_up_length == 15
    assert aoh(bars) == 7


def test_linear_regression() -> None:
    bars = _closes([1, 2, 3])
    assert parse("LRS(3, day.close)", FIELDS)(bars) == pytest.approx(50)
    assert parse("R2(3, day.close)", FIELDS)(bars) == pytest.approx(100)


def test_value_at_risk() -> None:
    closes = [100, 101, 99, 102, 98, 103, 97, 104]
    var = parse("VAR(5, 7, day.close)", FIELDS)(_closes(closes))
    cvar = parse("CVAR(5, 7, day.close)", FIELDS)(_closes(closes))
    assert var > 0
    assert cvar >= var - 1e-9

    with pytest.raises(LiteralArgumentError):
        parse("VAR(100, 7, day.close)", FIELDS)


def test_window_size_must_be_a_literal_positive_integer() -> None:
    with pytest.raises(LiteralArgumentError) as exc:
        parse("SMA(day.close, day.close)", FIELDS)
    assert "Expected a literal positive integer in SMA" in str(exc.value)
    with pytest.raises(LiteralArgumentError):
        parse("SMA(2.5, day.close)", FIELDS)
    with pytest.raises(LiteralArgumentError):
        parse("SMA(0, day.close)", FIELDS)


def test_prior_reads_the_previous_session() -> None:
    bars = _daily(["2015-02-23", "2015-02-24", "2015-02-25", "2015-02-26", "2015-02-27"])
    prior = parse("PRIOR(1, DAY(day.ending))", FIELDS)
    assert "ending" in prior.fields
    assert prior(bars) == 26
    assert parse("PRIOR(1, day.close)", FIELDS)(bars) == 3


def test_prior_over_monthly_bars() -> None:
    bars = [
        {"month": {"ending": "2015-01-30T16:00:00-05:00", "close": 10}},
        {"month": {"ending": "2015-02-27T16:00:00-05:00", "close": 11}},
        {"month": {"ending": "2015-03-31T16:00:00-04:00", "close": 12}},
    ]
    prior = parse("PRIOR(1, month.close)", {"month": ["close", "ending"]})
    assert prior.warm_up_length == 1
    assert prior(bars) == 11


def test_since_and_past_anchor_to_earlier_sessions() -> None:
    bars = _hourly()
    # First bar after Thursday's 16:00 close.
    assert parse("SINCE(1, m60.close)", FIELDS)(bars) == 12
    # First bar after Thursday 12:00.
    assert parse("PAST(1, m60.close)", FIELDS)(bars) == 8


def test_session_filters_to_regular_hours() -> None:
    bars = [
        {"m60": {"ending": "2015-02-27T15:00:00-05:00", "close": 1}},
        {"m60": {"ending": "2015-02-27T16:00:00-05:00", "close": 2}},
        {"m60": {"ending": "2015-02-27T17:00:00-05:00", "close": 3}},
    ]
    assert parse("SESSION(m60.close)", FIELDS)(bars) == 2
    assert parse("m60.close", FIELDS)(bars) == 3


def test_time_of_day_picks_the_same_hour() -> None:
    bars = _hourly()
    tod = parse("TOD(SMA(2, m60.close))", FIELDS)
    # Thursday 12:00 is bar 7 and Friday 12:00 is bar 23.
    assert tod(bars) == 15
