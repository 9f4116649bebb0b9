"""Functions that aggregate a calculation over a trailing window of bars.

Each factory receives the session options (with ``interval`` set to the
single interval its arguments use) and compiled argument calculations, and
returns a Calculation whose ``warm_up_length`` covers the window it reads.
Window sizes must be literal positive integers.
"""

from __future__ import annotations

import bisect
import math
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from statistics import NormalDist, stdev
from typing import Any, Callable, Dict, List, Optional, Sequence

from tradecalc.core.errors import LiteralArgumentError, TradeCalcError
from tradecalc.core.market_hours import SessionOptions
from tradecalc.core.time_utils import get_zone, parse_timestamp, seconds_of_day
from tradecalc.services.calculation import Bars, Calculation, get_value
from tradecalc.services.function_registry import FunctionKind, FunctionSpec, registrar
from tradecalc.services.periods import create_period, day_length

FUNCTIONS: Dict[str, FunctionSpec] = {}

lookback = registrar(FUNCTIONS, FunctionKind.LOOKBACK)

_ENDING = ("ending",)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def as_positive_integer(calc: Calculation, name: str) -> int:
    """Evaluate a literal argument without bars and require a positive integer."""

    value: Any = None
    try:
        value = calc(())
    except (TradeCalcError, ArithmeticError, TypeError, ValueError):
        value = None
    if (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
        and round(value) == value
    ):
        return int(value)
    raise LiteralArgumentError(f"Expected a literal positive integer in {name} not {value}")


def get_values(size: int, calc: Calculation, bars: Bars) -> List[Any]:
    """Values of ``calc`` for each of the last ``size`` bars.

    Each value is computed from the bar and the ``calc.warm_up_length`` bars
    before it.
    """

    if not bars:
        return []
    n = calc.warm_up_length + 1
    m = min(size, len(bars))
    return [calc(bars[max(i - n + 1, 0) : i + 1]) for i in range(len(bars) - m, len(bars))]


def _numbers(values: Sequence[Any]) -> List[float]:
    return [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]


def _total(values: Sequence[Any]) -> float:
    return sum(_numbers(values))


def _ending_reader(opts: SessionOptions) -> Callable[[Any], datetime]:
    interval = opts.interval
    zone = get_zone(opts.tz)

    def ending(bar: Any) -> datetime:
        record = get_value(bar, interval) if interval else None
        if isinstance(record, Mapping) and "ending" in record:
            return parse_timestamp(record["ending"], zone)
        return parse_timestamp(get_value(bar, "ending"), zone)

    return ending


def _index_after(bars: Bars, when: datetime, ending: Callable[[Any], datetime]) -> int:
    """Index of the first bar ending strictly after ``when``."""

    stamp = when.timestamp()
    return bisect.bisect_right(bars, stamp, key=lambda bar: ending(bar).timestamp())


def _anchored(bars: Bars, start: int, calc: Calculation) -> Any:
    if start >= len(bars):
        return calc([])
    return calc(bars[start : start + calc.warm_up_length + 1])


def _weekdays_back(day: date, amount: int) -> date:
    """Midnight date ``amount`` weekdays before ``day``.

    Monday and Sunday first fall back to the Saturday before them.
    """

    if day.isoweekday() == 1:
        day -= timedelta(days=2)
    elif day.isoweekday() == 7:
        day -= timedelta(days=1)
    weeks = amount // 5
    days = amount - weeks * 5
    base = day - timedelta(weeks=weeks)
    if day.isoweekday() > days:
        return base - timedelta(days=days)
    return base - timedelta(days=days + 2)


# -----------------------------------------------------------------------------
# Window statistics
# -----------------------------------------------------------------------------


@lookback("OFFSET", "Value of the expression N bars ago")
def offset(opts: SessionOptions, n_periods: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(n_periods, "OFFSET")
    return Calculation(
        lambda bars: calc(bars[: max(len(bars) - n, 0)]),
        warm_up_length=n + calc.warm_up_length,
    )


@lookback("HIGHEST", "Highest value over the last N bars")
def highest(opts: SessionOptions, n_periods: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(n_periods, "HIGHEST")

    def evaluate(bars: Bars) -> Any:
        values = [v for v in _numbers(get_values(n, calc, bars)) if math.isfinite(v)]
        return max(values) if values else None

    return Calculation(evaluate, warm_up_length=n + calc.warm_up_length - 1)


@lookback("LOWEST", "Lowest value over the last N bars")
def lowest(opts: SessionOptions, n_periods: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(n_periods, "LOWEST")

    def evaluate(bars: Bars) -> Any:
        values = [v for v in _numbers(get_values(n, calc, bars)) if math.isfinite(v)]
        return min(values) if values else None

    return Calculation(evaluate, warm_up_length=n + calc.warm_up_length - 1)


@lookback("DIRECTION", "Sign of the latest change, ignoring bars without change")
def direction(opts: SessionOptions, n_periods: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(n_periods, "DIRECTION")

    def evaluate(bars: Bars) -> Any:
        values = _numbers(get_values(n + 1, calc, bars))
        if not values:
            return None
        last = values[-1]
        for value in reversed(values[:-1]):
            if value != last:
                return 1 if last > value else -1
        return 0

    return Calculation(evaluate, warm_up_length=n + calc.warm_up_length)


@lookback("AOH", "Age of high: bars since the highest value in the last N bars")
def aoh(opts: SessionOptions, num: Calculation, high: Calculation) -> Calculation:
    n = as_positive_integer(num, "AOH")

    def evaluate(bars: Bars) -> Any:
        highs = get_values(n, high, bars)
        numbers = _numbers(highs)
        if not numbers:
            return None
        # The earliest bar wins when several share the high.
        return len(highs) - highs.index(max(numbers)) - 1

    return Calculation(evaluate, warm_up_length=n - 1)


@lookback("SMA", "Simple moving average")
def sma(opts: SessionOptions, num: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(num, "SMA")

    def evaluate(bars: Bars) -> Any:
        values = get_values(n, calc, bars)
        if not values:
            return None
        return _total(values) / len(values)

    return Calculation(evaluate, warm_up_length=n + calc.warm_up_length - 1)


@lookback("EMA", "Exponential moving average seeded by a simple average")
def ema(opts: SessionOptions, num: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(num, "EMA")
    if n == 1:
        return Calculation(calc.evaluate, warm_up_length=calc.warm_up_length)
    alpha = 2 / (n + 1)

    def evaluate(bars: Bars) -> Any:
        values = get_values(n * 10, calc, bars)
        first = values[:n]
        if not first:
            return None
        result = _total(first) / len(first)
        for value in _numbers(values[n:]):
            result = alpha * value + (1 - alpha) * result
        return result

    return Calculation(evaluate, warm_up_length=n * 10 + calc.warm_up_length - 1)


@lookback("PF", "Profit factor: gains divided by losses over N changes")
def pf(opts: SessionOptions, num: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(num, "PF")

    def evaluate(bars: Bars) -> Any:
        prices = get_values(n + 1, calc, bars)
        profit = 0.0
        loss = 0.0
        for prior, price in zip(prices, prices[1:]):
            if prior is None or price is None:
                continue
            change = price - prior
            if change > 0:
                profit += change
            else:
                loss += change
        if not loss:
            return None
        return profit / -loss

    return Calculation(evaluate, warm_up_length=n + calc.warm_up_length)


def _regression(values: Sequence[Any]) -> Optional[tuple]:
    if len(values) < 2 or any(v is None for v in values):
        return None
    n = len(values)
    sx = sum(range(n))
    sy = sum(values)
    sxx = sum(x * x for x in range(n))
    sxy = sum(x * y for x, y in enumerate(values))
    det = sxx * n - sx * sx
    slope = (sxy * n - sy * sx) / det
    intercept = (sy * sxx - sx * sxy) / det
    return slope, intercept, sy / n


@lookback("LRS", "Linear regression slope as a percentage of the mean")
def lrs(opts: SessionOptions, n: Calculation, expression: Calculation) -> Calculation:
    size = as_positive_integer(n, "LRS")

    def evaluate(bars: Bars) -> Any:
        fit = _regression(get_values(size, expression, bars))
        if fit is None or not fit[2]:
            return None
        slope, _, mean = fit
        return slope * 100 / mean

    return Calculation(evaluate, warm_up_length=size * 10 + expression.warm_up_length - 1)


@lookback("R2", "R-squared of the linear regression as a percentage")
def r2(opts: SessionOptions, n: Calculation, expression: Calculation) -> Calculation:
    size = as_positive_integer(n, "R2")

    def evaluate(bars: Bars) -> Any:
        values = get_values(size, expression, bars)
        fit = _regression(values)
        if fit is None:
            return None
        slope, intercept, mean = fit
        see = sum((slope * x + intercept - y) ** 2 for x, y in enumerate(values))
        smm = sum((mean - y) ** 2 for y in values)
        if not smm:
            return None
        return 100 - see * 100 / smm

    return Calculation(evaluate, warm_up_length=size * 10 + expression.warm_up_length - 1)


@lookback("STDEV", "Population standard deviation, or 1 when there is no deviation")
def stdev_(opts: SessionOptions, num: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(num, "STDEV")

    def evaluate(bars: Bars) -> Any:
        prices = get_values(n, calc, bars)
        if not prices:
            return 1
        avg = _total(prices) / len(prices)
        sd = math.sqrt(sum((v - avg) ** 2 for v in _numbers(prices)) / len(prices))
        return sd or 1

    return Calculation(evaluate, warm_up_length=n - 1 + calc.warm_up_length)


@lookback("RSI", "Relative strength index with Wilder smoothing")
def rsi(opts: SessionOptions, num: Calculation, calc: Calculation) -> Calculation:
    n = as_positive_integer(num, "RSI")

    def evaluate(bars: Bars) -> Any:
        values = get_values(n + 250, calc, bars)
        changes = [
            (b - a) if a is not None and b is not None else 0
            for a, b in zip(values, values[1:])
        ]
        if not changes:
            return None
        gains = [c if c > 0 else 0 for c in changes]
        losses = [c if c < 0 else 0 for c in changes]
        gain = sum(gains[:n]) / len(gains[:n])
        loss = sum(losses[:n]) / len(losses[:n])
        for g in gains[n:]:
            gain = (gain * (n - 1) + g) / n
        for lost in losses[n:]:
            loss = (loss * (n - 1) + lost) / n
        if loss == 0:
            return 100
        return 100 - (100 / (1 - (gain / loss)))

    return Calculation(evaluate, warm_up_length=n + 250 + calc.warm_up_length)


def _returns(prices: Sequence[Any]) -> List[float]:
    return [
        (price - prior) / prior
        for prior, price in zip(prices, prices[1:])
        if prior and price is not None
    ]


def _risk(chance: Calculation, name: str) -> float:
    pct = as_positive_integer(chance, name)
    if pct >= 100:
        raise LiteralArgumentError(f"Expected a percentage below 100 in {name} not {pct}")
    return NormalDist().inv_cdf(pct / 100)


def _spread(changes: Sequence[float]) -> float:
    return stdev(changes) if len(changes) > 1 else 0.0


@lookback("VAR", "Parametric value at risk of the returns over N bars")
def var(opts: SessionOptions, chance: Calculation, duration: Calculation, calc: Calculation) -> Calculation:
    z = _risk(chance, "VAR")
    n = as_positive_integer(duration, "VAR")

    def evaluate(bars: Bars) -> Any:
        changes = _returns(get_values(n + 1, calc, bars))
        if not changes:
            return 0
        avg = sum(changes) / len(changes)
        return -(z * _spread(changes) + avg)

    return Calculation(evaluate, warm_up_length=n + calc.warm_up_length)


@lookback("CVAR", "Conditional value at risk: mean return beyond the value at risk")
def cvar(opts: SessionOptions, chance: Calculation, duration: Calculation, calc: Calculation) -> Calculation:
    z = _risk(chance, "CVAR")
    n = as_positive_integer(duration, "CVAR")

    def evaluate(bars: Bars) -> Any:
        changes = _returns(get_values(n + 1, calc, bars))
        if not changes:
            return 0
        avg = sum(changes) / len(changes)
        risk = z * _spread(changes) + avg
        shortfall = [c for c in changes if c < risk]
        if not shortfall:
            return -risk
        return -sum(shortfall) / len(shortfall)

    return Calculation(evaluate, warm_up_length=n + calc.warm_up_length)


# -----------------------------------------------------------------------------
# Session anchored windows
# -----------------------------------------------------------------------------


@lookback("PRIOR", "Value as of the session close N days ago")
def prior(opts: SessionOptions, days: Calculation, field: Calculation) -> Calculation:
    d = as_positive_integer(days, "PRIOR")
    n = math.ceil((d + 1) * day_length(opts))
    day = create_period(opts.with_interval("day"))
    ending = _ending_reader(opts)

    def evaluate(bars: Bars) -> Any:
        if not bars:
            return field(bars)
        closes = day.dec(day.ceil(ending(bars[-1])), d)
        end = _index_after(bars, closes, ending)
        start = max(end - field.warm_up_length - 1, 0)
        return field(bars[start:end])

    return Calculation(evaluate, fields=_ENDING, warm_up_length=n + field.warm_up_length)


@lookback("SINCE", "Expression over the bars since the session N days ago")
def since(opts: SessionOptions, days: Calculation, calc: Calculation) -> Calculation:
    d = as_positive_integer(days, "SINCE")
    n = math.ceil((d + 1) * day_length(opts))
    day = create_period(opts.with_interval("day"))
    ending = _ending_reader(opts)

    def evaluate(bars: Bars) -> Any:
        if not bars:
            return calc(bars)
        anchor = day.dec(day.ceil(ending(bars[-1])), d)
        return _anchored(bars, _index_after(bars, anchor, ending), calc)

    return Calculation(evaluate, fields=_ENDING, warm_up_length=n + calc.warm_up_length - 1)


@lookback("PAST", "Expression over the bars of the past N days")
def past(opts: SessionOptions, days: Calculation, calc: Calculation) -> Calculation:
    d = as_positive_integer(days, "PAST")
    n = math.ceil((d + 1) * day_length(opts))
    zone = get_zone(opts.tz)
    ending = _ending_reader(opts)

    def evaluate(bars: Bars) -> Any:
        if not bars:
            return calc(bars)
        last = ending(bars[-1]).astimezone(zone)
        back = (last.date() - _weekdays_back(last.date(), d)).days
        if last.isoweekday() == 7:
            back += 1
        anchor = last - timedelta(days=back)
        return _anchored(bars, _index_after(bars, anchor, ending), calc)

    return Calculation(evaluate, fields=_ENDING, warm_up_length=n + calc.warm_up_length - 1)


@lookback("SESSION", "Expression over the bars within the regular session hours")
def session(opts: SessionOptions, calc: Calculation) -> Calculation:
    n = math.ceil(day_length(opts))
    hours = opts.filter_hours()
    zone = get_zone(opts.security_tz)
    ending = _ending_reader(opts)

    def evaluate(bars: Bars) -> Any:
        if not bars or hours.is_24h:
            return calc(bars)
        return calc(
            [bar for bar in bars if hours.contains(seconds_of_day(ending(bar).astimezone(zone)))]
        )

    return Calculation(evaluate, fields=_ENDING, warm_up_length=n + calc.warm_up_length - 1)


@lookback("TOD", "Expression over the bars at the same time of day")
def tod(opts: SessionOptions, calc: Calculation) -> Calculation:
    length = day_length(opts)
    step = max(math.ceil(length), 1)
    zone = get_zone(opts.tz)
    ending = _ending_reader(opts)

    def evaluate(bars: Bars) -> Any:
        if not bars:
            return calc(bars)

        def local(i: int) -> datetime:
            return ending(bars[i]).astimezone(zone)

        target = local(len(bars) - 1).timetz().replace(tzinfo=None)
        picked = [len(bars) - 1]
        i = len(bars) - 1
        while len(picked) < calc.warm_up_length + 1:
            j = i - step
            if j < 0 or local(j).time() != target or local(j).date() >= local(i).date():
                # Misaligned by a missing bar or a short session: search back.
                j = i - 1
                while j >= 0 and local(j).time() != target:
                    j -= 1
                if j < 0:
                    break
            picked.append(j)
            i = j
        return calc([bars[k] for k in reversed(picked)])

    return Calculation(
        evaluate,
        fields=_ENDING,
        warm_up_length=math.ceil((calc.warm_up_length + 1) * length),
    )


__all__ = ["FUNCTIONS", "as_positive_integer", "get_values"]
