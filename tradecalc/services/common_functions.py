"""Bar-local functions: arithmetic, logic, text and calendar helpers.

Every factory receives the session options followed by the compiled
argument calculations and returns a function of the bars. Missing operands
produce ``None`` rather than an error.
"""

from __future__ import annotations

import math
import operator
import random
import re
from datetime import UTC, date, datetime, timedelta
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from tradecalc.core.errors import CalendarError, ExpressionError, LiteralArgumentError
from tradecalc.core.market_hours import SessionOptions
from tradecalc.core.time_utils import get_zone, parse_timestamp, utc_now
from tradecalc.services.calculation import Bars, Calculation
from tradecalc.services.function_registry import FunctionKind, FunctionSpec, registrar

FUNCTIONS: Dict[str, FunctionSpec] = {}

common = registrar(FUNCTIONS, FunctionKind.COMMON)

Evaluator = Callable[[Bars], Any]

_LEADING_NUMBER = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


def precision(number: Any) -> Any:
    """Round floats to 10 decimals; non-finite results become None."""

    if isinstance(number, bool) or not isinstance(number, float):
        return number
    if not math.isfinite(number):
        return None
    return round(number, 10)


def _round_half_up(number: float) -> float:
    return math.floor(number + 0.5)


def _arith(op: Callable[[Any, Any], Any], x: Any, y: Any) -> Any:
    if x is None or y is None:
        return None
    try:
        return precision(op(x, y))
    except (ArithmeticError, TypeError, ValueError):
        return None


def _compare(op: Callable[[Any, Any], bool], x: Any, y: Any) -> int:
    try:
        return 1 if op(x, y) else 0
    except TypeError:
        return 0


def _to_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# -----------------------------------------------------------------------------
# Dates
# -----------------------------------------------------------------------------


def _zone(opts: SessionOptions, tz: Optional[Calculation], bars: Bars) -> ZoneInfo:
    return get_zone(tz(bars) if tz is not None else opts.tz)


def _moment(value: Any, zone: ZoneInfo) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return parse_timestamp(value, zone).astimezone(zone)
    except CalendarError:
        return None


def _format(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


def _whole_days(later: datetime, earlier: datetime) -> int:
    # Wall-clock difference, truncated toward zero.
    delta = later.replace(tzinfo=None) - earlier.replace(tzinfo=None)
    return math.trunc(delta / timedelta(days=1))


def _fixed_time(opts: SessionOptions, value: Optional[str], tz: Optional[Calculation]) -> Evaluator:
    default_zone = get_zone(opts.tz)
    when = parse_timestamp(value, default_zone) if value else utc_now()
    fixed = _format(when.astimezone(default_zone))

    def evaluate(bars: Bars) -> Any:
        if tz is None:
            return fixed
        zone = tz(bars)
        if not zone or zone == opts.tz:
            return fixed
        return _format(when.astimezone(get_zone(zone)))

    return evaluate


@common("NOW", "The local date and time at the point the function was executed", side_effect=True)
def now(opts: SessionOptions, tz: Optional[Calculation] = None) -> Evaluator:
    return _fixed_time(opts, opts.now, tz)


@common("BEGIN", "The local date and time collecting began", side_effect=True)
def begin(opts: SessionOptions, tz: Optional[Calculation] = None) -> Evaluator:
    return _fixed_time(opts, opts.begin, tz)


@common("END", "The local date and time collecting will end", side_effect=True)
def end(opts: SessionOptions, tz: Optional[Calculation] = None) -> Evaluator:
    return _fixed_time(opts, opts.end or opts.now, tz)


@common("WORKDAY", "The date before or after a specified number of workdays (Mon-Fri)")
def workday(
    opts: SessionOptions, ending: Calculation, days: Calculation, tz: Optional[Calculation] = None
) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        start = _moment(ending(bars), _zone(opts, tz, bars))
        count = days(bars)
        if start is None or count is None:
            return None
        d = min(start.isoweekday() - 1, 4) + int(count)
        weeks = d // 5
        weekday = d - weeks * 5 + 1
        shift = timedelta(weeks=weeks, days=weekday - start.isoweekday())
        return _format(start + shift)

    return evaluate


@common("DATEVALUE", "The number of days since 1899-12-31")
def datevalue(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        start = _moment(ending(bars), _zone(opts, tz, bars))
        if start is None:
            return None
        return _whole_days(start, datetime(1899, 12, 31))

    return evaluate


def _hour_of_day(start: datetime) -> float:
    # Measured from noon so that DST shifts overnight do not skew the result.
    noon = start.replace(hour=12, minute=0, second=0, microsecond=0)
    return (start.timestamp() - noon.timestamp()) / 3600 + 12


@common("TIMEVALUE", "The fraction of the day elapsed")
def timevalue(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        start = _moment(ending(bars), _zone(opts, tz, bars))
        if start is None:
            return None
        return _hour_of_day(start) / 24

    return evaluate


@common("HOUR", "Hour of day (0-23.999999722)")
def hour(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        start = _moment(ending(bars), _zone(opts, tz, bars))
        if start is None:
            return None
        return _hour_of_day(start)

    return evaluate


@common("DATETIME", "Simplified extended ISO format (ISO 8601) in UTC")
def datetime_(opts: SessionOptions, ending: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = _moment(ending(bars), get_zone(opts.tz))
        if value is None:
            return None
        return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    return evaluate


@common("DATE", "Y-MM-DD date format")
def date_(
    opts: SessionOptions,
    ending: Calculation,
    month: Optional[Calculation] = None,
    day: Optional[Calculation] = None,
    tz: Optional[Calculation] = None,
) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        if month is not None:
            parts = [ending(bars), month(bars), day(bars) if day is not None else 1]
            if any(p is None for p in parts):
                return None
            year, m, d = (int(p) for p in parts)
            # Out of range months and days roll over like a calendar would.
            year, m = year + (m - 1) // 12, (m - 1) % 12 + 1
            return (date(year, m, 1) + timedelta(days=d - 1)).isoformat()
        value = _moment(ending(bars), _zone(opts, tz, bars))
        if value is None:
            return None
        return value.strftime("%Y-%m-%d")

    return evaluate


@common("TIME", "HH:mm:ss time 24hr format")
def time_(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = _moment(ending(bars), _zone(opts, tz, bars))
        return None if value is None else value.strftime("%H:%M:%S")

    return evaluate


@common("DAY", "Date of Month as a number (1-31)")
def day_(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = _moment(ending(bars), _zone(opts, tz, bars))
        return None if value is None else value.day

    return evaluate


def _sunday_week(day: date) -> int:
    sunday = day - timedelta(days=day.isoweekday() % 7)
    jan1 = date((sunday + timedelta(days=6)).year, 1, 1)
    first = jan1 - timedelta(days=jan1.isoweekday() % 7)
    return (sunday - first).days // 7 + 1


@common("WEEKNUM", "Week of Year as a number (1-53), Sunday based unless mode is 2")
def weeknum(
    opts: SessionOptions,
    ending: Calculation,
    mode: Optional[Calculation] = None,
    tz: Optional[Calculation] = None,
) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = _moment(ending(bars), _zone(opts, tz, bars))
        if value is None:
            return None
        if mode is None or mode(bars) == 1:
            return _sunday_week(value.date())
        return value.isocalendar().week

    return evaluate


@common("WEEKDAY", "Day of week (Sun-Sat) as a number (1-7)")
def weekday(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = _moment(ending(bars), _zone(opts, tz, bars))
        return None if value is None else value.isoweekday() % 7 + 1

    return evaluate


@common("MONTH", "Month of Year as a number (1-12)")
def month_(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = _moment(ending(bars), _zone(opts, tz, bars))
        return None if value is None else value.month

    return evaluate


@common("YEAR", "Year as a number")
def year_(opts: SessionOptions, ending: Calculation, tz: Optional[Calculation] = None) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = _moment(ending(bars), _zone(opts, tz, bars))
        return None if value is None else value.year

    return evaluate


@common("DAYS", "Calculates the number of days between two dates")
def days_(
    opts: SessionOptions, to: Calculation, since: Calculation, tz: Optional[Calculation] = None
) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        zone = _zone(opts, tz, bars)
        a = _moment(to(bars), zone)
        b = _moment(since(bars), zone)
        if a is None or b is None:
            return None
        return _whole_days(a, b)

    return evaluate


def _iso_weeks_in_year(year: int) -> int:
    return date(year, 12, 28).isocalendar().week


@common("NETWORKDAYS", "Calculates the number of weekdays between two dates")
def networkdays(
    opts: SessionOptions, since: Calculation, to: Calculation, tz: Optional[Calculation] = None
) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        zone = _zone(opts, tz, bars)
        a = _moment(to(bars), zone)
        b = _moment(since(bars), zone)
        if a is None or b is None:
            return None
        swapped = a.timestamp() < b.timestamp()
        if swapped:
            a, b = b, a
        a_year, a_week, a_day = a.isocalendar()
        b_year, b_week, b_day = b.isocalendar()
        weeks = sum(_iso_weeks_in_year(y) for y in range(b_year, a_year))
        count = (weeks + a_week - b_week) * 5 + min(a_day + 1, 6) - min(b_day, 6)
        return -count if swapped else count

    return evaluate


# -----------------------------------------------------------------------------
# Text
# -----------------------------------------------------------------------------


@common("LEFT", "Returns the first character or characters of a text")
def left(opts: SessionOptions, text: Calculation, number: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = text(bars)
        if value is None:
            return None
        n = int(number(bars) or 0)
        return _to_text(value)[: max(n, 0)]

    return evaluate


@common("RIGHT", "Returns the last character or characters of a text")
def right(opts: SessionOptions, text: Calculation, number: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = text(bars)
        if value is None:
            return None
        s = _to_text(value)
        n = int(number(bars) or 0)
        return s[max(len(s) - n, 0) :]

    return evaluate


@common("REPLACE", "Replaces characters within a text string with a different text string")
def replace(
    opts: SessionOptions,
    text: Calculation,
    position: Calculation,
    length: Calculation,
    new_text: Optional[Calculation] = None,
) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = text(bars)
        if value is None:
            return None
        s = _to_text(value)
        p = int(position(bars) or 1)
        n = int(length(bars) or 0)
        replacement = (new_text(bars) if new_text is not None else "") or ""
        return s[: max(p - 1, 0)] + _to_text(replacement) + s[min(p - 1 + n, len(s)) :]

    return evaluate


@common("NUMBERVALUE", "Converts text to a number")
def numbervalue(opts: SessionOptions, text: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = text(bars)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return precision(float(value))
        match = _LEADING_NUMBER.match(str(value)) if value is not None else None
        return float(match.group(0)) if match else None

    return evaluate


# -----------------------------------------------------------------------------
# Numbers
# -----------------------------------------------------------------------------


def _unary(calc: Calculation, fn: Callable[[Any], Any]) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = calc(bars)
        if value is None:
            return None
        try:
            return precision(fn(value))
        except (ArithmeticError, TypeError, ValueError):
            return None

    return evaluate


@common("ABS", "Absolute value")
def abs_(opts: SessionOptions, expression: Calculation) -> Evaluator:
    return _unary(expression, abs)


def _with_significance(
    expression: Calculation, significance: Optional[Calculation], fn: Callable[[float], int]
) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = expression(bars)
        if value is None:
            return None
        if significance is None:
            return _arith(lambda v, _: fn(v), value, 1)
        return _arith(lambda v, s: fn(v / s) * s, value, significance(bars))

    return evaluate


@common("CEILING", "Rounds up to the nearest multiple of significance")
def ceiling(
    opts: SessionOptions, expression: Calculation, significance: Optional[Calculation] = None
) -> Evaluator:
    return _with_significance(expression, significance, math.ceil)


@common("FLOOR", "Rounds down to the nearest multiple of significance")
def floor(
    opts: SessionOptions, expression: Calculation, significance: Optional[Calculation] = None
) -> Evaluator:
    return _with_significance(expression, significance, math.floor)


def _literal_digits(count: Calculation, name: str) -> int:
    error = LiteralArgumentError(f"Expected a literal number of digits in {name}")
    if count.fields:
        raise error
    digits = count(())
    if isinstance(digits, bool) or not isinstance(digits, (int, float)) or round(digits) != digits:
        raise error
    return int(digits)


@common("ROUND", "Rounds to the given number of decimal places")
def round_(opts: SessionOptions, expression: Calculation, count: Optional[Calculation] = None) -> Evaluator:
    digits = _literal_digits(count, "ROUND") if count is not None else 0
    scale = 10**digits
    return _unary(expression, lambda v: _round_half_up(v * scale) / scale)


@common("TRUNC", "Truncates a number to an integer")
def trunc(opts: SessionOptions, expression: Calculation) -> Evaluator:
    return _unary(expression, math.trunc)


@common("RANDOM", "A random number between 0 and 1", side_effect=True)
def random_(opts: SessionOptions) -> Evaluator:
    return lambda bars: random.random()


def _extreme(numbers: tuple, pick: Callable[..., Any]) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        values = [v for v in (n(bars) for n in numbers) if v is not None]
        return pick(values) if values else None

    return evaluate


@common("MAX", "The largest of the values, ignoring missing ones")
def max_(opts: SessionOptions, *numbers: Calculation) -> Evaluator:
    return _extreme(numbers, max)


@common("MIN", "The smallest of the values, ignoring missing ones")
def min_(opts: SessionOptions, *numbers: Calculation) -> Evaluator:
    return _extreme(numbers, min)


@common("SIGN", "Returns 1 if the number is positive, -1 if negative and 0 if zero")
def sign(opts: SessionOptions, expression: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        value = expression(bars)
        if not isinstance(value, (int, float)):
            return None
        if value > 0:
            return 1
        if value < 0:
            return -1
        return value

    return evaluate


@common("NEGATIVE", "Negates a number")
def negative(opts: SessionOptions, number: Calculation) -> Evaluator:
    return _unary(number, operator.neg)


@common("ADD", "Addition")
def add(opts: SessionOptions, a: Calculation, b: Calculation) -> Evaluator:
    return lambda bars: _arith(operator.add, a(bars), b(bars))


@common("SUBTRACT", "Subtraction")
def subtract(opts: SessionOptions, a: Calculation, b: Calculation) -> Evaluator:
    return lambda bars: _arith(operator.sub, a(bars), b(bars))


@common("PRODUCT", "Multiplication")
def product(opts: SessionOptions, *numbers: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        result: Any = 1
        for number in numbers:
            result = _arith(operator.mul, result, number(bars))
        return result

    return evaluate


@common("DIVIDE", "Division")
def divide(opts: SessionOptions, n: Calculation, d: Calculation) -> Evaluator:
    return lambda bars: _arith(operator.truediv, n(bars), d(bars))


@common("MOD", "Remainder after division, with the sign of the dividend")
def mod(opts: SessionOptions, number: Calculation, divisor: Calculation) -> Evaluator:
    return lambda bars: _arith(math.fmod, number(bars), divisor(bars))


@common("CHANGE", "Percent change of target from reference, relative to denominator")
def change(
    opts: SessionOptions,
    target: Optional[Calculation] = None,
    reference: Optional[Calculation] = None,
    denominator: Optional[Calculation] = None,
) -> Evaluator:
    if target is None or reference is None:
        raise ExpressionError("CHANGE requires two or three arguments")
    den = denominator or reference

    def evaluate(bars: Bars) -> Any:
        numerator = _arith(operator.sub, target(bars), reference(bars))
        ratio = _arith(operator.truediv, _arith(operator.mul, numerator, 10000), den(bars))
        if ratio is None:
            return None
        return precision(_round_half_up(ratio) / 100)

    return evaluate


# -----------------------------------------------------------------------------
# Comparison and logic
# -----------------------------------------------------------------------------


@common("EQUALS", "1 when both values are equal, otherwise 0")
def equals(opts: SessionOptions, lhs: Calculation, rhs: Calculation) -> Evaluator:
    return lambda bars: 1 if lhs(bars) == rhs(bars) else 0


@common("NOT_EQUAL", "1 when the values differ, otherwise 0")
def not_equal(opts: SessionOptions, lhs: Calculation, rhs: Calculation) -> Evaluator:
    return lambda bars: 1 if lhs(bars) != rhs(bars) else 0


@common("NOT_GREATER_THAN", "Less than or equal to")
def not_greater_than(opts: SessionOptions, lhs: Calculation, rhs: Calculation) -> Evaluator:
    return lambda bars: _compare(operator.le, lhs(bars), rhs(bars))


@common("NOT_LESS_THAN", "Greater than or equal to")
def not_less_than(opts: SessionOptions, lhs: Calculation, rhs: Calculation) -> Evaluator:
    return lambda bars: _compare(operator.ge, lhs(bars), rhs(bars))


@common("LESS_THAN", "Less than")
def less_than(opts: SessionOptions, lhs: Calculation, rhs: Calculation) -> Evaluator:
    return lambda bars: _compare(operator.lt, lhs(bars), rhs(bars))


@common("GREATER_THAN", "Greater than")
def greater_than(opts: SessionOptions, lhs: Calculation, rhs: Calculation) -> Evaluator:
    return lambda bars: _compare(operator.gt, lhs(bars), rhs(bars))


@common("NOT", "1 when the value is falsy, otherwise 0")
def not_(opts: SessionOptions, num: Calculation) -> Evaluator:
    return lambda bars: 0 if num(bars) else 1


@common("AND", "The first falsy condition, or the last condition")
def and_(opts: SessionOptions, *conditions: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        result: Any = 1
        for condition in conditions:
            if not result:
                break
            result = condition(bars)
        return result

    return evaluate


@common("OR", "The first truthy condition, or the last condition")
def or_(opts: SessionOptions, *conditions: Calculation) -> Evaluator:
    def evaluate(bars: Bars) -> Any:
        result: Any = None
        for condition in conditions:
            if result:
                break
            result = condition(bars)
        return result

    return evaluate


@common("XOR", "1 when an odd number of conditions are truthy")
def xor(opts: SessionOptions, *conditions: Calculation) -> Evaluator:
    return lambda bars: sum(1 for c in conditions if c(bars)) % 2


@common("TRUE", "Always 1")
def true_(opts: SessionOptions) -> Evaluator:
    return lambda bars: 1


@common("FALSE", "Always 0")
def false_(opts: SessionOptions) -> Evaluator:
    return lambda bars: 0


@common("NULL", "Always missing")
def null_(opts: SessionOptions) -> Evaluator:
    return lambda bars: None


@common("IF", "Value of the first true condition, else the trailing value")
def if_(opts: SessionOptions, *args: Calculation) -> Evaluator:
    conditions = list(args[0::2])
    values = list(args[1::2])
    otherwise = conditions.pop() if len(conditions) > len(values) else None

    def evaluate(bars: Bars) -> Any:
        for condition, value in zip(conditions, values):
            if condition(bars):
                return value(bars)
        return otherwise(bars) if otherwise is not None else None

    return evaluate


__all__ = ["FUNCTIONS", "precision"]
