"""Per-interval indicators, called as ``interval.NAME(literal, ...)``.

Factories take only literal parameters. The returned calculation receives
the trailing window already narrowed to the interval's own records, and
prices are adjusted to the last record when ``adj_close`` is present.
"""

from __future__ import annotations

import bisect
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from tradecalc.core.errors import LiteralArgumentError
from tradecalc.services.calculation import Calculation, get_value
from tradecalc.services.function_registry import FunctionKind, FunctionSpec, registrar

FUNCTIONS: Dict[str, FunctionSpec] = {}

indicator = registrar(FUNCTIONS, FunctionKind.INDICATOR)

_PRICES = ("open", "high", "low", "close")


def _positive_integer(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0 or round(value) != value:
        raise LiteralArgumentError(f"Expected a literal positive integer in {name} not {value}")
    return int(value)


def _positive_number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise LiteralArgumentError(f"Must be a positive number: {value}")
    return value


def _decimal(value: float) -> float:
    return round(value * 100000) / 100000


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def adjust(bars: Sequence[Any]) -> List[Dict[str, Any]]:
    """Scale open/high/low/close of every bar to the last bar's basis.

    Bars without an ``adj_close`` (or with a zero close) are left as they are.
    """

    records = [_as_dict(bar) for bar in bars]
    if not records:
        return records
    last = records[-1]
    if not _is_number(last.get("adj_close")) or not last["adj_close"] or not _is_number(last.get("close")):
        return records
    norm = last["close"] / last["adj_close"]
    adjusted: List[Dict[str, Any]] = []
    for bar in records:
        if not _is_number(bar.get("adj_close")) or not _is_number(bar.get("close")) or not bar["close"]:
            adjusted.append(bar)
            continue
        scale = bar["adj_close"] / bar["close"] * norm
        if abs(scale - 1) < 0.0000001:
            adjusted.append(bar)
            continue
        scaled = dict(bar)
        for key in _PRICES:
            if _is_number(bar.get(key)):
                scaled[key] = _decimal(bar[key] * scale)
        adjusted.append(scaled)
    return adjusted


def _as_dict(bar: Any) -> Dict[str, Any]:
    if isinstance(bar, dict):
        return bar
    return {key: get_value(bar, key) for key in (*_PRICES, "volume", "adj_close", "ending")}


def _records(bars: Sequence[Any], keys: Sequence[str]) -> List[Dict[str, Any]]:
    """Adjusted records of the bars that hold a number for every key."""

    complete = [record for record in map(_as_dict, bars) if all(_is_number(record.get(k)) for k in keys)]
    return adjust(complete)


# -----------------------------------------------------------------------------
# Trend
# -----------------------------------------------------------------------------


@indicator("OBV", "Weighted on balance volume")
def obv(n: Any) -> Calculation:
    size = _positive_integer(n, "OBV")

    def evaluate(bars: Sequence[Any]) -> Any:
        data = _records(bars, ("close",))
        if len(data) < 2:
            return None
        numerator = 0.0
        for i in range(1, len(data)):
            bar, prior = data[i], data[i - 1]
            weight = (i + 1) * (bar.get("volume") or 1)
            if bar["close"] > prior["close"]:
                numerator += weight
            elif bar["close"] < prior["close"]:
                numerator -= weight
        return numerator / (len(data) * (len(data) - 1)) * 2

    return Calculation(evaluate, fields=("close", "volume"), warm_up_length=size * 10)


@indicator("ATR", "Average true range with Wilder smoothing")
def atr(n: Any) -> Calculation:
    size = _positive_integer(n, "ATR")

    def evaluate(bars: Sequence[Any]) -> Any:
        data = _records(bars, ("high", "low", "close"))
        if not data:
            return None
        ranges: List[float] = []
        for i, bar in enumerate(data):
            if i == 0:
                ranges.append(bar["high"] - bar["low"])
                continue
            previous = data[i - 1]["close"]
            ranges.append(
                max(bar["high"] - bar["low"], abs(bar["high"] - previous), abs(bar["low"] - previous))
            )
        first = ranges[:size]
        result = sum(first) / len(first)
        for value in ranges[size:]:
            result = (result * (size - 1) + value) / size
        return result

    return Calculation(evaluate, fields=("high", "low", "close"), warm_up_length=size + 250)


# -----------------------------------------------------------------------------
# Parabolic stop and reverse
#
# Each step maps (rising, stop, extreme, factor) for one bar. The buy and
# sell variants never change direction; they restart their stop instead.
# -----------------------------------------------------------------------------

_State = Tuple[bool, float, float, float]


def _rising(bar: Dict[str, Any], state: _State, factor: float, limit: float, flip: bool) -> _State:
    _, stop, ep, af = state
    a = af if bar["high"] <= ep else min(af + factor, limit)
    ep = max(ep, bar["high"])
    stop = stop + a * (ep - stop)
    if bar["low"] >= stop:
        return True, stop, ep, a
    if flip:
        return False, ep - factor * (ep - bar["low"]), bar["low"], factor
    return True, bar["low"] + factor * (bar["high"] - bar["low"]), bar["high"], factor


def _falling(bar: Dict[str, Any], state: _State, factor: float, limit: float, flip: bool) -> _State:
    _, stop, ep, af = state
    a = af if bar["low"] >= ep else min(af + factor, limit)
    ep = min(bar["low"], ep)
    stop = stop - a * (stop - ep)
    if bar["high"] <= stop:
        return False, stop, ep, a
    if flip:
        return True, ep + factor * (bar["high"] - ep), bar["high"], factor
    return False, bar["high"] - factor * (bar["high"] - bar["low"]), bar["low"], factor


def _sar(factor: Any, limit: Any, n: Any, name: str, rising: Optional[bool]) -> Calculation:
    factor = _positive_number(factor)
    limit = _positive_number(limit)
    size = _positive_integer(n, name)
    flip = rising is None

    def evaluate(bars: Sequence[Any]) -> Any:
        data = _records(bars, ("high", "low"))
        if not data:
            return None
        first = data[0]
        if rising:
            state: _State = (True, first["low"], first["high"], factor)
        else:
            state = (False, first["high"], first["low"], factor)
        for bar in data:
            step = _rising if state[0] else _falling
            state = step(bar, state, factor, limit, flip)
        return state[1]

    return Calculation(evaluate, fields=("high", "low"), warm_up_length=size - 1)


@indicator("PSAR", "Parabolic stop and reverse")
def psar(factor: Any, limit: Any, n: Any) -> Calculation:
    return _sar(factor, limit, n, "PSAR", None)


@indicator("SAB", "Stop and buy: a falling parabolic stop that never reverses")
def sab(factor: Any, limit: Any, n: Any) -> Calculation:
    return _sar(factor, limit, n, "SAB", False)


@indicator("SAS", "Stop and sell: a rising parabolic stop that never reverses")
def sas(factor: Any, limit: Any, n: Any) -> Calculation:
    return _sar(factor, limit, n, "SAS", True)


# -----------------------------------------------------------------------------
# Volume profile
# -----------------------------------------------------------------------------


def price_levels(bars: Sequence[Dict[str, Any]]) -> List[float]:
    """Distinct positive prices traded, ascending, without outliers."""

    levels = sorted(
        {bar.get(key) for bar in bars for key in ("high", "low", "open", "close") if (bar.get(key) or 0) > 0}
    )
    if not levels:
        return levels
    median = levels[len(levels) // 2]
    while levels and levels[-1] > median * 100:
        levels.pop()
    return levels


def _reduce_price_volume(
    bars: Sequence[Dict[str, Any]],
    prices: List[float],
    fn: Callable[[Any, float, float], Any],
    memo: Any,
) -> Any:
    for bar in bars:
        oc = sorted([bar.get("open") or bar["close"], bar["close"]])
        low = bar.get("low") or oc[0]
        high = bar.get("high") or oc[1]
        lo = bisect.bisect_left(prices, low)
        hi = bisect.bisect_left(prices, high)
        span = 1 if lo == hi else high - low + oc[1] - oc[0]
        unit = (bar.get("volume") or 1) / span
        levels = prices[lo : hi + 1]
        for i, price in enumerate(levels):
            # Prices between open and close are counted twice.
            count = 2 if oc[0] < price <= oc[1] else 1
            if i == 0:
                weight = 0.0 if price < high else 1.0
            else:
                weight = (price - levels[i - 1]) * count * unit
            memo = fn(memo, price, weight)
    return memo


def price_volume(bars: Sequence[Dict[str, Any]], prices: List[float]) -> List[float]:
    def accumulate(volume: List[float], price: float, weight: float) -> List[float]:
        volume[bisect.bisect_left(prices, price)] += weight
        return volume

    return _reduce_price_volume(bars, prices, accumulate, [0.0] * len(prices))


@indicator("POPV", "Price at the given percent of traded volume")
def popv(n: Any, p: Any) -> Calculation:
    size = _positive_integer(n, "POPV")

    def evaluate(bars: Sequence[Any]) -> Any:
        data = _records(bars, ("close",))
        prices = price_levels(data)
        if not prices:
            return None
        if p <= 0:
            return prices[0]
        if not p < 100:
            return prices[-1]
        volume = price_volume(data, prices)
        target = p * sum(volume) / 100
        below = 0.0
        i = 0
        while i < len(volume) - 1 and below + volume[i] < target:
            below += volume[i]
            i += 1
        return prices[i - 1 if i > 0 and target - below < volume[i] / 2 else i]

    return Calculation(
        evaluate, fields=("open", "high", "low", "close", "volume"), warm_up_length=size - 1
    )


@indicator("POVO", "Percent of traded volume below the close")
def povo(n: Any) -> Calculation:
    size = _positive_integer(n, "POVO")

    def evaluate(bars: Sequence[Any]) -> Any:
        data = _records(bars, ("close",))
        if not data:
            return None
        target = data[-1]["close"]
        prices = price_levels(data)
        if not prices:
            return None
        if target <= prices[0]:
            return 0
        if target >= prices[-1]:
            return 100
        volume = price_volume(data, prices)
        total = sum(volume)
        if not total:
            return None
        below = volume[: bisect.bisect_left(prices, target) + 1]
        return sum(below) * 100 / total

    return Calculation(
        evaluate, fields=("open", "high", "low", "close", "volume"), warm_up_length=size - 1
    )


@indicator("ROF", "Rotation factor: count of rising minus falling highs and lows")
def rof(n: Any) -> Calculation:
    size = _positive_integer(n, "ROF")

    def evaluate(bars: Sequence[Any]) -> Any:
        data = _records(bars, ("high", "low"))
        factor = 0
        for key in ("high", "low"):
            for prior, bar in zip(data, data[1:]):
                factor += 1 if prior[key] < bar[key] else -1
        return factor

    return Calculation(evaluate, fields=("high", "low"), warm_up_length=size - 1)


__all__ = ["FUNCTIONS", "adjust", "price_levels", "price_volume"]
