from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

from tradecalc.core.errors import ExpressionError

Bars = Sequence[Any]


@dataclass(frozen=True)
class Calculation:
    """A compiled expression: a function of bars plus its requirements.

    ``fields`` are the bar fields read by the expression, ``warm_up_length``
    is how many bars before the last one are needed for a stable result,
    and ``side_effect`` marks results that depend on more than the bars.
    """

    evaluate: Callable[[Bars], Any]
    fields: Tuple[str, ...] = ()
    warm_up_length: int = 0
    side_effect: bool = False

    def __call__(self, bars: Bars = ()) -> Any:
        return self.evaluate(bars)


def union_fields(calcs: Iterable[Calculation], *extra: Iterable[str]) -> Tuple[str, ...]:
    seen: dict[str, None] = {}
    for calc in calcs:
        for name in calc.fields:
            seen.setdefault(name, None)
    for names in extra:
        for name in names:
            seen.setdefault(name, None)
    return tuple(seen)


def max_warm_up(calcs: Iterable[Calculation], *extra: int) -> int:
    return max([0, *extra, *(c.warm_up_length for c in calcs)])


def get_value(record: Any, key: str) -> Any:
    """Read ``key`` from a mapping bar or an object bar."""

    if record is None:
        return None
    if isinstance(record, Mapping):
        return record.get(key)
    return getattr(record, key, None)


def constant(number: Any) -> Calculation:
    if isinstance(number, bool) or not isinstance(number, (int, float)) or not math.isfinite(number):
        raise ExpressionError(f"Must be a number: {number}")
    return Calculation(lambda bars: number)


_OTHER_WHITESPACE = re.compile(r"[^\S ]")


def text(encoded: str) -> Calculation:
    """Constant text from its JSON-encoded form."""

    if not isinstance(encoded, str) or _OTHER_WHITESPACE.search(encoded):
        raise ExpressionError(f"Must be a single line string: {encoded}")
    value = json.loads(encoded)
    return Calculation(lambda bars: value)


def field(interval: Optional[str], name: str) -> Calculation:
    """Value of ``name`` on the last bar, under ``interval`` when given."""

    if not isinstance(name, str) or re.search(r"\s", name):
        raise ExpressionError(f"Must be a field: {name}")

    def evaluate(bars: Bars) -> Any:
        if not bars:
            return None
        last = bars[-1]
        if interval:
            last = get_value(last, interval)
        return get_value(last, name)

    return Calculation(evaluate, fields=(name,))


__all__ = [
    "Bars",
    "Calculation",
    "union_fields",
    "max_warm_up",
    "get_value",
    "constant",
    "text",
    "field",
]
