from __future__ import annotations

import logging
from typing import Any, Dict, List

import pytest

from tradecalc.core.errors import (
    ExpressionError,
    ExpressionSyntaxError,
    IntervalConflictError,
    UnknownFieldError,
    UnknownFunctionError,
)
from tradecalc.services.expression_dsl import parse_expression
from tradecalc.services.expressions import (
    create_calculation,
    merge_maps,
    parse,
    parse_columns_map,
    parse_criteria_map,
    parse_warm_up_map,
)

FIELDS = {"day": ["close", "ending"], "week": ["close"], "m60": ["close"]}


def _day_bars(closes: List[float]) -> List[Dict[str, Any]]:
    return [{"day": {"close": c}} for c in closes]


def test_arithmetic_follows_operator_precedence() -> None:
    assert parse("1 + 1", FIELDS)() == 2
    assert parse("2 - 1 - 1", FIELDS)() == 0
    assert parse("-4.2 * (2 + 3.5)", FIELDS)() == pytest.approx(-23.1)
    assert parse("5 × 5 / (2 + 3) / 5", FIELDS)() == 1
    assert parse("6 % 5", FIELDS)() == 1
    assert parse("5 × -(2 + 3)", FIELDS)() == -25
    assert parse("1 + 2 * 3", FIELDS)() == 7


def test_comparison_and_logic() -> None:
    assert parse("2 = 2", FIELDS)() == 1
    assert parse("!(2 = 2)", FIELDS)() == 0
    assert parse("2 <> 2", FIELDS)() == 0
    assert parse("1 and 1 and 0", FIELDS)() == 0
    assert parse("1 or 1 or 0", FIELDS)() == 1
    assert parse("XOR(1, 1, 0)", FIELDS)() == 0
    assert parse("SIGN(-5)", FIELDS)() == -1


def test_field_reads_the_last_bar() -> None:
    calc = parse("day.close * 2", FIELDS)
    assert calc.fields == ("close",)
    assert calc.warm_up_length == 0
    assert calc(_day_bars([1, 2, 3])) == 6
    assert calc([]) is None


def test_missing_values_propagate() -> None:
    assert parse("day.close + 1", FIELDS)([{"day": {}}]) is None
    assert parse("day.close > 1", FIELDS)([{"day": {}}]) == 0


def test_bare_fields_use_the_unqualified_catalog() -> None:
    calc = parse("close - open", {"": ["open", "close"]})
    assert calc([{"open": 3, "close": 5}]) == 2


def test_unknown_function_suggests_alternatives() -> None:
    with pytest.raises(UnknownFunctionError) as exc:
        parse("FOOBAR(1, close)", {"day": ["close"]})
    assert "Unknown function" in str(exc.value)
    assert "FOOBAR" in str(exc.value)


def test_unknown_field_and_interval() -> None:
    with pytest.raises(UnknownFieldError) as exc:
        parse("day.volume", FIELDS)
    assert "Unknown field: day.volume should be one of: close, ending" in str(exc.value)

    with pytest.raises(UnknownFieldError) as exc:
        parse("month.close", FIELDS)
    assert "Unknown interval: month" in str(exc.value)


def test_errors_name_the_expression() -> None:
    with pytest.raises(UnknownFieldError) as exc:
        parse("day.close + day.volume", FIELDS)
    assert str(exc.value).endswith(" in ADD(day.close,day.volume)")


def test_lookback_over_two_intervals_is_rejected() -> None:
    with pytest.raises(IntervalConflictError) as exc:
        parse("SMA(20, day.close + week.close)", FIELDS)
    assert "day and week" in str(exc.value)


def test_lookback_needs_an_interval() -> None:
    with pytest.raises(IntervalConflictError):
        parse("SMA(20, close)", {"": ["close"]})
    calc = parse("SMA(2, close)", {"": ["close"]}, {"interval": "day"})
    assert calc([{"close": 1}, {"close": 3}]) == 2


def test_wrong_number_of_arguments() -> None:
    with pytest.raises(ExpressionError) as exc:
        parse("ADD(1)", FIELDS)
    assert "Wrong number of arguments to ADD" in str(exc.value)


def test_empty_input_and_multiple_expressions() -> None:
    with pytest.raises(ExpressionSyntaxError):
        parse("", FIELDS)
    with pytest.raises(ExpressionSyntaxError):
        parse("1, 2", FIELDS)


def test_empty_field_catalog_is_rejected() -> None:
    with pytest.raises(ExpressionError):
        parse("1", {})


def test_precomputed_sub_expressions_are_read_as_fields() -> None:
    calc = parse("SMA(20, day.close) > day.close", {"day": ["close", "SMA(20,day.close)"]})
    assert calc.warm_up_length == 0
    assert calc([{"day": {"close": 10, "SMA(20,day.close)": 11}}]) == 1


def test_precomputed_lookup_ignores_float_spelling() -> None:
    calc = parse("SMA(20.0, day.close)", {"day": ["close", "SMA(20,day.close)"]})
    assert calc.warm_up_length == 0
    assert calc([{"day": {"close": 10, "SMA(20,day.close)": 11}}]) == 11


def test_side_effects_propagate() -> None:
    assert parse("RANDOM() + 1", FIELDS).side_effect
    assert not parse("day.close + 1", FIELDS).side_effect


def test_create_calculation_from_a_node() -> None:
    calc = create_calculation(parse_expression("SMA(2, day.close)"), FIELDS, {"interval": "day"})
    assert calc.warm_up_length == 1
    assert calc(_day_bars([1, 2, 4])) == 3


def test_columns_map_names() -> None:
    columns = parse_columns_map("day.close, SMA(2, day.close) AS avg, day.close * 2", FIELDS)
    assert list(columns) == ["close", "avg", "PRODUCT(day.close,2)"]
    bars = _day_bars([1, 3])
    assert columns["avg"](bars) == 2
    assert columns["PRODUCT(day.close,2)"](bars) == 6


def test_columns_map_keeps_prefix_with_several_intervals() -> None:
    columns = parse_columns_map("day.close, week.close", FIELDS)
    assert list(columns) == ["day.close", "week.close"]


def test_criteria_map_groups_by_interval() -> None:
    criteria = parse_criteria_map("day.close > 10 AND m60.close > 5", FIELDS)
    assert list(criteria) == ["m60", "day"]
    bar = {"m60": {"close": 6}, "day": {"close": 11}}
    assert criteria["m60"]([bar])
    assert criteria["day"]([bar])
    low = {"m60": {"close": 6}, "day": {"close": 9}}
    # The shorter interval also carries the longer interval's criteria.
    assert not criteria["m60"]([low])
    assert not criteria["day"]([low])


def test_criteria_map_of_nothing() -> None:
    assert parse_criteria_map("", FIELDS) == {}
    assert parse_criteria_map(None, FIELDS) == {}


def test_warm_up_map_collects_nested_lookbacks() -> None:
    warm_up = parse_warm_up_map(
        "SMA(20, day.close) > SMA(10, SMA(5, day.close)), m60.close", FIELDS
    )
    assert list(warm_up) == ["m60", "day"]
    assert warm_up["m60"] == {}
    assert sorted(warm_up["day"]) == [
        "SMA(10,SMA(5,day.close))",
        "SMA(20,day.close)",
        "SMA(5,day.close)",
    ]
    assert warm_up["day"]["SMA(20,day.close)"].warm_up_length == 19
    assert warm_up["day"]["SMA(5,day.close)"].warm_up_length == 4
    assert warm_up["day"]["SMA(10,SMA(5,day.close))"].warm_up_length == 13


def test_merge_maps_does_not_mutate() -> None:
    a = {"day": ["close"], "week": {"x": 1}}
    b = {"day": ["open", "close"], "week": {"y": 2}, "m1": ["high"]}
    merged = merge_maps(a, b)
    assert merged == {"day": ["close", "open"], "week": {"x": 1, "y": 2}, "m1": ["high"]}
    assert a == {"day": ["close"], "week": {"x": 1}}


def test_compiled_expressions_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="tradecalc.services.expressions")
    parse("SMA(3, day.close)", FIELDS)
    records = [r for r in caplog.records if r.getMessage() == "expression_compiled"]
    assert records
    payload = records[-1].extra  # type: ignore[attr-defined]
    assert payload["interval"] == "day"
    assert payload["warm_up_length"] == 2
