from __future__ import annotations

from typing import Dict

import pytest

from tradecalc.services.expressions import get_registry
from tradecalc.services.function_registry import FunctionKind, FunctionRegistry, FunctionSpec, registrar


def test_resolution_order_and_qualified_indicators() -> None:
    registry = get_registry()
    assert registry.get("ADD").kind is FunctionKind.COMMON  # type: ignore[union-attr]
    assert registry.get("SMA").kind is FunctionKind.LOOKBACK  # type: ignore[union-attr]
    assert registry.get("day.ATR").kind is FunctionKind.INDICATOR  # type: ignore[union-attr]
    assert registry.get("ATR") is None
    assert registry.get(".ATR") is None
    assert registry.get("NOPE") is None


def test_names_include_each_interval_indicator() -> None:
    names = get_registry().names(["day", "m60"])
    assert "day.ATR" in names
    assert "m60.PSAR" in names
    assert "SMA" in names
    assert names == sorted(names)


def test_similar_names_surround_the_missing_one() -> None:
    similar = get_registry().similar("SMB", ["day"])
    assert "SMA" in similar
    assert len(similar) <= 10


def test_describe_reports_arguments_and_side_effects() -> None:
    registry = get_registry()
    sma = registry.describe("SMA")
    assert sma["kind"] == "lookback"
    assert sma["args"] == "num, calc"
    assert sma["description"] == "Simple moving average"
    assert registry.describe("RANDOM")["side_effect"] is True
    assert registry.describe("MAX")["args"] == "numbers..."
    assert registry.describe("day.PSAR")["args"] == "factor, limit, n"
    with pytest.raises(KeyError):
        registry.describe("NOPE")


def test_registrar_builds_specs_and_rejects_duplicates() -> None:
    table: Dict[str, FunctionSpec] = {}
    register = registrar(table, FunctionKind.COMMON)

    @register("TWICE")
    def twice(opts, x):  # type: ignore[no-untyped-def]
        """Double the value."""
        return lambda bars: x(bars) * 2

    spec = table["TWICE"]
    assert spec.args == "x"
    assert spec.description == "Double the value."
    with pytest.raises(ValueError):
        register("TWICE")(twice)

    registry = FunctionRegistry().register_all(table.values())
    assert registry.get("TWICE") is spec
    with pytest.raises(ValueError):
        registry.register(spec)
