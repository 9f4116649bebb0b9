from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence

from tradecalc.core.errors import (
    ExpressionError,
    ExpressionSyntaxError,
    IntervalConflictError,
    LiteralArgumentError,
    MissingFieldsError,
    TradeCalcError,
    UnknownFieldError,
    UnknownFunctionError,
)
from tradecalc.core.intervals import unique_sorted
from tradecalc.core.logging import log_event
from tradecalc.core.market_hours import SessionOptions, resolve_options
from tradecalc.services import common_functions, indicator_functions, lookback_functions
from tradecalc.services.calculation import (
    Bars,
    Calculation,
    constant,
    field,
    get_value,
    max_warm_up,
    text,
    union_fields,
)
from tradecalc.services.expression_ast import (
    AsNode,
    CallNode,
    FieldNode,
    Node,
    NumberNode,
    StringNode,
    get_intervals,
    serialize,
    unwrap,
)
from tradecalc.services.expression_dsl import (
    parse_and_expressions,
    parse_as_expression_list,
    parse_expression_list,
)
from tradecalc.services.function_registry import FunctionKind, FunctionRegistry, FunctionSpec

logger = logging.getLogger(__name__)

FieldCatalog = Mapping[str, Sequence[str]]

_QUALIFIED_FIELD = re.compile(r"^(\w+)\.(\w+.*)")


@lru_cache
def get_registry() -> FunctionRegistry:
    """Process-wide registry of the built-in function libraries."""

    return FunctionRegistry().register_all(
        [
            *common_functions.FUNCTIONS.values(),
            *lookback_functions.FUNCTIONS.values(),
            *indicator_functions.FUNCTIONS.values(),
        ]
    )


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def parse(expr: str, fields: FieldCatalog, options: Any = None) -> Calculation:
    """Compile a single expression.

    ``options.interval`` is set to the shortest interval the expression
    references, when it references any.
    """

    if not isinstance(expr, str) or not expr.strip():
        raise ExpressionSyntaxError(f"No input: {expr!r}")
    nodes = parse_expression_list(expr)
    if len(nodes) > 1:
        raise ExpressionSyntaxError(f"Did not expect multiple expressions: {expr}")
    intervals = _intervals_of(nodes)
    opts = resolve_options(options)
    if intervals:
        opts = opts.with_interval(intervals[0])
    calc = create_calculation(nodes[0], fields, opts)
    log_event(
        logger,
        logging.DEBUG,
        "expression_compiled",
        expression=expr,
        interval=opts.interval,
        fields=list(calc.fields),
        warm_up_length=calc.warm_up_length,
        side_effect=calc.side_effect,
    )
    return calc


def parse_criteria_map(exprs: Optional[str], fields: FieldCatalog, options: Any = None) -> Dict[str, Calculation]:
    """Split AND-joined criteria by their shortest interval.

    Each interval maps to one calculation that is truthy only when every
    criterion of that interval and of all longer intervals passes. Criteria
    without an interval join the shortest interval, or the ``""`` key when
    no criterion has an interval.
    """

    if not exprs:
        return {}
    nodes = parse_and_expressions(exprs)
    intervals = _intervals_of(nodes)
    opts = resolve_options(options)
    groups: Dict[str, List[Calculation]] = {}
    for node in nodes:
        own = get_intervals(node)
        key = own[0] if own else (intervals[0] if intervals else "")
        calc = create_calculation(node, fields, opts.with_interval(key or None))
        groups.setdefault(key, []).append(calc)

    criteria: Dict[str, List[Calculation]] = {}
    accumulated: List[Calculation] = []
    for interval in reversed(intervals or [""]):
        if interval not in groups:
            continue
        accumulated = groups[interval] + accumulated
        criteria[interval] = accumulated

    result = {
        interval: _every(calcs)
        for interval, calcs in sorted(criteria.items(), key=lambda item: (intervals or [""]).index(item[0]))
    }
    log_event(
        logger,
        logging.DEBUG,
        "criteria_compiled",
        expression=exprs,
        intervals=list(result),
        warm_up_lengths={k: v.warm_up_length for k, v in result.items()},
    )
    return result


def parse_columns_map(exprs: str, fields: FieldCatalog, options: Any = None) -> Dict[str, Calculation]:
    """Compile comma separated columns keyed by their output name.

    The name is the ``AS`` label when given, otherwise the canonical form of
    the expression with the interval prefix removed when only one interval
    is used.
    """

    if not isinstance(exprs, str) or not exprs.strip():
        raise ExpressionSyntaxError(f"No input: {exprs!r}")
    nodes = parse_as_expression_list(exprs)
    intervals = _intervals_of(nodes)
    opts = resolve_options(options)
    pattern: Optional[re.Pattern[str]] = None
    if intervals:
        opts = opts.with_interval(intervals[0])
    if len(intervals) == 1:
        pattern = re.compile("^" + re.escape(intervals[0]) + r"\.(\w+)$")
    columns: Dict[str, Calculation] = {}
    for node in nodes:
        if isinstance(node, AsNode):
            name = node.label
        else:
            name = serialize(node)
            if pattern is not None:
                name = pattern.sub(r"\1", name)
        columns[name] = create_calculation(unwrap(node), fields, opts)
    log_event(logger, logging.DEBUG, "columns_compiled", expression=exprs, columns=list(columns))
    return columns


def parse_warm_up_map(
    exprs: str, fields: FieldCatalog, options: Any = None
) -> Dict[str, Dict[str, Calculation]]:
    """Sub-expressions needing history, grouped by their single interval.

    Every interval referenced by ``exprs`` is a key even when none of its
    sub-expressions need warm up bars.
    """

    if not isinstance(exprs, str) or not exprs.strip():
        raise ExpressionSyntaxError(f"No input: {exprs!r}")
    nodes = parse_expression_list(exprs)
    opts = resolve_options(options)
    result: Dict[str, Any] = {interval: {} for interval in _intervals_of(nodes)}
    for node in nodes:
        result = merge_maps(result, create_warm_up_map(node, fields, opts))
    return result


def create_warm_up_map(node: Node, fields: FieldCatalog, options: Any = None) -> Dict[str, Dict[str, Calculation]]:
    opts = resolve_options(options)
    node = unwrap(node)
    found: Dict[str, Any] = {}
    if isinstance(node, CallNode):
        for arg in node.args:
            found = merge_maps(found, create_warm_up_map(arg, fields, opts))
    intervals = get_intervals(node)
    if len(intervals) != 1:
        return found
    interval_opts = opts.with_interval(intervals[0])
    # Sub-expressions already collected count as precomputed fields.
    known = merge_maps({k: list(v) for k, v in found.items()}, fields)
    if create_calculation(node, known, interval_opts).warm_up_length < 1:
        return found
    return merge_maps(found, {intervals[0]: {serialize(node): create_calculation(node, fields, interval_opts)}})


def merge_maps(a: Mapping[str, Any], b: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge without mutating: lists are unioned and mappings are updated."""

    merged: Dict[str, Any] = dict(a)
    for key, value in b.items():
        if key not in merged:
            merged[key] = value
        elif isinstance(merged[key], Mapping):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = list(dict.fromkeys([*merged[key], *value]))
    return merged


def create_calculation(node: Node, fields: FieldCatalog, options: Any = None) -> Calculation:
    """Compile an AST node against the field catalog."""

    _check_catalog(fields)
    opts = resolve_options(options)
    expr = unwrap(node)
    try:
        return _compile(expr, fields, opts)
    except ExpressionError as exc:
        annotated = exc.with_expression(serialize(expr))
        if annotated is exc:
            raise
        raise annotated from exc


# -----------------------------------------------------------------------------
# Compiler
# -----------------------------------------------------------------------------


def _intervals_of(nodes: Iterable[Node]) -> List[str]:
    found: List[str] = []
    for node in nodes:
        found.extend(get_intervals(node))
    return unique_sorted(found)


def _check_catalog(fields: Any) -> None:
    if not isinstance(fields, Mapping) or not fields:
        raise ExpressionError("A field catalog of interval to field names is required")
    for key, names in fields.items():
        if isinstance(names, (str, bytes)) or not isinstance(names, Sequence):
            raise ExpressionError(f"Fields of {key!r} must be a list of names")


def _compile(node: Node, fields: FieldCatalog, opts: SessionOptions) -> Calculation:
    if isinstance(node, NumberNode):
        return constant(node.value)
    if isinstance(node, StringNode):
        return text(node.value)
    if isinstance(node, FieldNode):
        return _compile_field(node.name, fields)
    if isinstance(node, CallNode):
        return _compile_call(node, fields, opts)
    raise ExpressionError(f"Unknown expression: {node!r}")


def _compile_field(name: str, fields: FieldCatalog) -> Calculation:
    match = _QUALIFIED_FIELD.match(name)
    interval = match.group(1) if match else ""
    field_name = match.group(2) if match else name
    if field_name in fields.get(interval, ()):
        return field(interval or None, field_name)
    if interval in fields:
        raise UnknownFieldError(f"Unknown field: {name} should be one of: {', '.join(fields[interval])}")
    raise UnknownFieldError(f"Unknown interval: {interval} should be one of: {', '.join(fields)}")


def _compile_call(node: CallNode, fields: FieldCatalog, opts: SessionOptions) -> Calculation:
    key = serialize(node)
    intervals = get_intervals(node)
    interval = intervals[0] if intervals else None
    if len(intervals) == 1 and interval in fields and key in fields[interval]:
        # Precomputed by the data source.
        return field(interval, key)
    if interval in fields:
        opts = opts.with_interval(interval)

    registry = get_registry()
    spec = registry.get(node.name)
    if spec is None:
        similar = registry.similar(node.name, [k for k in fields if k])
        raise UnknownFunctionError(f"Unknown function: {node.name}, but these might work: {','.join(similar)}")

    args = [_compile(arg, fields, opts) for arg in node.args]
    if spec.kind is FunctionKind.COMMON:
        return _build_common(spec, node.name, args, opts)
    if spec.kind is FunctionKind.LOOKBACK:
        return _build_lookback(spec, node.name, args, intervals, opts)
    return _build_indicator(spec, node.name, args, fields, opts)


def _invoke(spec: FunctionSpec, name: str, *args: Any) -> Any:
    try:
        inspect.signature(spec.factory).bind(*args)
    except TypeError as exc:
        raise ExpressionError(f"Wrong number of arguments to {name}({spec.args})") from exc
    return spec.factory(*args)


def _build_common(spec: FunctionSpec, name: str, args: List[Calculation], opts: SessionOptions) -> Calculation:
    evaluate = _invoke(spec, name, opts, *args)
    return Calculation(
        evaluate,
        fields=union_fields(args),
        warm_up_length=max_warm_up(args),
        side_effect=spec.side_effect or any(a.side_effect for a in args),
    )


def _build_lookback(
    spec: FunctionSpec,
    name: str,
    args: List[Calculation],
    intervals: List[str],
    opts: SessionOptions,
) -> Calculation:
    used = intervals or ([opts.interval] if opts.interval else [])
    if len(used) > 1:
        raise IntervalConflictError(
            f"The function {name} can only be used with a single interval, not {' and '.join(used)}"
        )
    if not used:
        raise IntervalConflictError(f"The function {name} must be used with fields")
    inner: Calculation = _invoke(spec, name, opts.with_interval(used[0]), *args)
    length = max_warm_up(args, inner.warm_up_length)
    n = length + 1

    def evaluate(bars: Bars) -> Any:
        if len(bars) <= n:
            return inner(bars)
        return inner(bars[len(bars) - n :])

    return Calculation(
        evaluate,
        fields=union_fields(args, inner.fields),
        warm_up_length=length,
        side_effect=spec.side_effect or inner.side_effect or any(a.side_effect for a in args),
    )


def _literal(calc: Calculation, name: str) -> Any:
    error = LiteralArgumentError(f"The function {name} can only be used with literal parameters (not fields)")
    if calc.fields:
        raise error
    try:
        return calc(())
    except (TradeCalcError, ArithmeticError, TypeError, ValueError) as exc:
        raise error from exc


def _build_indicator(
    spec: FunctionSpec,
    name: str,
    args: List[Calculation],
    fields: FieldCatalog,
    opts: SessionOptions,
) -> Calculation:
    interval = name[: name.index(".")]
    if opts.interval != interval:
        raise IntervalConflictError(
            f"The function {name} must be evaluated with the {interval} interval, not {opts.interval}"
        )
    values = [_literal(arg, name) for arg in args]
    calc: Calculation = _invoke(spec, name, *values)
    missing = [f for f in calc.fields if f not in fields.get(interval, ())]
    if missing:
        raise MissingFieldsError(
            f"The function {name} requires the indicator(s) {' and '.join(missing)} "
            "to be present and cannot be used here"
        )
    n = calc.warm_up_length + 1

    def evaluate(bars: Bars) -> Any:
        window = bars if len(bars) <= n else bars[len(bars) - n :]
        return calc([get_value(bar, interval) for bar in window])

    return Calculation(
        evaluate,
        fields=calc.fields,
        warm_up_length=calc.warm_up_length,
        side_effect=spec.side_effect,
    )


def _every(calcs: List[Calculation]) -> Calculation:
    def evaluate(bars: Bars) -> bool:
        return all(calc(bars) for calc in calcs)

    return Calculation(
        evaluate,
        fields=union_fields(calcs),
        warm_up_length=max_warm_up(calcs),
        side_effect=any(c.side_effect for c in calcs),
    )


__all__ = [
    "FieldCatalog",
    "get_registry",
    "parse",
    "parse_criteria_map",
    "parse_columns_map",
    "parse_warm_up_map",
    "create_calculation",
    "create_warm_up_map",
    "merge_maps",
]
