from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

from tradecalc.core.errors import ExpressionError
from tradecalc.core.intervals import unique_sorted

# -----------------------------------------------------------------------------
# AST nodes
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Node:
    node_type: str


@dataclass(frozen=True)
class NumberNode(Node):
    value: Union[int, float]

    def __init__(self, value: Union[int, float]) -> None:
        object.__setattr__(self, "node_type", "NUMBER")
        object.__setattr__(self, "value", value)


@dataclass(frozen=True)
class StringNode(Node):
    """Text literal; ``value`` holds the JSON-encoded form, quotes included."""

    value: str

    def __init__(self, value: str) -> None:
        object.__setattr__(self, "node_type", "STRING")
        object.__setattr__(self, "value", value)

    @property
    def text(self) -> str:
        return json.loads(self.value)


@dataclass(frozen=True)
class FieldNode(Node):
    """Field reference, optionally qualified as ``interval.name``."""

    name: str

    def __init__(self, name: str) -> None:
        object.__setattr__(self, "node_type", "FIELD")
        object.__setattr__(self, "name", name)


@dataclass(frozen=True)
class CallNode(Node):
    name: str
    args: Tuple["ExprNode", ...]

    def __init__(self, name: str, args: Sequence["ExprNode"] = ()) -> None:
        object.__setattr__(self, "node_type", "CALL")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "args", tuple(args))

    @property
    def is_indicator(self) -> bool:
        return self.name.find(".") > 0


@dataclass(frozen=True)
class AsNode(Node):
    """Top-level ``expr AS name``; ``name`` is JSON-encoded like StringNode."""

    expr: "ExprNode"
    name: str

    def __init__(self, expr: "ExprNode", name: str) -> None:
        object.__setattr__(self, "node_type", "AS")
        object.__setattr__(self, "expr", expr)
        object.__setattr__(self, "name", name)

    @property
    def label(self) -> str:
        return json.loads(self.name)


ExprNode = Union[NumberNode, StringNode, FieldNode, CallNode]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

_INTERVAL_PREFIX = re.compile(r"^(\w+)\.")


def format_number(value: Union[int, float]) -> str:
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    # Integral floats are written like integers: 2.0 -> "2".
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def serialize(node: Node) -> str:
    """Canonical text of ``node``: operators are written as function calls."""

    if isinstance(node, NumberNode):
        return format_number(node.value)
    if isinstance(node, StringNode):
        return node.value
    if isinstance(node, FieldNode):
        return node.name
    if isinstance(node, CallNode):
        return node.name + "(" + ",".join(serialize(a) for a in node.args) + ")"
    if isinstance(node, AsNode):
        return serialize(node.expr) + " AS " + node.name
    raise ExpressionError(f"Unknown expression: {node!r}")


def get_intervals(node: Node) -> List[str]:
    """Intervals referenced by ``node``, deduplicated and ordered by duration.

    A qualified field contributes its prefix, an indicator call contributes
    the interval in its name, and other calls collect their arguments.
    """

    if isinstance(node, FieldNode):
        match = _INTERVAL_PREFIX.match(node.name)
        return [match.group(1)] if match else []
    if isinstance(node, CallNode):
        if node.is_indicator:
            return [node.name[: node.name.index(".")]]
        found: List[str] = []
        for arg in node.args:
            found.extend(get_intervals(arg))
        return unique_sorted(found)
    if isinstance(node, AsNode):
        return get_intervals(node.expr)
    return []


def unwrap(node: Node) -> ExprNode:
    """Strip a top-level AS wrapper."""

    return node.expr if isinstance(node, AsNode) else node  # type: ignore[return-value]


__all__ = [
    "Node",
    "NumberNode",
    "StringNode",
    "FieldNode",
    "CallNode",
    "AsNode",
    "ExprNode",
    "format_number",
    "serialize",
    "get_intervals",
    "unwrap",
]
