from __future__ import annotations

import json
import re
from typing import List, Union

from tradecalc.core.errors import ExpressionSyntaxError
from tradecalc.services.expression_ast import (
    AsNode,
    CallNode,
    ExprNode,
    FieldNode,
    Node,
    NumberNode,
    StringNode,
    unwrap,
)

_QUOTES = {'"', "'"}

# Two-character operators are tried before their one-character prefixes.
_RELATIONAL_OPS = (
    ("!=", "NOT_EQUAL"),
    ("<>", "NOT_EQUAL"),
    ("<=", "NOT_GREATER_THAN"),
    (">=", "NOT_LESS_THAN"),
    ("=", "EQUALS"),
    ("<", "LESS_THAN"),
    (">", "GREATER_THAN"),
)

_MULTIPLICATIVE_OPS = {
    "*": "PRODUCT",
    "×": "PRODUCT",
    "/": "DIVIDE",
    "%": "MOD",
}

_ADDITIVE_OPS = {"+": "ADD", "-": "SUBTRACT"}

_SINGLE_QUOTED_ESCAPE = re.compile(r'\\(.)|"', re.DOTALL)


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def _is_letter(ch: str) -> bool:
    return "a" <= ch <= "z" or "A" <= ch <= "Z"


def _is_word(ch: str) -> bool:
    return _is_digit(ch) or _is_letter(ch) or ch == "_"


class _Parser:
    """Recursive-descent parser over the raw text with a cursor.

    There is no tokenizer: every rule reads characters through ``_peek``,
    which skips whitespace before looking at the next character.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    # Cursor helpers --------------------------------------------------------

    def _char(self, offset: int = 0) -> str:
        idx = self.pos + offset
        return self.text[idx] if idx < len(self.text) else ""

    def _peek(self) -> str:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1
        return self._char()

    def _fail(self, expected: str) -> None:
        if self.pos < len(self.text):
            got = self.text[self.pos : self.pos + 10]
            raise ExpressionSyntaxError(f"Expected {expected}, but got {got}...")
        raise ExpressionSyntaxError(f"Expected {expected}, but no more input")

    def _expect(self, ch: str) -> None:
        if self._peek() != ch:
            self._fail(ch)
        self.pos += 1

    def _keyword(self, word: str) -> bool:
        """Consume ``word`` (any case) when it is not the start of a longer word."""

        if self._peek().upper() != word[0]:
            return False
        end = self.pos + len(word)
        if self.text[self.pos : end].upper() != word:
            return False
        if end < len(self.text) and _is_word(self.text[end]):
            return False
        self.pos = end
        return True

    # Grammar ---------------------------------------------------------------
    # list       := as_expr (',' as_expr)*
    # as_expr    := or ('AS' (word | string))?
    # or         := and ('OR' or)?
    # and        := relational ('AND' and)?
    # relational := additive (REL_OP relational)?
    # additive   := multiplicative (('+'|'-') multiplicative)*
    # multiplicative := unary (('*'|'×'|'/'|'%') unary)*
    # unary      := '!' primary | '+' primary | '-' number | '-' primary | primary
    # primary    := '(' or ')' | word ('.' word)? ('(' args? ')')? | string | number

    def parse(self) -> List[Node]:
        expressions = self._parse_as_expression_list()
        if self._peek():
            self._fail("end of input")
        return expressions

    def _parse_as_expression_list(self) -> List[Node]:
        expressions = [self._parse_as_expression()]
        while self._peek() == ",":
            self.pos += 1
            expressions.append(self._parse_as_expression())
        return expressions

    def _parse_as_expression(self) -> Node:
        expr = self._parse_expression()
        if not self._keyword("AS"):
            return expr
        if self._peek() in _QUOTES:
            name = self._parse_string().value
        else:
            name = json.dumps(self._parse_word())
        return AsNode(expr, name)

    def _parse_expression(self) -> ExprNode:
        return self._parse_or()

    def _parse_or(self) -> ExprNode:
        lhs = self._parse_and()
        if not self._keyword("OR"):
            return lhs
        return CallNode("OR", [lhs, self._parse_or()])

    def _parse_and(self) -> ExprNode:
        lhs = self._parse_relational()
        if not self._keyword("AND"):
            return lhs
        return CallNode("AND", [lhs, self._parse_and()])

    def _parse_relational(self) -> ExprNode:
        lhs = self._parse_additive()
        self._peek()
        for op, name in _RELATIONAL_OPS:
            if self.text.startswith(op, self.pos):
                self.pos += len(op)
                return CallNode(name, [lhs, self._parse_relational()])
        return lhs

    def _parse_additive(self) -> ExprNode:
        lhs = self._parse_multiplicative()
        while self._peek() in _ADDITIVE_OPS:
            name = _ADDITIVE_OPS[self._char()]
            self.pos += 1
            lhs = CallNode(name, [lhs, self._parse_multiplicative()])
        return lhs

    def _parse_multiplicative(self) -> ExprNode:
        lhs = self._parse_unary()
        while self._peek() in _MULTIPLICATIVE_OPS:
            name = _MULTIPLICATIVE_OPS[self._char()]
            self.pos += 1
            lhs = CallNode(name, [lhs, self._parse_unary()])
        return lhs

    def _parse_unary(self) -> ExprNode:
        ch = self._peek()
        if ch == "!":
            self.pos += 1
            return CallNode("NOT", [self._parse_primary()])
        if ch == "+":
            self.pos += 1
            return self._parse_primary()
        if ch == "-" and _is_digit(self._char(1)):
            return self._parse_number()
        if ch == "-":
            self.pos += 1
            return CallNode("NEGATIVE", [self._parse_primary()])
        return self._parse_primary()

    def _parse_primary(self) -> ExprNode:
        ch = self._peek()
        if ch == "(":
            self._expect("(")
            expr = self._parse_expression()
            self._expect(")")
            return expr
        if _is_letter(ch):
            return self._parse_variable_or_call()
        if _is_digit(ch) or ch == "-":
            return self._parse_number()
        if ch in _QUOTES:
            return self._parse_string()
        self._fail("letter, number, or bracket")
        raise AssertionError("unreachable")

    def _parse_variable_or_call(self) -> ExprNode:
        word = self._parse_word()
        qualified = self._peek() == "."
        if qualified:
            # Fields and indicator functions may be prefixed with an interval.
            self.pos += 1
            word = word + "." + self._parse_word()
        if self._peek() != "(":
            return FieldNode(word)
        self._expect("(")
        args: List[ExprNode] = []
        if self._peek() != ")":
            args.append(self._parse_expression())
            while self._peek() == ",":
                self.pos += 1
                # Indicator functions only accept numbers after the first argument.
                args.append(self._parse_number() if qualified else self._parse_expression())
        self._expect(")")
        return CallNode(word, args)

    def _parse_word(self) -> str:
        if not _is_word(self._peek()):
            self._fail("word")
        start = self.pos
        while self.pos < len(self.text) and _is_word(self.text[self.pos]):
            self.pos += 1
        return self.text[start : self.pos]

    def _parse_string(self) -> StringNode:
        quote = self._peek()
        if quote not in _QUOTES:
            self._fail("quote")
        self._expect(quote)
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] != quote:
            self.pos += 2 if self.text[self.pos] == "\\" else 1
        body = self.text[start : self.pos]
        self._expect(quote)
        if quote == "'":
            body = _SINGLE_QUOTED_ESCAPE.sub(_requote, body)
        try:
            value = json.loads('"' + body + '"')
        except json.JSONDecodeError as err:
            raise ExpressionSyntaxError(f"Invalid string literal {quote}{body}{quote}: {err.msg}") from err
        return StringNode(json.dumps(value, ensure_ascii=False))

    def _parse_number(self) -> NumberNode:
        ch = self._peek()
        if not _is_digit(ch) and ch != "-":
            self._fail("number")
        start = self.pos
        if ch == "-":
            self.pos += 1
        if not _is_digit(self._char()):
            self._fail("number")
        self._skip_digits()
        decimal = False
        if self._char() == ".":
            decimal = True
            self.pos += 1
            if not _is_digit(self._char()):
                self._fail("number after decimal point")
            self._skip_digits()
        if self._char() in ("e", "E"):
            decimal = True
            self.pos += 1
            if self._char() in ("+", "-"):
                self.pos += 1
            if not _is_digit(self._char()):
                self._fail("number after exponent")
            self._skip_digits()
        literal = self.text[start : self.pos]
        return NumberNode(float(literal) if decimal else int(literal))

    def _skip_digits(self) -> None:
        while self.pos < len(self.text) and _is_digit(self.text[self.pos]):
            self.pos += 1


def _requote(match: "re.Match[str]") -> str:
    escaped = match.group(1)
    if escaped is None:
        return '\\"'
    if escaped == "'":
        return "'"
    return match.group(0)


def parse_as_expression_list(text: str) -> List[Node]:
    """Parse a comma separated list whose items may carry ``AS name``."""

    try:
        return _Parser(text).parse()
    except ExpressionSyntaxError as exc:
        raise ExpressionSyntaxError(f'Could not parse "{text}". {exc}') from exc


def parse_expression_list(text: str) -> List[ExprNode]:
    """Parse a comma separated list, dropping any ``AS`` names."""

    return [unwrap(node) for node in parse_as_expression_list(text)]


def parse_and_expressions(text: str) -> List[ExprNode]:
    """Parse ``text`` and split top-level AND chains into separate criteria."""

    pending = parse_expression_list(text)
    criteria: List[ExprNode] = []
    while pending:
        expr = pending.pop(0)
        if isinstance(expr, CallNode) and expr.name == "AND" and len(expr.args) == 2:
            pending[0:0] = list(expr.args)
        else:
            criteria.append(expr)
    return criteria


def parse_expression(text: str) -> Union[ExprNode, Node]:
    """Parse text holding exactly one expression."""

    nodes = parse_as_expression_list(text)
    if len(nodes) > 1:
        raise ExpressionSyntaxError(f"Did not expect multiple expressions: {text}")
    return nodes[0]


__all__ = [
    "parse_as_expression_list",
    "parse_expression_list",
    "parse_and_expressions",
    "parse_expression",
]
