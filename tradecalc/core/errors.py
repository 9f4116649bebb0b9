from __future__ import annotations


class TradeCalcError(RuntimeError):
    """Base error for expression compilation and calendar arithmetic."""


class ExpressionError(TradeCalcError):
    """Raised when an expression cannot be parsed or compiled."""

    def with_expression(self, expression: str) -> "ExpressionError":
        """Return a copy of this error naming the expression it came from."""

        message = str(self)
        if message.endswith(f" in {expression}"):
            return self
        err = type(self)(f"{message} in {expression}")
        err.__cause__ = self
        return err


class ExpressionSyntaxError(ExpressionError):
    pass


class UnknownFieldError(ExpressionError):
    pass


class UnknownFunctionError(ExpressionError):
    pass


class LiteralArgumentError(ExpressionError):
    pass


class IntervalConflictError(ExpressionError):
    pass


class MissingFieldsError(ExpressionError):
    pass


class CalendarError(TradeCalcError):
    """Raised for unparseable timestamps or invalid step amounts."""


__all__ = [
    "TradeCalcError",
    "ExpressionError",
    "ExpressionSyntaxError",
    "UnknownFieldError",
    "UnknownFunctionError",
    "LiteralArgumentError",
    "IntervalConflictError",
    "MissingFieldsError",
    "CalendarError",
]
