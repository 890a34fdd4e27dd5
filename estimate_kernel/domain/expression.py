"""
Restricted expression language for formula assignments.

Expressions are parsed with Python's ``ast`` module and converted into a
closed set of frozen node dataclasses.  Anything outside the allowed
grammar is rejected at parse time, so evaluation never executes code.

Allowed:
  - Arithmetic: +, -, *, /  (unary - and +)
  - Comparisons: <, <=, >, >=, ==, !=  (chains like ``0 < x <= 10``)
  - Logical: and, or, not
  - Conditional: ``a if cond else b``
  - Literals: numbers (read from source text as Decimal), True, False
  - Names: formula inputs and earlier assignments
  - Functions: ceil, floor, round, sqrt, abs, max, min

Rejected:
  - attribute access, subscripts, strings, lambdas, comprehensions,
    any other operator (``**``, ``%``, ``//``, ``^``), any other call
"""

from __future__ import annotations

import ast
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Union

from estimate_kernel.domain.formula import ALLOWED_FUNCTIONS
from estimate_kernel.exceptions import ExpressionSyntaxError

# (min_args, max_args); None means unbounded
FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "ceil": (1, 1),
    "floor": (1, 1),
    "round": (1, 2),
    "sqrt": (1, 1),
    "abs": (1, 1),
    "max": (1, None),
    "min": (1, None),
}

_BINARY_OPERATORS: dict[type, str] = {
    ast.Add: "+",
    ast.Sub: "-",
    ast.Mult: "*",
    ast.Div: "/",
}

_UNARY_OPERATORS: dict[type, str] = {
    ast.USub: "-",
    ast.UAdd: "+",
    ast.Not: "not",
}

_COMPARE_OPERATORS: dict[type, str] = {
    ast.Lt: "<",
    ast.LtE: "<=",
    ast.Gt: ">",
    ast.GtE: ">=",
    ast.Eq: "==",
    ast.NotEq: "!=",
}


# ---------------------------------------------------------------------------
# Node types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Decimal | bool


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: ExpressionNode


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: ExpressionNode
    right: ExpressionNode


@dataclass(frozen=True)
class Compare:
    """Chained comparison: ``left ops[0] comparators[0] ops[1] ...``."""

    left: ExpressionNode
    ops: tuple[str, ...]
    comparators: tuple[ExpressionNode, ...]


@dataclass(frozen=True)
class BoolOp:
    op: str
    values: tuple[ExpressionNode, ...]


@dataclass(frozen=True)
class Conditional:
    test: ExpressionNode
    body: ExpressionNode
    orelse: ExpressionNode


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: tuple[ExpressionNode, ...]


ExpressionNode = Union[
    Literal, Variable, UnaryOp, BinaryOp, Compare, BoolOp, Conditional, FunctionCall
]


class _Rejected(Exception):
    """Internal: carries the reason an expression was rejected."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_expression(expression: str, variable: str = "<expression>") -> ExpressionNode:
    """
    Parse an expression into its node tree.

    Raises:
        ExpressionSyntaxError: Unparsable text or a disallowed construct.
    """
    if not isinstance(expression, str):
        raise ExpressionSyntaxError(variable, repr(expression), "expression must be text")
    try:
        return _compile(expression.strip())
    except _Rejected as exc:
        raise ExpressionSyntaxError(variable, expression, exc.reason) from None


@lru_cache(maxsize=1024)
def _compile(source: str) -> ExpressionNode:
    if not source:
        raise _Rejected("expression is empty")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise _Rejected(f"syntax error: {exc.msg}") from None
    return _convert(tree.body, source)


def _convert(node: ast.AST, source: str) -> ExpressionNode:
    if isinstance(node, ast.Constant):
        return _convert_constant(node, source)

    if isinstance(node, ast.Name):
        if node.id in ALLOWED_FUNCTIONS:
            raise _Rejected(f"function {node.id} must be called")
        return Variable(node.id)

    if isinstance(node, ast.BinOp):
        op = _BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise _Rejected(f"operator {type(node.op).__name__} is not allowed")
        return BinaryOp(op, _convert(node.left, source), _convert(node.right, source))

    if isinstance(node, ast.UnaryOp):
        op = _UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise _Rejected(f"operator {type(node.op).__name__} is not allowed")
        return UnaryOp(op, _convert(node.operand, source))

    if isinstance(node, ast.Compare):
        ops = []
        for op_node in node.ops:
            op = _COMPARE_OPERATORS.get(type(op_node))
            if op is None:
                raise _Rejected(f"comparison {type(op_node).__name__} is not allowed")
            ops.append(op)
        return Compare(
            _convert(node.left, source),
            tuple(ops),
            tuple(_convert(c, source) for c in node.comparators),
        )

    if isinstance(node, ast.BoolOp):
        op = "and" if isinstance(node.op, ast.And) else "or"
        return BoolOp(op, tuple(_convert(v, source) for v in node.values))

    if isinstance(node, ast.IfExp):
        return Conditional(
            _convert(node.test, source),
            _convert(node.body, source),
            _convert(node.orelse, source),
        )

    if isinstance(node, ast.Call):
        return _convert_call(node, source)

    raise _Rejected(f"{type(node).__name__} is not allowed")


def _convert_constant(node: ast.Constant, source: str) -> Literal:
    value = node.value
    if isinstance(value, bool):
        return Literal(value)
    if isinstance(value, int):
        return Literal(Decimal(value))
    if isinstance(value, float):
        text = ast.get_source_segment(source, node)
        try:
            return Literal(Decimal(text.replace("_", "")))
        except (InvalidOperation, AttributeError):
            raise _Rejected(f"unsupported numeric literal {text!r}") from None
    raise _Rejected(f"literal of type {type(value).__name__} is not allowed")


def _convert_call(node: ast.Call, source: str) -> FunctionCall:
    if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_FUNCTIONS:
        name = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
        raise _Rejected(f"function {name} is not allowed")
    name = node.func.id
    if node.keywords:
        raise _Rejected(f"keyword arguments are not allowed in {name}()")
    if any(isinstance(arg, ast.Starred) for arg in node.args):
        raise _Rejected(f"argument unpacking is not allowed in {name}()")
    low, high = FUNCTION_ARITY[name]
    count = len(node.args)
    if count < low or (high is not None and count > high):
        expected = str(low) if low == high else f"{low}..{high or 'n'}"
        raise _Rejected(f"{name}() takes {expected} argument(s), got {count}")
    return FunctionCall(name, tuple(_convert(arg, source) for arg in node.args))


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def referenced_names(node: ExpressionNode) -> frozenset[str]:
    """All variable names referenced anywhere in the tree."""
    names: set[str] = set()
    _collect_names(node, names)
    return frozenset(names)


def _collect_names(node: ExpressionNode, names: set[str]) -> None:
    if isinstance(node, Variable):
        names.add(node.name)
    elif isinstance(node, Literal):
        return
    elif isinstance(node, UnaryOp):
        _collect_names(node.operand, names)
    elif isinstance(node, BinaryOp):
        _collect_names(node.left, names)
        _collect_names(node.right, names)
    elif isinstance(node, Compare):
        _collect_names(node.left, names)
        for comparator in node.comparators:
            _collect_names(comparator, names)
    elif isinstance(node, BoolOp):
        for value in node.values:
            _collect_names(value, names)
    elif isinstance(node, Conditional):
        _collect_names(node.test, names)
        _collect_names(node.body, names)
        _collect_names(node.orelse, names)
    elif isinstance(node, FunctionCall):
        for arg in node.args:
            _collect_names(arg, names)
    else:
        raise TypeError(f"Unknown expression node: {type(node).__name__}")
