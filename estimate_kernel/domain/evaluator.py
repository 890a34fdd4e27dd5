"""
Evaluator -- Pure evaluation of a formula version against input values.

Responsibility:
    Resolves and coerces declared inputs, evaluates each assignment in
    declaration order under a fixed decimal context, and returns the
    declared outputs.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Evaluation is a pure function of (version body, input values): the
      same arguments always produce the same result or the same error.
    - All arithmetic is Decimal under EVALUATION_CONTEXT (precision 38,
      ROUND_HALF_UP).  Each assignment result is quantized to the storage
      scale so that stored values round-trip exactly.
    - Undeclared input keys are ignored.

Failure modes (all EvaluationError subclasses, never retried):
    - MissingInputError: required inputs absent, all of them named.
    - InvalidInputError: wrong type, non-finite, non-integral integer,
      out of declared bounds.
    - ExpressionSyntaxError: stored expression cannot be parsed, or a
      variable is assigned twice.
    - CyclicReferenceError: assignments depend on themselves.
    - UndefinedVariableError: a reference to a name not yet in scope.
    - DivisionByZeroError: zero divisor.
    - ExpressionTypeError: operator applied to the wrong kind of value.
    - IncompleteOutputError: a declared output was never produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_UP,
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    localcontext,
)
from types import MappingProxyType
from typing import Any, Mapping

from estimate_kernel.db.types import to_storage_scale
from estimate_kernel.domain.expression import (
    BinaryOp,
    BoolOp,
    Compare,
    Conditional,
    ExpressionNode,
    FunctionCall,
    Literal,
    UnaryOp,
    Variable,
    parse_expression,
    referenced_names,
)
from estimate_kernel.domain.formula import (
    FormulaBody,
    FormulaValue,
    FormulaVersion,
    InputSpec,
    InputType,
)
from estimate_kernel.exceptions import (
    CyclicReferenceError,
    DivisionByZeroError,
    ExpressionSyntaxError,
    ExpressionTypeError,
    IncompleteOutputError,
    InvalidInputError,
    MissingInputError,
    UndefinedVariableError,
)

EVALUATION_PRECISION = 38

EVALUATION_CONTEXT = Context(
    prec=EVALUATION_PRECISION,
    rounding=ROUND_HALF_UP,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)


@dataclass(frozen=True)
class EvaluationResult:
    """
    Outcome of one successful evaluation.

    Attributes:
        resolved_inputs: Every declared input after defaults and coercion.
        computed: Every assignment variable, in declaration order.
        outputs: Declared outputs only, in declaration order.
    """

    resolved_inputs: Mapping[str, FormulaValue] = field(
        default_factory=lambda: MappingProxyType({})
    )
    computed: Mapping[str, FormulaValue] = field(
        default_factory=lambda: MappingProxyType({})
    )
    outputs: Mapping[str, FormulaValue] = field(
        default_factory=lambda: MappingProxyType({})
    )


def evaluate(
    version: FormulaVersion | FormulaBody,
    input_values: Mapping[str, Any],
) -> EvaluationResult:
    """
    Evaluate a formula version (or bare body) against input values.

    Args:
        version: The exact version to evaluate.
        input_values: Mapping of input name to value.  Values may be
            Decimal, int, numeric strings, or bool for boolean inputs.

    Returns:
        EvaluationResult with resolved inputs, all computed assignments
        and the declared outputs.
    """
    body = version.body if isinstance(version, FormulaVersion) else version

    resolved = resolve_inputs(body, input_values)
    compiled = _compile_assignments(body)
    check_cycles(body, compiled)

    scope: dict[str, FormulaValue] = dict(resolved)
    computed: dict[str, FormulaValue] = {}

    with localcontext(EVALUATION_CONTEXT):
        for assignment, node in compiled:
            value = _Evaluation(assignment.variable, scope).run(node)
            scope[assignment.variable] = value
            computed[assignment.variable] = value

    missing = [name for name in body.output_names if name not in scope]
    if missing:
        raise IncompleteOutputError(missing)

    return EvaluationResult(
        resolved_inputs=MappingProxyType(dict(resolved)),
        computed=MappingProxyType(computed),
        outputs=MappingProxyType({name: scope[name] for name in body.output_names}),
    )


# ---------------------------------------------------------------------------
# Input resolution
# ---------------------------------------------------------------------------


def resolve_inputs(
    body: FormulaBody, input_values: Mapping[str, Any]
) -> dict[str, FormulaValue]:
    """Apply defaults, coerce types and check bounds for every declared input."""
    missing = [
        spec.name
        for spec in body.inputs
        if input_values.get(spec.name) is None and spec.default is None
    ]
    if missing:
        raise MissingInputError(missing)

    resolved: dict[str, FormulaValue] = {}
    for spec in body.inputs:
        raw = input_values.get(spec.name)
        if raw is None:
            raw = spec.default
        resolved[spec.name] = coerce_input(spec, raw)
    return resolved


def coerce_input(spec: InputSpec, raw: Any) -> FormulaValue:
    """Coerce one raw input value to its declared type, enforcing bounds."""
    if spec.type is InputType.BOOLEAN:
        if not isinstance(raw, bool):
            raise InvalidInputError(spec.name, "must be a boolean")
        return raw

    if isinstance(raw, bool):
        raise InvalidInputError(spec.name, "must be a number, not a boolean")
    try:
        if isinstance(raw, Decimal):
            value = raw
        elif isinstance(raw, int):
            value = Decimal(raw)
        elif isinstance(raw, float):
            value = Decimal(repr(raw))
        elif isinstance(raw, str):
            value = Decimal(raw.strip())
        else:
            raise InvalidInputError(spec.name, f"unsupported value type {type(raw).__name__}")
    except InvalidOperation:
        raise InvalidInputError(spec.name, f"{raw!r} is not a number") from None

    if not value.is_finite():
        raise InvalidInputError(spec.name, "must be a finite number")
    if spec.type is InputType.INTEGER and value != value.to_integral_value():
        raise InvalidInputError(spec.name, "must be an integer")
    if spec.minimum is not None and value < spec.minimum:
        raise InvalidInputError(spec.name, f"must be >= {spec.minimum}")
    if spec.maximum is not None and value > spec.maximum:
        raise InvalidInputError(spec.name, f"must be <= {spec.maximum}")
    return value


# ---------------------------------------------------------------------------
# Structure checks
# ---------------------------------------------------------------------------


def _compile_assignments(body: FormulaBody):
    seen = set(body.input_names)
    compiled = []
    for assignment in body.assignments:
        if assignment.variable in seen:
            raise ExpressionSyntaxError(
                assignment.variable,
                assignment.expression,
                f"variable {assignment.variable} is already defined",
            )
        seen.add(assignment.variable)
        compiled.append(
            (assignment, parse_expression(assignment.expression, assignment.variable))
        )
    return compiled


def check_cycles(body: FormulaBody, compiled=None) -> None:
    """
    Raise CyclicReferenceError if any assignment depends on itself.

    Only edges between assignment variables can form a cycle; inputs are
    leaves.
    """
    if compiled is None:
        compiled = _compile_assignments(body)
    assigned = {assignment.variable for assignment, _ in compiled}
    edges = {
        assignment.variable: sorted(referenced_names(node) & assigned)
        for assignment, node in compiled
    }

    visiting: list[str] = []
    done: set[str] = set()

    def visit(name: str) -> None:
        if name in done:
            return
        if name in visiting:
            start = visiting.index(name)
            raise CyclicReferenceError(visiting[start:] + [name])
        visiting.append(name)
        for dependency in edges[name]:
            visit(dependency)
        visiting.pop()
        done.add(name)

    for assignment, _ in compiled:
        visit(assignment.variable)


# ---------------------------------------------------------------------------
# Node evaluation
# ---------------------------------------------------------------------------


class _Evaluation:
    """Evaluates one assignment's node tree against the current scope."""

    def __init__(self, variable: str, scope: Mapping[str, FormulaValue]):
        self.variable = variable
        self.scope = scope

    def run(self, node: ExpressionNode) -> FormulaValue:
        """Evaluate ``node``; numeric results are quantized to the storage scale."""
        try:
            value = self.eval(node)
            if isinstance(value, Decimal):
                value = to_storage_scale(value)
            return value
        except DivisionByZero:
            raise DivisionByZeroError(self.variable) from None
        except (InvalidOperation, Overflow) as exc:
            raise ExpressionTypeError(
                self.variable, f"invalid arithmetic ({type(exc).__name__})"
            ) from None

    def eval(self, node: ExpressionNode) -> FormulaValue:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Variable):
            if node.name not in self.scope:
                raise UndefinedVariableError(self.variable, node.name)
            return self.scope[node.name]
        if isinstance(node, UnaryOp):
            return self._unary(node)
        if isinstance(node, BinaryOp):
            return self._binary(node)
        if isinstance(node, Compare):
            return self._compare(node)
        if isinstance(node, BoolOp):
            return self._bool_op(node)
        if isinstance(node, Conditional):
            test = self._boolean(self.eval(node.test), "condition")
            return self.eval(node.body) if test else self.eval(node.orelse)
        if isinstance(node, FunctionCall):
            return self._call(node)
        raise TypeError(f"Unknown expression node: {type(node).__name__}")

    def _number(self, value: FormulaValue, where: str) -> Decimal:
        if isinstance(value, bool) or not isinstance(value, Decimal):
            raise ExpressionTypeError(self.variable, f"{where} requires a number")
        return value

    def _boolean(self, value: FormulaValue, where: str) -> bool:
        if not isinstance(value, bool):
            raise ExpressionTypeError(self.variable, f"{where} requires a boolean")
        return value

    def _unary(self, node: UnaryOp) -> FormulaValue:
        operand = self.eval(node.operand)
        if node.op == "not":
            return not self._boolean(operand, "not")
        number = self._number(operand, f"unary {node.op}")
        return -number if node.op == "-" else +number

    def _binary(self, node: BinaryOp) -> Decimal:
        left = self._number(self.eval(node.left), f"operator {node.op}")
        right = self._number(self.eval(node.right), f"operator {node.op}")
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if right == 0:
            raise DivisionByZeroError(self.variable)
        return left / right

    def _compare(self, node: Compare) -> bool:
        left = self.eval(node.left)
        for op, comparator_node in zip(node.ops, node.comparators):
            right = self.eval(comparator_node)
            if op in ("==", "!="):
                if isinstance(left, bool) != isinstance(right, bool):
                    raise ExpressionTypeError(
                        self.variable, f"cannot compare number and boolean with {op}"
                    )
                outcome = (left == right) if op == "==" else (left != right)
            else:
                a = self._number(left, f"comparison {op}")
                b = self._number(right, f"comparison {op}")
                if op == "<":
                    outcome = a < b
                elif op == "<=":
                    outcome = a <= b
                elif op == ">":
                    outcome = a > b
                else:
                    outcome = a >= b
            if not outcome:
                return False
            left = right
        return True

    def _bool_op(self, node: BoolOp) -> bool:
        if node.op == "and":
            for value_node in node.values:
                if not self._boolean(self.eval(value_node), "and"):
                    return False
            return True
        for value_node in node.values:
            if self._boolean(self.eval(value_node), "or"):
                return True
        return False

    def _call(self, node: FunctionCall) -> Decimal:
        args = [self._number(self.eval(arg), f"{node.name}()") for arg in node.args]
        name = node.name
        if name == "ceil":
            return args[0].to_integral_value(rounding=ROUND_CEILING)
        if name == "floor":
            return args[0].to_integral_value(rounding=ROUND_FLOOR)
        if name == "round":
            places = args[1] if len(args) > 1 else Decimal(0)
            if places != places.to_integral_value() or places < 0:
                raise ExpressionTypeError(
                    self.variable, "round() places must be a non-negative integer"
                )
            return args[0].quantize(
                Decimal(1).scaleb(-int(places)), rounding=ROUND_HALF_UP
            )
        if name == "sqrt":
            if args[0] < 0:
                raise ExpressionTypeError(self.variable, "sqrt() of a negative number")
            return args[0].sqrt()
        if name == "abs":
            return abs(args[0])
        if name == "max":
            return max(args)
        if name == "min":
            return min(args)
        raise TypeError(f"Unknown function: {name}")
