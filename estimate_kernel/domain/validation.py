"""
Publish-time validation of formula bodies.

Responsibility:
    Decides whether a formula body may become a new version.  Structural
    problems are collected so an author sees all of them at once; cycles and
    unproduced outputs surface as their own evaluation error kinds.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Order of checks:
    1. Names, duplicates, bounds, expression grammar, unknown names
       -> FormulaValidationError(problems)
    2. Self-dependency between assignments -> CyclicReferenceError
    3. References to assignments declared later -> FormulaValidationError
    4. Declared outputs nothing produces -> IncompleteOutputError
    5. Dry run at the lower and upper input boundaries
       -> FormulaValidationError
"""

from decimal import ROUND_HALF_UP, Decimal

from estimate_kernel.domain.evaluator import check_cycles, evaluate
from estimate_kernel.domain.expression import parse_expression, referenced_names
from estimate_kernel.domain.formula import (
    FormulaBody,
    FormulaValue,
    InputSpec,
    InputType,
    is_valid_variable_name,
)
from estimate_kernel.exceptions import (
    EvaluationError,
    ExpressionSyntaxError,
    FormulaValidationError,
    IncompleteOutputError,
)


def validate_formula_body(body: FormulaBody, formula_key: str) -> None:
    """
    Validate a formula body for publication.

    Raises:
        FormulaValidationError: One or more structural problems.
        CyclicReferenceError: Assignments depend on themselves.
        IncompleteOutputError: A declared output is never produced.
    """
    problems = _structural_problems(body)
    if problems:
        raise FormulaValidationError(formula_key, problems)

    check_cycles(body)

    problems = _forward_reference_problems(body)
    if problems:
        raise FormulaValidationError(formula_key, problems)

    produced = set(body.input_names) | set(body.assigned_variables)
    missing = [name for name in body.output_names if name not in produced]
    if missing:
        raise IncompleteOutputError(missing)

    problems = _dry_run_problems(body)
    if problems:
        raise FormulaValidationError(formula_key, problems)


def _structural_problems(body: FormulaBody) -> list[str]:
    problems: list[str] = []

    if not body.outputs:
        problems.append("formula declares no outputs")

    defined: set[str] = set()
    for spec in body.inputs:
        if not is_valid_variable_name(spec.name):
            problems.append(f"input name {spec.name!r} is not a valid identifier")
        if spec.name in defined:
            problems.append(f"variable {spec.name} is already defined")
        defined.add(spec.name)
        if (
            spec.minimum is not None
            and spec.maximum is not None
            and spec.minimum > spec.maximum
        ):
            problems.append(f"input {spec.name} has min greater than max")

    all_assigned = set(body.assigned_variables)
    for assignment in body.assignments:
        if not is_valid_variable_name(assignment.variable):
            problems.append(
                f"assignment name {assignment.variable!r} is not a valid identifier"
            )
        if assignment.variable in defined:
            problems.append(f"variable {assignment.variable} is already defined")
        defined.add(assignment.variable)

        try:
            node = parse_expression(assignment.expression, assignment.variable)
        except ExpressionSyntaxError as exc:
            problems.append(str(exc))
            continue

        known = set(body.input_names) | all_assigned
        for name in sorted(referenced_names(node) - known):
            problems.append(
                f"expression for {assignment.variable} references undefined variable {name}"
            )

    seen_outputs: set[str] = set()
    for spec in body.outputs:
        if spec.name in seen_outputs:
            problems.append(f"output {spec.name} is declared twice")
        seen_outputs.add(spec.name)

    return problems


def _forward_reference_problems(body: FormulaBody) -> list[str]:
    problems: list[str] = []
    later = set(body.assigned_variables)
    for assignment in body.assignments:
        later.discard(assignment.variable)
        node = parse_expression(assignment.expression, assignment.variable)
        for name in sorted(referenced_names(node) & later):
            problems.append(
                f"expression for {assignment.variable} references {name} "
                f"before it is assigned"
            )
    return problems


def boundary_inputs(body: FormulaBody, mode: str) -> dict[str, FormulaValue]:
    """
    Input values at the lower (``"min"``) or upper (``"max"``) boundary.

    Lower: min, else default, else 0.  Upper: max, else default, else min,
    else 1.  Integer inputs are rounded half-up; booleans are False / True.
    """
    values: dict[str, FormulaValue] = {}
    for spec in body.inputs:
        values[spec.name] = _boundary_value(spec, mode)
    return values


def _boundary_value(spec: InputSpec, mode: str) -> FormulaValue:
    if spec.type is InputType.BOOLEAN:
        return mode == "max"
    if mode == "min":
        candidates = (spec.minimum, spec.default, Decimal(0))
    else:
        candidates = (spec.maximum, spec.default, spec.minimum, Decimal(1))
    value = next(c for c in candidates if c is not None)
    if spec.type is InputType.INTEGER:
        value = value.to_integral_value(rounding=ROUND_HALF_UP)
    return value


def _dry_run_problems(body: FormulaBody) -> list[str]:
    problems: list[str] = []
    for mode in ("min", "max"):
        try:
            evaluate(body, boundary_inputs(body, mode))
        except EvaluationError as exc:
            problems.append(f"dry run at {mode} boundary failed: {exc}")
    return problems
