"""
Formula -- Pure value objects for versioned calculation formulas.

Responsibility:
    Defines the immutable structure of a formula body (ordered inputs,
    ordered assignments, declared outputs) and of a published
    FormulaVersion.  Converts between the stored JSON document shape and
    these dataclasses.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - A FormulaVersion is frozen; its body is frozen down to the leaves.
    - Numeric bounds and defaults are Decimal, never float.

Failure modes:
    - FormulaValidationError from FormulaBody.from_dict() when the stored
      document is structurally malformed (missing keys, wrong types).

Stored document shape::

    {
      "inputs": [{"name": "hours", "type": "number", "min": "0",
                  "max": null, "default": null, "unit": "h", "label": "Hours"}],
      "assignments": [{"variable": "output", "expression": "hours * rate"}],
      "outputs": [{"name": "output", "unit": "PHP"}]
    }
"""

from __future__ import annotations

import keyword
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Sequence
from uuid import UUID

from estimate_kernel.exceptions import FormulaValidationError

# The whitelisted function set available inside expressions.
ALLOWED_FUNCTIONS: frozenset[str] = frozenset(
    {"ceil", "floor", "round", "sqrt", "abs", "max", "min"}
)

_VARIABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FormulaValue = Decimal | bool


class InputType(str, Enum):
    """Declared type of a formula input."""

    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"

    @property
    def is_numeric(self) -> bool:
        return self is not InputType.BOOLEAN


def is_valid_variable_name(name: Any) -> bool:
    """Identifier rule for inputs, assignments and outputs."""
    return (
        isinstance(name, str)
        and bool(_VARIABLE_PATTERN.match(name))
        and not keyword.iskeyword(name)
        and name not in ALLOWED_FUNCTIONS
    )


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    result = Decimal(str(value).strip())
    if not result.is_finite():
        raise ValueError("value must be finite")
    return result


@dataclass(frozen=True)
class InputSpec:
    """
    One declared formula input.

    ``default`` makes the input optional at evaluation time.  ``minimum``
    and ``maximum`` apply to numeric inputs only.
    """

    name: str
    type: InputType = InputType.NUMBER
    minimum: Decimal | None = None
    maximum: Decimal | None = None
    default: FormulaValue | None = None
    unit: str | None = None
    label: str | None = None

    @property
    def required(self) -> bool:
        return self.default is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "min": None if self.minimum is None else str(self.minimum),
            "max": None if self.maximum is None else str(self.maximum),
            "default": (
                self.default
                if self.default is None or isinstance(self.default, bool)
                else str(self.default)
            ),
            "unit": self.unit,
            "label": self.label,
        }


@dataclass(frozen=True)
class Assignment:
    """``variable = expression``, evaluated in declaration order."""

    variable: str
    expression: str

    def to_dict(self) -> dict[str, Any]:
        return {"variable": self.variable, "expression": self.expression}


@dataclass(frozen=True)
class OutputSpec:
    """A value the formula promises to produce."""

    name: str
    unit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "unit": self.unit}


@dataclass(frozen=True)
class FormulaBody:
    """
    The expression body of a formula version.

    Contract:
        Ordered inputs, ordered assignments and declared outputs.  Outputs
        name either an input or an assignment variable.

    Guarantees:
        - Immutable; all collections are tuples.
        - ``to_dict()`` and ``from_dict()`` round-trip exactly.
    """

    inputs: tuple[InputSpec, ...]
    assignments: tuple[Assignment, ...]
    outputs: tuple[OutputSpec, ...]

    @property
    def input_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.inputs)

    @property
    def output_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.outputs)

    @property
    def assigned_variables(self) -> tuple[str, ...]:
        return tuple(a.variable for a in self.assignments)

    def input(self, name: str) -> InputSpec | None:
        for spec in self.inputs:
            if spec.name == name:
                return spec
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputs": [spec.to_dict() for spec in self.inputs],
            "assignments": [a.to_dict() for a in self.assignments],
            "outputs": [spec.to_dict() for spec in self.outputs],
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        formula_key: str = "<unsaved>",
        input_names: Sequence[str] | None = None,
        output_names: Sequence[str] | None = None,
    ) -> FormulaBody:
        """
        Build a FormulaBody from its document form.

        When the document omits ``inputs`` (or ``outputs``), they are
        derived from ``input_names`` (or ``output_names``): plain required
        numbers.  When both are given, the names must agree in order.

        Raises:
            FormulaValidationError: Structural problems, all collected.
        """
        problems: list[str] = []

        if not isinstance(data, Mapping):
            raise FormulaValidationError(formula_key, ["body must be a mapping"])

        raw_inputs = data.get("inputs")
        if raw_inputs is None:
            raw_inputs = [{"name": n} for n in (input_names or ())]
        raw_outputs = data.get("outputs")
        if raw_outputs is None:
            raw_outputs = [{"name": n} for n in (output_names or ())]
        raw_assignments = data.get("assignments", [])

        inputs = _parse_list(raw_inputs, "inputs", _parse_input, problems)
        assignments = _parse_list(
            raw_assignments, "assignments", _parse_assignment, problems
        )
        outputs = _parse_list(raw_outputs, "outputs", _parse_output, problems)

        if input_names is not None and not problems:
            declared = [spec.name for spec in inputs]
            if list(input_names) != declared:
                problems.append(
                    f"input names {list(input_names)} do not match body inputs {declared}"
                )
        if output_names is not None and not problems:
            declared = [spec.name for spec in outputs]
            if list(output_names) != declared:
                problems.append(
                    f"output names {list(output_names)} do not match body outputs {declared}"
                )

        if problems:
            raise FormulaValidationError(formula_key, problems)

        return cls(
            inputs=tuple(inputs),
            assignments=tuple(assignments),
            outputs=tuple(outputs),
        )


def _parse_list(raw, section, parser, problems):
    if not isinstance(raw, (list, tuple)):
        problems.append(f"{section} must be a list")
        return []
    parsed = []
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping):
            problems.append(f"{section}[{index}] must be a mapping")
            continue
        result = parser(item, f"{section}[{index}]", problems)
        if result is not None:
            parsed.append(result)
    return parsed


def _parse_input(item, where, problems) -> InputSpec | None:
    name = item.get("name", item.get("variable"))
    if not isinstance(name, str) or not name:
        problems.append(f"{where}: name is required")
        return None

    try:
        input_type = InputType(item.get("type", InputType.NUMBER.value))
    except ValueError:
        problems.append(f"{where}: unknown type {item.get('type')!r}")
        return None

    bounds: dict[str, Decimal | None] = {}
    for key in ("min", "max"):
        raw = item.get(key)
        if raw is None:
            bounds[key] = None
            continue
        if not input_type.is_numeric:
            problems.append(f"{where}: {key} is only allowed on numeric inputs")
            continue
        try:
            bounds[key] = _to_decimal(raw)
        except (ValueError, InvalidOperation):
            problems.append(f"{where}: {key} must be a finite number")

    raw_default = item.get("default", item.get("defaultValue"))
    default: FormulaValue | None = None
    if raw_default is not None:
        if input_type is InputType.BOOLEAN:
            if isinstance(raw_default, bool):
                default = raw_default
            else:
                problems.append(f"{where}: default must be a boolean")
        else:
            try:
                default = _to_decimal(raw_default)
            except (ValueError, InvalidOperation):
                problems.append(f"{where}: default must be a finite number")

    return InputSpec(
        name=name,
        type=input_type,
        minimum=bounds.get("min"),
        maximum=bounds.get("max"),
        default=default,
        unit=item.get("unit"),
        label=item.get("label"),
    )


def _parse_assignment(item, where, problems) -> Assignment | None:
    variable = item.get("variable")
    expression = item.get("expression")
    if not isinstance(variable, str) or not variable:
        problems.append(f"{where}: variable is required")
        return None
    if not isinstance(expression, str) or not expression.strip():
        problems.append(f"{where}: expression is required")
        return None
    return Assignment(variable=variable, expression=expression)


def _parse_output(item, where, problems) -> OutputSpec | None:
    name = item.get("name", item.get("variable"))
    if not isinstance(name, str) or not name:
        problems.append(f"{where}: name is required")
        return None
    return OutputSpec(name=name, unit=item.get("unit"))


@dataclass(frozen=True)
class FormulaVersion:
    """
    One immutable, published version of a formula.

    Contract:
        Identified by (formula_key, sequence).  ``version_id`` is the
        persisted row id when the version came from the registry.

    Guarantees:
        - ``sequence`` >= 1.
        - ``content_hash`` is the SHA-256 of the canonical body document.
    """

    formula_key: str
    sequence: int
    body: FormulaBody
    author: str
    created_at: datetime
    content_hash: str = ""
    version_id: UUID | None = None

    def __post_init__(self) -> None:
        if self.sequence < 1:
            raise ValueError(f"Formula version sequence must be >= 1, got {self.sequence}")

    @property
    def input_names(self) -> tuple[str, ...]:
        return self.body.input_names

    @property
    def output_names(self) -> tuple[str, ...]:
        return self.body.output_names
