"""
UsageSnapshot -- Immutable provenance record of one line item computation.

Responsibility:
    Captures exactly which formula version was evaluated, with which
    inputs, producing which outputs, when, and at whose request.  Also
    provides the JSON value codec used to persist inputs and outputs
    without passing through float.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - The version reference is exact: (formula_key, formula_sequence).
    - inputs, resolved_inputs and outputs are read-only copies; mutating
      the caller's dict after construction does not change the snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

from estimate_kernel.domain.formula import FormulaValue


def encode_value(value: Any) -> Any:
    """Encode one formula value for JSON storage (numbers become strings)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    return value


def decode_value(value: Any) -> Any:
    """Inverse of encode_value; unparsable text is returned unchanged."""
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            return value
    return value


def encode_values(values: Mapping[str, Any]) -> dict[str, Any]:
    return {name: encode_value(value) for name, value in values.items()}


def decode_values(values: Mapping[str, Any] | None) -> dict[str, Any]:
    return {name: decode_value(value) for name, value in (values or {}).items()}


def _frozen(values: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(values))


@dataclass(frozen=True)
class UsageSnapshot:
    """
    One computation of one line item.

    Contract:
        Created only by the computation pipeline after a successful
        evaluation.  Never modified; a recomputation creates a new
        snapshot with a higher ``seq``.

    Guarantees:
        - ``line_total`` equals ``outputs[line_total_variable]``.
        - ``payload_hash`` covers the version reference, inputs and outputs.
    """

    line_item_id: UUID
    formula_key: str
    formula_sequence: int
    inputs: Mapping[str, Any]
    resolved_inputs: Mapping[str, FormulaValue]
    outputs: Mapping[str, FormulaValue]
    line_total_variable: str
    line_total: Decimal
    computed_at: datetime
    triggered_by: str
    seq: int
    payload_hash: str
    snapshot_id: UUID | None = None
    formula_version_id: UUID | None = None
    computed: Mapping[str, FormulaValue] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", _frozen(self.inputs))
        object.__setattr__(self, "resolved_inputs", _frozen(self.resolved_inputs))
        object.__setattr__(self, "outputs", _frozen(self.outputs))
        object.__setattr__(self, "computed", _frozen(self.computed))

    @classmethod
    def from_model(cls, model) -> UsageSnapshot:
        """Boundary converter from a UsageSnapshotModel row."""
        return cls(
            snapshot_id=model.id,
            line_item_id=model.line_item_id,
            formula_key=model.formula_key,
            formula_sequence=model.formula_sequence,
            formula_version_id=model.formula_version_id,
            inputs=decode_values(model.inputs),
            resolved_inputs=decode_values(model.resolved_inputs),
            outputs=decode_values(model.outputs),
            computed=decode_values(model.computed),
            line_total_variable=model.line_total_variable,
            line_total=model.line_total,
            computed_at=model.computed_at,
            triggered_by=model.triggered_by,
            seq=model.seq,
            payload_hash=model.payload_hash,
        )
