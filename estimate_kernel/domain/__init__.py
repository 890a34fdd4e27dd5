"""
Pure domain layer.

This module contains immutable value objects and pure computations
with NO dependencies on:
- ORM (SQLAlchemy sessions)
- Database
- I/O

The evaluator, the staleness comparison and the aggregator live here.
"""

from estimate_kernel.domain.aggregation import (
    EstimateTotals,
    LineValue,
    PricingPolicy,
    VatBase,
    aggregate,
)
from estimate_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from estimate_kernel.domain.evaluator import EvaluationResult, evaluate
from estimate_kernel.domain.expression import parse_expression
from estimate_kernel.domain.formula import (
    ALLOWED_FUNCTIONS,
    Assignment,
    FormulaBody,
    FormulaVersion,
    InputSpec,
    InputType,
    OutputSpec,
)
from estimate_kernel.domain.snapshot import UsageSnapshot
from estimate_kernel.domain.staleness import StalenessReport, check_staleness
from estimate_kernel.domain.validation import validate_formula_body

__all__ = [
    # Time
    "Clock",
    "SystemClock",
    "DeterministicClock",
    # Formulas
    "ALLOWED_FUNCTIONS",
    "InputType",
    "InputSpec",
    "Assignment",
    "OutputSpec",
    "FormulaBody",
    "FormulaVersion",
    "parse_expression",
    "validate_formula_body",
    # Evaluation
    "EvaluationResult",
    "evaluate",
    # Provenance
    "UsageSnapshot",
    "StalenessReport",
    "check_staleness",
    # Totals
    "VatBase",
    "PricingPolicy",
    "LineValue",
    "EstimateTotals",
    "aggregate",
]
