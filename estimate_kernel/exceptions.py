"""
Typed Exception Hierarchy for the Estimate Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure path in the kernel identifies exactly one error kind so the
caller can render a precise message.  Callers catch by type, never by
message text:

    try:
        snapshot = orchestrator.compute_line_item(line_item_id, "user-42")
    except NoFormulaAssignedError:
        pass  # manual line item, nothing to compute
    except MissingInputError as e:
        api_response(code=e.code, missing=e.variables)

Each exception has:
  1. A ``code`` class attribute (machine-readable, API-safe)
  2. Structured attributes carrying the failure context

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    EstimateKernelError (base)
    |
    +-- NotFoundError
    |   +-- FormulaNotFoundError
    |   +-- FormulaVersionNotFoundError
    |   +-- LineItemNotFoundError
    |   +-- EstimateNotFoundError
    |   +-- PricingPolicyNotFoundError
    |
    +-- FormulaError
    |   +-- FormulaAlreadyExistsError
    |   +-- FormulaRetiredError
    |   +-- FormulaValidationError
    |
    +-- EvaluationError
    |   +-- MissingInputError
    |   +-- InvalidInputError
    |   +-- DivisionByZeroError
    |   +-- CyclicReferenceError
    |   +-- IncompleteOutputError
    |   +-- UndefinedVariableError
    |   +-- ExpressionTypeError
    |   +-- ExpressionSyntaxError
    |
    +-- ComputationError
    |   +-- NoFormulaAssignedError
    |   +-- OutputSelectionError
    |   +-- EstimateNotEditableError
    |
    +-- ProvenanceError
    |   +-- OrphanedFormulaError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
        +-- AuditChainBrokenError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. EVALUATION ERRORS ARE NEVER RETRIED.
   They indicate a formula-authoring defect or stale input data, not a
   transient fault.  Surface them to the user.

2. NoFormulaAssignedError IS NOT A FAILURE.
   The line item is manual; treat it as "no computation applicable".

3. OrphanedFormulaError IS A DATA-INTEGRITY WARNING.
   Formula versions are never purged, so a snapshot that cannot be
   resolved means something outside the kernel removed history.

===============================================================================
"""


class EstimateKernelError(Exception):
    """
    Base exception for all estimate kernel errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "ESTIMATE_KERNEL_ERROR"


# Lookup failures


class NotFoundError(EstimateKernelError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"


class FormulaNotFoundError(NotFoundError):
    """Formula key is unknown or has no versions."""

    code: str = "FORMULA_NOT_FOUND"

    def __init__(self, formula_key: str):
        self.formula_key = formula_key
        super().__init__(f"Formula not found: {formula_key}")


class FormulaVersionNotFoundError(NotFoundError):
    """The exact sequence number was never created for this formula."""

    code: str = "FORMULA_VERSION_NOT_FOUND"

    def __init__(self, formula_key: str, sequence: int):
        self.formula_key = formula_key
        self.sequence = sequence
        super().__init__(f"Formula {formula_key} has no version {sequence}")


class LineItemNotFoundError(NotFoundError):
    """Line item with given ID was not found."""

    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item not found: {line_item_id}")


class EstimateNotFoundError(NotFoundError):
    """Estimate with given ID was not found."""

    code: str = "ESTIMATE_NOT_FOUND"

    def __init__(self, estimate_id: str):
        self.estimate_id = estimate_id
        super().__init__(f"Estimate not found: {estimate_id}")


class PricingPolicyNotFoundError(NotFoundError):
    """
    No pricing policy is recorded for the organization.

    Rounding mode and VAT base are never inferred; an organization
    must have an explicit policy before totals can be aggregated.
    """

    code: str = "PRICING_POLICY_NOT_FOUND"

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(
            f"No pricing policy configured for organization {organization_id}"
        )


# Registry errors


class FormulaError(EstimateKernelError):
    """Base exception for formula registry errors."""

    code: str = "FORMULA_ERROR"


class FormulaAlreadyExistsError(FormulaError):
    """A formula with this key already exists in the organization."""

    code: str = "FORMULA_ALREADY_EXISTS"

    def __init__(self, formula_key: str):
        self.formula_key = formula_key
        super().__init__(f"Formula already exists: {formula_key}")


class FormulaRetiredError(FormulaError):
    """
    Formula has been soft-retired.

    Its versions stay resolvable for provenance, but it cannot be
    published to or used for new computations.
    """

    code: str = "FORMULA_RETIRED"

    def __init__(self, formula_key: str):
        self.formula_key = formula_key
        super().__init__(f"Formula {formula_key} is retired")


class FormulaValidationError(FormulaError):
    """Formula body failed structural validation at publish time."""

    code: str = "FORMULA_VALIDATION_ERROR"

    def __init__(self, formula_key: str, problems: list[str]):
        self.formula_key = formula_key
        self.problems = problems
        super().__init__(
            f"Formula {formula_key} is invalid: {'; '.join(problems)}"
        )


# Evaluation errors


class EvaluationError(EstimateKernelError):
    """
    Base exception for evaluator failures.

    Evaluation errors are deterministic: the same version and inputs
    always fail the same way.  They are never retried.
    """

    code: str = "FORMULA_EVALUATION_ERROR"


class MissingInputError(EvaluationError):
    """One or more declared inputs were not supplied and have no default."""

    code: str = "FORMULA_MISSING_INPUT"

    def __init__(self, variables: list[str]):
        self.variables = variables
        super().__init__(f"Missing required input(s): {', '.join(variables)}")


class InvalidInputError(EvaluationError):
    """Supplied input value does not satisfy its declared type or bounds."""

    code: str = "FORMULA_INVALID_INPUT"

    def __init__(self, variable: str, reason: str):
        self.variable = variable
        self.reason = reason
        super().__init__(f"Invalid input {variable}: {reason}")


class DivisionByZeroError(EvaluationError):
    """An expression divided by zero."""

    code: str = "FORMULA_DIVISION_BY_ZERO"

    def __init__(self, variable: str):
        self.variable = variable
        super().__init__(f"Division by zero while computing {variable}")


class CyclicReferenceError(EvaluationError):
    """A variable depends on itself, directly or transitively."""

    code: str = "FORMULA_CYCLIC_REFERENCE"

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic reference: {' -> '.join(cycle)}")


class IncompleteOutputError(EvaluationError):
    """One or more declared outputs were not produced by the formula."""

    code: str = "FORMULA_INCOMPLETE_OUTPUT"

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Declared output(s) not produced: {', '.join(missing)}")


class UndefinedVariableError(EvaluationError):
    """An expression references a name that is not in scope."""

    code: str = "FORMULA_UNDEFINED_VARIABLE"

    def __init__(self, variable: str, reference: str):
        self.variable = variable
        self.reference = reference
        super().__init__(
            f"Expression for {variable} references undefined variable {reference}"
        )


class ExpressionTypeError(EvaluationError):
    """An operator or function was applied to a value of the wrong type."""

    code: str = "FORMULA_TYPE_ERROR"

    def __init__(self, variable: str, reason: str):
        self.variable = variable
        self.reason = reason
        super().__init__(f"Type error while computing {variable}: {reason}")


class ExpressionSyntaxError(EvaluationError):
    """An expression could not be parsed or uses a disallowed construct."""

    code: str = "FORMULA_INVALID_EXPRESSION"

    def __init__(self, variable: str, expression: str, reason: str):
        self.variable = variable
        self.expression = expression
        self.reason = reason
        super().__init__(
            f"Invalid expression for {variable} ({expression!r}): {reason}"
        )


# Computation pipeline errors


class ComputationError(EstimateKernelError):
    """Base exception for line item computation errors."""

    code: str = "COMPUTATION_ERROR"


class NoFormulaAssignedError(ComputationError):
    """
    Line item is not formula-driven.

    Not a failure of the pipeline: callers treat this as
    "manual value, no computation applicable".
    """

    code: str = "NO_FORMULA_ASSIGNED"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item {line_item_id} has no formula assigned")


class OutputSelectionError(ComputationError):
    """The line total output could not be determined or is not numeric."""

    code: str = "FORMULA_OUTPUT_SELECTION_REQUIRED"

    def __init__(self, formula_key: str, reason: str):
        self.formula_key = formula_key
        self.reason = reason
        super().__init__(f"Cannot select line total for {formula_key}: {reason}")


class EstimateNotEditableError(ComputationError):
    """Estimate is not in draft status."""

    code: str = "ESTIMATE_NOT_EDITABLE"

    def __init__(self, estimate_id: str, status: str):
        self.estimate_id = estimate_id
        self.status = status
        super().__init__(
            f"Estimate {estimate_id} is {status}; only draft estimates can be recomputed"
        )


# Provenance errors


class ProvenanceError(EstimateKernelError):
    """Base exception for provenance integrity errors."""

    code: str = "PROVENANCE_ERROR"


class OrphanedFormulaError(ProvenanceError):
    """
    Snapshot references a formula the registry can no longer resolve.

    Surfaced as a data-integrity warning, never treated as stale.
    """

    code: str = "ORPHANED_FORMULA"

    def __init__(self, formula_key: str, sequence: int):
        self.formula_key = formula_key
        self.sequence = sequence
        super().__init__(
            f"Snapshot references unresolvable formula {formula_key} v{sequence}"
        )


# Immutability errors


class ImmutabilityError(EstimateKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    FormulaVersion, UsageSnapshot and AuditEvent rows are immutable
    from creation.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit errors


class AuditError(EstimateKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )
