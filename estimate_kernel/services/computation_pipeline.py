"""
ComputationPipeline -- evaluate a line item and record its usage snapshot.

Responsibility:
    Resolves the current version of the line item's formula, evaluates it
    against the line item's inputs, selects the line total, and persists an
    immutable UsageSnapshot that becomes the line item's latest.

Architecture position:
    Kernel > Services -- imperative shell.  The evaluator and snapshot value
    objects are the pure core; this class is the only computation path that
    performs I/O.

Invariants enforced:
    - A snapshot records the version it actually evaluated, never a later
      one published meanwhile.
    - Snapshots of one line item get seq 1, 2, 3, ... from the line item's
      ``snapshot_count`` read under SELECT ... FOR UPDATE.
    - Prior snapshots are kept; the line item's latest pointer moves.
    - Any evaluation failure raises before anything is written, so the
      previous snapshot stays the latest.

Failure modes:
    - LineItemNotFoundError
    - EstimateNotEditableError: estimate is not a draft.
    - NoFormulaAssignedError: manual line item.
    - FormulaNotFoundError / FormulaRetiredError
    - Any EvaluationError subclass from the evaluator.
    - OutputSelectionError: line total cannot be determined or is not numeric.

Audit relevance:
    Every snapshot is accompanied by a LINE_ITEM_COMPUTED audit event.
"""

from collections.abc import Mapping
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from estimate_kernel.domain.clock import Clock
from estimate_kernel.domain.evaluator import evaluate
from estimate_kernel.domain.formula import FormulaValue
from estimate_kernel.domain.snapshot import UsageSnapshot, decode_values, encode_values
from estimate_kernel.exceptions import (
    EstimateNotEditableError,
    FormulaRetiredError,
    LineItemNotFoundError,
    NoFormulaAssignedError,
    OutputSelectionError,
)
from estimate_kernel.logging_config import LogContext, get_logger
from estimate_kernel.models.estimate import LineItemModel
from estimate_kernel.models.usage_snapshot import UsageSnapshotModel
from estimate_kernel.services.auditor_service import AuditorService
from estimate_kernel.services.base import BaseService
from estimate_kernel.services.formula_registry import FormulaRegistry
from estimate_kernel.utils.hashing import hash_snapshot

logger = get_logger("services.computation_pipeline")

LINE_TOTAL_OUTPUT = "line_total"


def select_line_total(
    formula_key: str,
    outputs: Mapping[str, FormulaValue],
    output_variable: str | None = None,
) -> tuple[str, Decimal]:
    """
    Pick the output that is the line's monetary value.

    The line item's ``output_variable`` wins; otherwise the sole declared
    output; otherwise an output named ``line_total``.

    Raises:
        OutputSelectionError: No unambiguous choice, or the value is not a
            number.
    """
    if output_variable:
        if output_variable not in outputs:
            raise OutputSelectionError(
                formula_key, f"{output_variable} is not a declared output"
            )
        name = output_variable
    elif len(outputs) == 1:
        name = next(iter(outputs))
    elif LINE_TOTAL_OUTPUT in outputs:
        name = LINE_TOTAL_OUTPUT
    else:
        raise OutputSelectionError(
            formula_key,
            f"{len(outputs)} outputs declared; set output_variable on the line item",
        )

    value = outputs[name]
    if isinstance(value, bool) or not isinstance(value, Decimal):
        raise OutputSelectionError(formula_key, f"output {name} is not numeric")
    return name, value


class ComputationPipeline(BaseService):
    """
    Line item computation.

    Non-goals:
        - Does NOT commit; EstimateOrchestrator owns the transaction.
        - Does NOT take the in-process keyed lock; the orchestrator does.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)

    def registry_for(self, organization_id: str) -> FormulaRegistry:
        return FormulaRegistry(self.session, organization_id, self.clock, self._auditor)

    def lock_line_item(self, line_item_id: UUID) -> LineItemModel:
        """Load a line item under SELECT ... FOR UPDATE."""
        line_item = self.session.execute(
            select(LineItemModel)
            .where(LineItemModel.id == line_item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if line_item is None:
            raise LineItemNotFoundError(str(line_item_id))
        return line_item

    def compute_line_item(self, line_item_id: UUID, triggered_by: str) -> UsageSnapshot:
        """
        Evaluate a line item against its formula's current version.

        Args:
            line_item_id: The line item to compute.
            triggered_by: Identity recorded on the snapshot.

        Returns:
            The new UsageSnapshot, now the line item's latest.
        """
        line_item = self.lock_line_item(line_item_id)
        estimate = line_item.estimate
        if not estimate.is_editable:
            raise EstimateNotEditableError(str(estimate.id), str(estimate.status))
        if not line_item.is_formula_driven:
            raise NoFormulaAssignedError(str(line_item.id))

        formula_key = line_item.formula_key
        registry = self.registry_for(estimate.organization_id)
        if registry.is_retired(formula_key):
            raise FormulaRetiredError(formula_key)
        version = registry.get_current_version(formula_key)

        with LogContext.bind(line_item_id=str(line_item.id), formula_key=formula_key):
            raw_inputs = dict(line_item.inputs or {})
            result = evaluate(version, decode_values(raw_inputs))
            total_variable, line_total = select_line_total(
                formula_key, result.outputs, line_item.output_variable
            )

            seq = line_item.snapshot_count + 1
            stored_outputs = encode_values(result.outputs)
            payload_hash = hash_snapshot(
                formula_key, version.sequence, raw_inputs, stored_outputs
            )

            model = UsageSnapshotModel(
                line_item_id=line_item.id,
                seq=seq,
                organization_id=estimate.organization_id,
                formula_version_id=version.version_id,
                formula_key=formula_key,
                formula_sequence=version.sequence,
                inputs=raw_inputs,
                resolved_inputs=encode_values(result.resolved_inputs),
                computed=encode_values(result.computed),
                outputs=stored_outputs,
                line_total_variable=total_variable,
                line_total=line_total,
                computed_at=self.clock.now(),
                triggered_by=triggered_by,
                payload_hash=payload_hash,
            )
            self.session.add(model)
            self.session.flush()

            line_item.snapshot_count = seq
            line_item.latest_snapshot_id = model.id
            line_item.updated_by = triggered_by
            self.session.flush()

            self._auditor.record_line_item_computed(
                line_item.id,
                model.id,
                formula_key,
                version.sequence,
                payload_hash,
                triggered_by,
            )
            logger.info(
                "line_item_computed",
                extra={
                    "formula_sequence": version.sequence,
                    "snapshot_seq": seq,
                    "line_total": str(line_total),
                    "triggered_by": triggered_by,
                },
            )
        return UsageSnapshot.from_model(model)
