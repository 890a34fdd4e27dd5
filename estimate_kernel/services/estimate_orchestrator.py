"""
Estimate Orchestrator - the kernel's external interface.

The orchestrator ties together:
- FormulaRegistry: versioned formula definitions
- ComputationPipeline: evaluation and usage snapshots
- StalenessService: provenance checks
- PricingPolicyService + aggregate(): estimate totals
- AuditorService: audit trail

Manages its own transaction boundary: every state-changing call commits on
success and rolls back on failure (unless constructed with
``auto_commit=False``, in which case the caller owns the transaction and
each call still runs inside a savepoint so a failure leaves nothing behind).

Concurrency: writes to the same formula key, line item or estimate are
serialized by a KeyedLockRegistry taken before the first statement and
released after commit; different keys run in parallel.  Row locks
(SELECT ... FOR UPDATE) serialize writers across processes.
"""

import time
from collections.abc import Hashable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID
from uuid import uuid4 as _uuid4

from sqlalchemy.orm import Session

from estimate_kernel.db.immutability import register_immutability_listeners
from estimate_kernel.domain.aggregation import EstimateTotals, PricingPolicy, aggregate
from estimate_kernel.domain.clock import Clock, SystemClock
from estimate_kernel.domain.formula import FormulaBody, FormulaValue, FormulaVersion
from estimate_kernel.domain.snapshot import UsageSnapshot
from estimate_kernel.domain.staleness import StalenessReport
from estimate_kernel.exceptions import (
    EstimateKernelError,
    EstimateNotEditableError,
    OrphanedFormulaError,
)
from estimate_kernel.logging_config import LogContext, get_logger
from estimate_kernel.selectors.estimate_selector import EstimateSelector
from estimate_kernel.selectors.snapshot_selector import SnapshotSelector
from estimate_kernel.services.auditor_service import AuditorService
from estimate_kernel.services.computation_pipeline import ComputationPipeline
from estimate_kernel.services.formula_registry import FormulaRegistry
from estimate_kernel.services.formula_seed_service import (
    FormulaSeedService,
    SeedDefinition,
    SeedResult,
)
from estimate_kernel.services.keyed_locks import (
    KeyedLockRegistry,
    default_lock_registry,
    formula_lock_key,
    line_item_lock_key,
)
from estimate_kernel.services.pricing_policy_service import PricingPolicyService
from estimate_kernel.services.staleness_service import StalenessService

logger = get_logger("services.estimate_orchestrator")


def estimate_lock_key(estimate_id) -> tuple[str, str]:
    return ("estimate", str(estimate_id))


@dataclass(frozen=True)
class FormulaUsage:
    """
    Provenance of one computed line item, as the display and PDF layers
    consume it.

    ``orphaned`` is set when the snapshot's formula version can no longer be
    resolved; the version fields are then None.
    """

    line_item_id: UUID
    description: str
    formula_key: str
    formula_sequence: int
    version_author: str | None
    version_created_at: datetime | None
    inputs: Mapping[str, Any]
    outputs: Mapping[str, FormulaValue]
    line_total: Decimal
    computed_at: datetime
    triggered_by: str
    up_to_date: bool | None
    current_sequence: int | None
    orphaned: bool = False


class EstimateOrchestrator:
    """
    Entry point for computing line items, publishing formulas and reading
    totals, staleness and provenance.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auto_commit: bool = True,
        lock_registry: KeyedLockRegistry | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self._auto_commit = auto_commit
        self._locks = lock_registry or default_lock_registry()

        self.auditor = AuditorService(session, self.clock)
        self.pipeline = ComputationPipeline(session, self.clock, self.auditor)
        self.staleness = StalenessService(session, self.clock)
        self.pricing = PricingPolicyService(session, self.clock, self.auditor)
        self.estimates = EstimateSelector(session)
        self.snapshots = SnapshotSelector(session)

        register_immutability_listeners()

    def registry(self, organization_id: str) -> FormulaRegistry:
        return FormulaRegistry(self.session, organization_id, self.clock, self.auditor)

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(
        self,
        name: str,
        lock_key: Hashable | None = None,
        **context: str | None,
    ) -> Iterator[None]:
        """
        Run one orchestrator call: keyed lock, savepoint, commit or rollback.

        The keyed lock is held until after commit so the next waiter on the
        same key reads committed state.
        """
        with LogContext.bind(correlation_id=str(_uuid4()), **context):
            t0 = time.monotonic()
            with self._hold(lock_key):
                try:
                    with self.session.begin_nested():
                        yield
                    if self._auto_commit:
                        self.session.commit()
                except EstimateKernelError as exc:
                    if self._auto_commit:
                        self.session.rollback()
                    logger.warning(
                        f"{name}_failed",
                        extra={
                            "error_code": exc.code,
                            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                        },
                    )
                    raise
                except Exception:
                    if self._auto_commit:
                        self.session.rollback()
                    logger.error(
                        f"{name}_failed",
                        extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                        exc_info=True,
                    )
                    raise

    @contextmanager
    def _hold(self, lock_key: Hashable | None) -> Iterator[None]:
        if lock_key is None:
            yield
            return
        with self._locks.hold(lock_key):
            yield

    @contextmanager
    def _read(self) -> Iterator[None]:
        """Reads end their transaction so no database lock outlives the call."""
        try:
            yield
        finally:
            if self._auto_commit:
                self.session.rollback()

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    def compute_line_item(self, line_item_id: UUID, triggered_by: str) -> UsageSnapshot:
        """
        Compute one line item against its formula's current version.

        Raises:
            NoFormulaAssignedError: Manual line item; nothing to compute.
            EvaluationError: Any evaluator failure (no snapshot is written).
        """
        with self._operation(
            "line_item_computation",
            lock_key=line_item_lock_key(line_item_id),
            line_item_id=str(line_item_id),
            actor=triggered_by,
        ):
            snapshot = self.pipeline.compute_line_item(line_item_id, triggered_by)
        return snapshot

    def recompute_estimate(self, estimate_id: UUID, triggered_by: str) -> list[UsageSnapshot]:
        """
        Recompute every formula-driven line item, in declaration order.

        Atomic: if any line item fails, no snapshot of this call survives.
        """
        with self._operation(
            "estimate_recomputation",
            lock_key=estimate_lock_key(estimate_id),
            estimate_id=str(estimate_id),
            actor=triggered_by,
        ):
            estimate = self.estimates.get_estimate(estimate_id)
            if not estimate.is_editable:
                raise EstimateNotEditableError(str(estimate_id), estimate.status.value)
            snapshots = [
                self.pipeline.compute_line_item(item.line_item_id, triggered_by)
                for item in estimate.formula_line_items
            ]
            logger.info(
                "estimate_recomputed",
                extra={"line_item_count": len(snapshots)},
            )
        return snapshots

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_aggregate_totals(self, estimate_id: UUID) -> EstimateTotals:
        """
        Totals from each line item's current value, stale or not.

        Raises:
            EstimateNotFoundError, PricingPolicyNotFoundError
        """
        with self._read(), LogContext.bind(estimate_id=str(estimate_id)):
            estimate = self.estimates.get_estimate(estimate_id)
            policy = self.pricing.get_policy(estimate.organization_id)
            totals = aggregate(
                self.estimates.line_values(estimate),
                estimate.markup_rate,
                estimate.vat_rate,
                policy,
            )
            logger.info(
                "estimate_totals_computed",
                extra={
                    "subtotal": str(totals.subtotal),
                    "grand_total": str(totals.grand_total),
                    "pending_count": len(totals.pending_line_item_ids),
                },
            )
        return totals

    def get_staleness(self, line_item_id: UUID) -> StalenessReport | None:
        """
        Staleness of a line item's latest snapshot; None if never computed.

        Raises:
            OrphanedFormulaError: The snapshot's formula is unresolvable.
        """
        with self._read():
            return self.staleness.get_staleness(line_item_id)

    def get_snapshot_history(self, line_item_id: UUID) -> list[UsageSnapshot]:
        with self._read():
            self.estimates.get_line_item(line_item_id)
            return self.snapshots.history(line_item_id)

    def get_formula_usage(self, estimate_id: UUID) -> list[FormulaUsage]:
        """Provenance of every computed line item, in declaration order."""
        with self._read():
            estimate = self.estimates.get_estimate(estimate_id)
            registry = self.registry(estimate.organization_id)
            usage = []
            for item in estimate.formula_line_items:
                if item.latest_snapshot_id is None:
                    continue
                snapshot = self.snapshots.get(item.latest_snapshot_id)
                usage.append(self._usage_row(registry, item.description, snapshot))
            return usage

    def _usage_row(
        self, registry: FormulaRegistry, description: str, snapshot: UsageSnapshot
    ) -> FormulaUsage:
        common = dict(
            line_item_id=snapshot.line_item_id,
            description=description,
            formula_key=snapshot.formula_key,
            formula_sequence=snapshot.formula_sequence,
            inputs=snapshot.inputs,
            outputs=snapshot.outputs,
            line_total=snapshot.line_total,
            computed_at=snapshot.computed_at,
            triggered_by=snapshot.triggered_by,
        )
        try:
            report = self.staleness.check_snapshot(snapshot, registry.organization_id)
        except OrphanedFormulaError:
            return FormulaUsage(
                version_author=None,
                version_created_at=None,
                up_to_date=None,
                current_sequence=None,
                orphaned=True,
                **common,
            )
        version = registry.get_version(snapshot.formula_key, snapshot.formula_sequence)
        return FormulaUsage(
            version_author=version.author,
            version_created_at=version.created_at,
            up_to_date=report.up_to_date,
            current_sequence=report.current_sequence,
            **common,
        )

    # ------------------------------------------------------------------
    # Formula administration
    # ------------------------------------------------------------------

    def publish_formula_version(
        self,
        formula_key: str,
        body: Mapping[str, Any] | FormulaBody,
        input_names: Sequence[str] | None,
        output_names: Sequence[str] | None,
        author: str,
        *,
        organization_id: str,
    ) -> FormulaVersion:
        """Publish a new version of an existing formula; it becomes current."""
        with self._operation(
            "formula_publication",
            lock_key=formula_lock_key(organization_id, formula_key),
            formula_key=formula_key,
            actor=author,
        ):
            version = self.registry(organization_id).publish_new_version(
                formula_key, body, input_names, output_names, author
            )
        return version

    def create_formula(
        self,
        formula_key: str,
        name: str,
        body: Mapping[str, Any] | FormulaBody,
        author: str,
        *,
        organization_id: str,
        description: str | None = None,
        category: str | None = None,
        input_names: Sequence[str] | None = None,
        output_names: Sequence[str] | None = None,
    ) -> FormulaVersion:
        """Create a formula with its version 1."""
        with self._operation(
            "formula_creation",
            lock_key=formula_lock_key(organization_id, formula_key),
            formula_key=formula_key,
            actor=author,
        ):
            version = self.registry(organization_id).create_formula(
                formula_key,
                name,
                body,
                author,
                description=description,
                category=category,
                input_names=input_names,
                output_names=output_names,
            )
        return version

    def retire_formula(self, formula_key: str, actor: str, *, organization_id: str) -> None:
        with self._operation(
            "formula_retirement",
            lock_key=formula_lock_key(organization_id, formula_key),
            formula_key=formula_key,
            actor=actor,
        ):
            self.registry(organization_id).retire_formula(formula_key, actor)

    def seed_formulas(
        self,
        seeds: Sequence[SeedDefinition],
        author: str,
        *,
        organization_id: str,
    ) -> SeedResult:
        """Publish a formula catalog idempotently, in one transaction."""
        with self._operation("formula_seeding", actor=author):
            result = FormulaSeedService(
                self.session, organization_id, self.clock, self.auditor
            ).seed(seeds, author)
        return result

    def configure_pricing_policy(
        self, organization_id: str, policy: PricingPolicy, actor: str
    ) -> PricingPolicy:
        with self._operation(
            "pricing_policy_configuration",
            lock_key=("pricing_policy", organization_id),
            actor=actor,
        ):
            recorded = self.pricing.configure(organization_id, policy, actor)
        return recorded
