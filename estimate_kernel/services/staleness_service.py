"""
StalenessService -- resolve a snapshot's version reference against the registry.

Pure read: never writes, never recomputes.  The comparison itself is
``domain.staleness.check_staleness``; this service supplies the current
sequence and detects orphaned references.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from estimate_kernel.domain.clock import Clock
from estimate_kernel.domain.snapshot import UsageSnapshot
from estimate_kernel.domain.staleness import StalenessReport, check_staleness
from estimate_kernel.exceptions import (
    FormulaNotFoundError,
    FormulaVersionNotFoundError,
    LineItemNotFoundError,
    OrphanedFormulaError,
)
from estimate_kernel.logging_config import get_logger
from estimate_kernel.models.estimate import LineItemModel
from estimate_kernel.models.usage_snapshot import UsageSnapshotModel
from estimate_kernel.services.base import BaseService
from estimate_kernel.services.formula_registry import FormulaRegistry

logger = get_logger("services.staleness")


class StalenessService(BaseService):
    """Staleness facts for stored snapshots."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    def check_snapshot(self, snapshot: UsageSnapshot, organization_id: str) -> StalenessReport:
        """
        Compare a snapshot with its formula's current version.

        Raises:
            OrphanedFormulaError: The formula key or the referenced version
                can no longer be resolved.
        """
        registry = FormulaRegistry(self.session, organization_id, self.clock)
        try:
            registry.get_version(snapshot.formula_key, snapshot.formula_sequence)
            current = registry.get_current_version(snapshot.formula_key)
        except (FormulaNotFoundError, FormulaVersionNotFoundError):
            logger.warning(
                "orphaned_formula_reference",
                extra={
                    "formula_key": snapshot.formula_key,
                    "formula_sequence": snapshot.formula_sequence,
                    "snapshot_id": str(snapshot.snapshot_id),
                },
            )
            raise OrphanedFormulaError(
                snapshot.formula_key, snapshot.formula_sequence
            ) from None
        return check_staleness(snapshot, current.sequence)

    def get_staleness(self, line_item_id: UUID) -> StalenessReport | None:
        """
        Staleness of a line item's latest snapshot.

        Returns:
            None when the line item has never been computed.
        """
        line_item = self.session.get(LineItemModel, line_item_id)
        if line_item is None:
            raise LineItemNotFoundError(str(line_item_id))
        if line_item.latest_snapshot_id is None:
            return None
        model = self.session.get(UsageSnapshotModel, line_item.latest_snapshot_id)
        snapshot = UsageSnapshot.from_model(model)
        return self.check_snapshot(snapshot, model.organization_id)

    def stale_line_items(self, estimate_id: UUID) -> list[UUID]:
        """Ids of computed line items of an estimate whose snapshot is outdated."""
        rows = self.session.execute(
            select(LineItemModel.id)
            .where(LineItemModel.estimate_id == estimate_id)
            .where(LineItemModel.latest_snapshot_id.is_not(None))
            .order_by(LineItemModel.position)
        ).scalars().all()
        stale = []
        for line_item_id in rows:
            report = self.get_staleness(line_item_id)
            if report is not None and not report.up_to_date:
                stale.append(line_item_id)
        return stale
