"""
Module: estimate_kernel.selectors.snapshot_selector
Responsibility: Read-only access to usage snapshots (provenance history).
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import func, select

from estimate_kernel.domain.snapshot import UsageSnapshot
from estimate_kernel.models.usage_snapshot import UsageSnapshotModel
from estimate_kernel.selectors.base import BaseSelector


class SnapshotSelector(BaseSelector):
    """Selector for usage snapshots."""

    def get(self, snapshot_id: UUID) -> UsageSnapshot | None:
        model = self.session.get(UsageSnapshotModel, snapshot_id)
        return UsageSnapshot.from_model(model) if model is not None else None

    def history(self, line_item_id: UUID) -> list[UsageSnapshot]:
        """Every snapshot of a line item, oldest first."""
        models = self.session.execute(
            select(UsageSnapshotModel)
            .where(UsageSnapshotModel.line_item_id == line_item_id)
            .order_by(UsageSnapshotModel.seq)
        ).scalars().all()
        return [UsageSnapshot.from_model(model) for model in models]

    def count_for_version(
        self, organization_id: str, formula_key: str, formula_sequence: int
    ) -> int:
        """How many snapshots were computed with one exact formula version."""
        return self.session.execute(
            select(func.count())
            .select_from(UsageSnapshotModel)
            .where(
                UsageSnapshotModel.organization_id == organization_id,
                UsageSnapshotModel.formula_key == formula_key,
                UsageSnapshotModel.formula_sequence == formula_sequence,
            )
        ).scalar_one()
