"""
Module: estimate_kernel.selectors.estimate_selector
Responsibility: Read-only views of estimates and their line items, and the
    per-line values the aggregator consumes.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - A line item's value is its latest snapshot's line total when formula
      driven, otherwise its manual amount.
    - A formula-driven line item without a snapshot contributes zero and is
      flagged pending.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from estimate_kernel.domain.aggregation import LineValue
from estimate_kernel.exceptions import EstimateNotFoundError, LineItemNotFoundError
from estimate_kernel.models.estimate import EstimateModel, EstimateStatus, LineItemModel
from estimate_kernel.models.usage_snapshot import UsageSnapshotModel
from estimate_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LineItemView:
    line_item_id: UUID
    estimate_id: UUID
    position: int
    description: str
    category: str | None
    formula_key: str | None
    inputs: dict[str, Any]
    output_variable: str | None
    manual_amount: Decimal | None
    latest_snapshot_id: UUID | None

    @property
    def is_formula_driven(self) -> bool:
        return bool(self.formula_key)


@dataclass(frozen=True)
class EstimateView:
    estimate_id: UUID
    organization_id: str
    label: str
    status: EstimateStatus
    markup_rate: Decimal
    vat_rate: Decimal
    line_items: tuple[LineItemView, ...]

    @property
    def is_editable(self) -> bool:
        return self.status is EstimateStatus.DRAFT

    @property
    def formula_line_items(self) -> tuple[LineItemView, ...]:
        """Formula-driven line items in declaration order."""
        return tuple(item for item in self.line_items if item.is_formula_driven)


def _line_item_view(model: LineItemModel) -> LineItemView:
    return LineItemView(
        line_item_id=model.id,
        estimate_id=model.estimate_id,
        position=model.position,
        description=model.description,
        category=model.category,
        formula_key=model.formula_key,
        inputs=dict(model.inputs or {}),
        output_variable=model.output_variable,
        manual_amount=model.manual_amount,
        latest_snapshot_id=model.latest_snapshot_id,
    )


class EstimateSelector(BaseSelector):
    """Selector for estimates and line items."""

    def get_estimate(self, estimate_id: UUID) -> EstimateView:
        """
        Raises:
            EstimateNotFoundError: Unknown id.
        """
        model = self.session.get(EstimateModel, estimate_id)
        if model is None:
            raise EstimateNotFoundError(str(estimate_id))
        items = self.session.execute(
            select(LineItemModel)
            .where(LineItemModel.estimate_id == estimate_id)
            .order_by(LineItemModel.position, LineItemModel.created_at)
        ).scalars().all()
        return EstimateView(
            estimate_id=model.id,
            organization_id=model.organization_id,
            label=model.label,
            status=EstimateStatus(model.status),
            markup_rate=model.markup_rate,
            vat_rate=model.vat_rate,
            line_items=tuple(_line_item_view(item) for item in items),
        )

    def get_line_item(self, line_item_id: UUID) -> LineItemView:
        model = self.session.get(LineItemModel, line_item_id)
        if model is None:
            raise LineItemNotFoundError(str(line_item_id))
        return _line_item_view(model)

    def organization_of_line_item(self, line_item_id: UUID) -> str:
        organization_id = self.session.execute(
            select(EstimateModel.organization_id)
            .join(LineItemModel, LineItemModel.estimate_id == EstimateModel.id)
            .where(LineItemModel.id == line_item_id)
        ).scalar_one_or_none()
        if organization_id is None:
            raise LineItemNotFoundError(str(line_item_id))
        return organization_id

    def line_values(self, estimate: EstimateView) -> list[LineValue]:
        """Current value of every line item of an estimate."""
        snapshot_ids = [
            item.latest_snapshot_id
            for item in estimate.line_items
            if item.is_formula_driven and item.latest_snapshot_id is not None
        ]
        totals: dict[UUID, Decimal] = {}
        if snapshot_ids:
            rows = self.session.execute(
                select(UsageSnapshotModel.id, UsageSnapshotModel.line_total).where(
                    UsageSnapshotModel.id.in_(snapshot_ids)
                )
            ).all()
            totals = {row.id: row.line_total for row in rows}

        values = []
        for item in estimate.line_items:
            if item.is_formula_driven:
                pending = item.latest_snapshot_id is None
                amount = Decimal(0) if pending else totals[item.latest_snapshot_id]
            else:
                pending = False
                amount = item.manual_amount if item.manual_amount is not None else Decimal(0)
            values.append(
                LineValue(
                    line_item_id=item.line_item_id,
                    amount=amount,
                    category=item.category,
                    formula_driven=item.is_formula_driven,
                    pending=pending,
                )
            )
        return values
