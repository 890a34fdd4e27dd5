"""
Module: estimate_kernel.models.estimate
Responsibility: ORM persistence for estimates and their line items.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - A line item belongs to exactly one estimate.
    - snapshot_count is the per-line counter from which the next snapshot
      seq is allocated under a row lock.
    - latest_snapshot_id always names the most recently created snapshot of
      the line item (or None before the first computation).
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from estimate_kernel.db.base import TrackedBase, UUIDString
from estimate_kernel.db.types import RATE_SCALE, ExactDecimal, require_scale


class EstimateStatus(str, Enum):
    """Lifecycle status of an estimate.

    Contract: only DRAFT estimates accept recomputation.
    """

    DRAFT = "draft"
    FINAL = "final"


class EstimateModel(TrackedBase):
    """An estimate: ordered line items plus markup and VAT percentages."""

    __tablename__ = "estimates"

    __table_args__ = (Index("idx_estimate_org", "organization_id"),)

    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)

    label: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[EstimateStatus] = mapped_column(
        String(20), nullable=False, default=EstimateStatus.DRAFT
    )

    # Percentages: 10 means 10%
    markup_rate: Mapped[Decimal] = mapped_column(
        ExactDecimal(12, RATE_SCALE), nullable=False, default=Decimal(0)
    )

    vat_rate: Mapped[Decimal] = mapped_column(
        ExactDecimal(12, RATE_SCALE), nullable=False, default=Decimal(0)
    )

    line_items: Mapped[list["LineItemModel"]] = relationship(
        back_populates="estimate",
        order_by="LineItemModel.position",
        lazy="selectin",
    )

    @validates("markup_rate", "vat_rate")
    def _check_rate(self, key: str, value: Decimal) -> Decimal:
        return require_scale(key, value, RATE_SCALE)

    @property
    def is_editable(self) -> bool:
        return EstimateStatus(self.status) is EstimateStatus.DRAFT

    def __repr__(self) -> str:
        return f"<Estimate {self.id} {self.label!r} status={self.status}>"


class LineItemModel(TrackedBase):
    """
    One line of an estimate.

    Formula-driven when ``formula_key`` is set; otherwise its value is
    ``manual_amount``.  ``inputs`` holds encoded input values (numbers as
    strings, see domain.snapshot.encode_values).
    """

    __tablename__ = "line_items"

    __table_args__ = (
        Index("idx_line_item_estimate", "estimate_id", "position"),
        Index("idx_line_item_formula", "formula_key"),
    )

    estimate_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("estimates.id"),
        nullable=False,
    )

    # Declaration order within the estimate
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    description: Mapped[str] = mapped_column(String(4000), nullable=False, default="")

    category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    formula_key: Mapped[str | None] = mapped_column(String(100), nullable=True)

    inputs: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Which formula output is the line total (optional)
    output_variable: Mapped[str | None] = mapped_column(String(100), nullable=True)

    manual_amount: Mapped[Decimal | None] = mapped_column(
        ExactDecimal(38, 9), nullable=True
    )

    latest_snapshot_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    snapshot_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    estimate: Mapped["EstimateModel"] = relationship(back_populates="line_items")

    @property
    def is_formula_driven(self) -> bool:
        return bool(self.formula_key)

    def __repr__(self) -> str:
        return f"<LineItem {self.id} formula={self.formula_key}>"
