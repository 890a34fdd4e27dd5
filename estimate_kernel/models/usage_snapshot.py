"""
Module: estimate_kernel.models.usage_snapshot
Responsibility: ORM persistence for usage snapshots -- the provenance record
    of every line item computation.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Fully immutable from creation (ORM listeners in db/immutability.py).
    - (line_item_id, seq) is unique; seq orders snapshots of one line item.
    - formula_version_id references a FormulaVersion row, which is itself
      never deleted, so the version reference resolves forever.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE.
    - IntegrityError on duplicate (line_item_id, seq).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from estimate_kernel.db.base import Base, UUIDString
from estimate_kernel.db.types import ExactDecimal


class UsageSnapshotModel(Base):
    """One computation of one line item, frozen."""

    __tablename__ = "usage_snapshots"

    __table_args__ = (
        UniqueConstraint("line_item_id", "seq", name="uq_snapshot_line_seq"),
        Index("idx_snapshot_formula", "organization_id", "formula_key", "formula_sequence"),
    )

    line_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("line_items.id"),
        nullable=False,
    )

    # Creation order within the line item
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)

    formula_version_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("formula_versions.id"),
        nullable=False,
    )

    formula_key: Mapped[str] = mapped_column(String(100), nullable=False)

    formula_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Values as supplied on the line item
    inputs: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Inputs after defaults and coercion
    resolved_inputs: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Every assignment result
    computed: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Declared outputs only
    outputs: Mapped[dict] = mapped_column(JSON, nullable=False)

    line_total_variable: Mapped[str] = mapped_column(String(100), nullable=False)

    line_total: Mapped[Decimal] = mapped_column(ExactDecimal(38, 9), nullable=False)

    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<UsageSnapshot line={self.line_item_id} seq={self.seq} "
            f"{self.formula_key} v{self.formula_sequence}>"
        )
