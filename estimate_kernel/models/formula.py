"""
Module: estimate_kernel.models.formula
Responsibility: ORM persistence for formula definitions and their append-only
    version history.
Architecture position: Kernel > Models.  May import from db/ only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - Formula key is unique within an organization (UNIQUE constraint).
    - (definition_id, sequence) is unique: a sequence number is never reused.
    - latest_sequence is the locked counter from which the next version
      sequence is allocated (SELECT ... FOR UPDATE); never MAX(sequence)+1.
    - FormulaVersion rows are immutable from creation and FormulaDefinition
      rows are never deleted (ORM listeners in db/immutability.py).

Failure modes:
    - IntegrityError on duplicate (organization_id, key) or
      (definition_id, sequence).
    - ImmutabilityViolationError on UPDATE/DELETE of a version.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from estimate_kernel.db.base import Base, TrackedBase, UUIDString


class FormulaDefinitionModel(TrackedBase):
    """
    Stable identity of a formula within an organization.

    Contract:
        Owns the ordered version history.  The current version is the one
        whose sequence equals ``latest_sequence``.
    """

    __tablename__ = "formula_definitions"

    __table_args__ = (
        UniqueConstraint("organization_id", "key", name="uq_formula_org_key"),
        Index("idx_formula_org", "organization_id"),
    )

    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)

    key: Mapped[str] = mapped_column(String(100), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    # masonry_works, concrete_works, painting_works, labor, ...
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Locked counter; 0 until version 1 is published
    latest_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    is_retired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    retired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    retired_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<FormulaDefinition {self.organization_id}:{self.key} v{self.latest_sequence}>"


class FormulaVersionModel(Base):
    """
    One published, immutable version of a formula.

    ``body`` holds the structured document (inputs, assignments, outputs);
    ``content_hash`` is the SHA-256 of its canonical JSON.
    """

    __tablename__ = "formula_versions"

    __table_args__ = (
        UniqueConstraint("definition_id", "sequence", name="uq_formula_version_seq"),
        Index("idx_formula_version_key", "organization_id", "formula_key", "sequence"),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("formula_definitions.id"),
        nullable=False,
    )

    # Denormalized so snapshots and staleness checks resolve without a join
    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)

    formula_key: Mapped[str] = mapped_column(String(100), nullable=False)

    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    body: Mapped[dict] = mapped_column(JSON, nullable=False)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    author: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    definition: Mapped["FormulaDefinitionModel"] = relationship()

    def __repr__(self) -> str:
        return f"<FormulaVersion {self.formula_key} v{self.sequence}>"
