"""
Module: estimate_kernel.models.pricing_policy
Responsibility: ORM persistence for per-organization pricing policy (VAT base
    and money rounding).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - At most one policy per organization (UNIQUE constraint).
    - Totals are never aggregated with an inferred policy; a missing row is
      a PricingPolicyNotFoundError.
"""

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from estimate_kernel.db.base import TrackedBase


class PricingPolicyModel(TrackedBase):
    """Recorded pricing configuration of one organization."""

    __tablename__ = "pricing_policies"

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_pricing_policy_org"),
    )

    organization_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # "subtotal" or "subtotal_plus_markup"
    vat_base: Mapped[str] = mapped_column(String(40), nullable=False)

    # A decimal module rounding constant, e.g. "ROUND_HALF_UP"
    rounding_mode: Mapped[str] = mapped_column(String(40), nullable=False)

    decimal_places: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    def __repr__(self) -> str:
        return (
            f"<PricingPolicy {self.organization_id} vat_base={self.vat_base} "
            f"{self.rounding_mode}/{self.decimal_places}>"
        )
