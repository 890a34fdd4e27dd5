"""
Module: estimate_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners).
    - One hash chain per audited entity, named by chain_key
      ("<entity_type>:<entity_id>").  hash = H(entity_type | entity_id |
      action | payload_hash | prev_hash).  Validated by AuditorService.
    - seq counts events within the chain from 1, allocated by
      SequenceService from the chain's own counter row.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Minimum coverage (each action type generates at least one AuditEvent):
    - FORMULA_CREATED, FORMULA_VERSION_PUBLISHED, FORMULA_RETIRED
    - LINE_ITEM_COMPUTED
    - PRICING_POLICY_CONFIGURED
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from estimate_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Formula lifecycle
    FORMULA_CREATED = "formula_created"
    FORMULA_VERSION_PUBLISHED = "formula_version_published"
    FORMULA_RETIRED = "formula_retired"

    # Computation
    LINE_ITEM_COMPUTED = "line_item_computed"

    # Configuration
    PRICING_POLICY_CONFIGURED = "pricing_policy_configured"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - (chain_key, seq) is unique and seq is gapless within a chain.
        - prev_hash is None only for the first event of a chain.

    Non-goals:
        - This model does NOT enforce hash correctness at INSERT time;
          that is the responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        UniqueConstraint("chain_key", "seq", name="uq_audit_chain_seq"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
    )

    # audit_chain_key(entity_type, entity_id)
    chain_key: Mapped[str] = mapped_column(String(100), nullable=False)

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # e.g. "FormulaDefinition", "LineItem", "PricingPolicy"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    actor: Mapped[str] = mapped_column(String(255), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # hash = H(entity_type + entity_id + action + payload_hash + prev_hash)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.chain_key} #{self.seq}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None


def audit_chain_key(entity_type: str, entity_id: UUID | str) -> str:
    """Name of the hash chain holding one entity's audit events."""
    return f"{entity_type}:{entity_id}"
