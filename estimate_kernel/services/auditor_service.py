"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every significant
    state change in the kernel (formula lifecycle, line item computations,
    pricing policy changes).  Provides chain validation for tamper
    detection and per-entity trace queries.

Architecture position:
    Kernel > Services -- imperative shell, called by FormulaRegistry,
    ComputationPipeline and PricingPolicyService.

Invariants enforced:
    - One chain per audited entity.  Appends to different entities lock
      different counter rows, so unrelated formulas and line items never
      serialize on the audit trail.
    - Sequence monotonicity within a chain via SequenceService (never MAX+1).
    - Chain integrity: every event carries a cryptographic link to its
      predecessor in the same chain.
    - Append-only: audit events are never modified or deleted.

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash,
      prev_hash does not match the predecessor's hash, or a chain's seqs
      have a gap.
"""

from dataclasses import dataclass
from datetime import datetime
from itertools import groupby
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from estimate_kernel.domain.clock import Clock, SystemClock
from estimate_kernel.exceptions import AuditChainBrokenError
from estimate_kernel.logging_config import get_logger
from estimate_kernel.models.audit_event import AuditAction, AuditEvent, audit_chain_key
from estimate_kernel.services.sequence_service import SequenceService
from estimate_kernel.utils.hashing import hash_audit_event, hash_payload

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor: str
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events of one entity, in chronological order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Guarantees:
        - Every audit event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
        - Sequence numbers come from the entity's own locked counter
          (``audit_event:<entity_type>:<entity_id>``), which serializes
          appends to that chain and nothing else.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self, chain_key: str) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.chain_key == chain_key)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor: str,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        # Allocating the seq locks the chain's counter row, so reading the
        # chain's last hash afterwards cannot race another appender.
        chain_key = audit_chain_key(entity_type, entity_id)
        seq = self._sequence_service.next_value(
            SequenceService.audit_chain_sequence(chain_key)
        )
        prev_hash = self._get_last_hash(chain_key)

        payload_data = payload or {}
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            chain_key=chain_key,
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor=actor,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "chain_key": chain_key,
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    # Domain-specific recording methods

    def record_formula_created(
        self, definition_id: UUID, formula_key: str, name: str, actor: str
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="FormulaDefinition",
            entity_id=definition_id,
            action=AuditAction.FORMULA_CREATED,
            actor=actor,
            payload={"formula_key": formula_key, "name": name},
        )

    def record_version_published(
        self,
        definition_id: UUID,
        formula_key: str,
        sequence: int,
        content_hash: str,
        actor: str,
    ) -> AuditEvent:
        """Record that a new formula version became current."""
        return self._create_audit_event(
            entity_type="FormulaDefinition",
            entity_id=definition_id,
            action=AuditAction.FORMULA_VERSION_PUBLISHED,
            actor=actor,
            payload={
                "formula_key": formula_key,
                "sequence": sequence,
                "content_hash": content_hash,
            },
        )

    def record_formula_retired(
        self, definition_id: UUID, formula_key: str, actor: str
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="FormulaDefinition",
            entity_id=definition_id,
            action=AuditAction.FORMULA_RETIRED,
            actor=actor,
            payload={"formula_key": formula_key},
        )

    def record_line_item_computed(
        self,
        line_item_id: UUID,
        snapshot_id: UUID,
        formula_key: str,
        formula_sequence: int,
        payload_hash: str,
        actor: str,
    ) -> AuditEvent:
        """Record a new usage snapshot for a line item."""
        return self._create_audit_event(
            entity_type="LineItem",
            entity_id=line_item_id,
            action=AuditAction.LINE_ITEM_COMPUTED,
            actor=actor,
            payload={
                "snapshot_id": str(snapshot_id),
                "formula_key": formula_key,
                "formula_sequence": formula_sequence,
                "snapshot_hash": payload_hash,
            },
        )

    def record_pricing_policy_configured(
        self,
        policy_id: UUID,
        organization_id: str,
        vat_base: str,
        rounding_mode: str,
        decimal_places: int,
        actor: str,
    ) -> AuditEvent:
        return self._create_audit_event(
            entity_type="PricingPolicy",
            entity_id=policy_id,
            action=AuditAction.PRICING_POLICY_CONFIGURED,
            actor=actor,
            payload={
                "organization_id": organization_id,
                "vat_base": vat_base,
                "rounding_mode": rounding_mode,
                "decimal_places": decimal_places,
            },
        )

    # Validation

    def validate_chain(self) -> bool:
        """
        Validate every audit chain.

        Raises:
            AuditChainBrokenError: If any chain fails validation.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.chain_key, AuditEvent.seq)
        ).scalars().all()

        chain_count = 0
        for _, chain in groupby(events, key=lambda event: event.chain_key):
            self._validate_events(list(chain))
            chain_count += 1

        logger.info(
            "audit_chain_valid",
            extra={"chain_count": chain_count, "event_count": len(events)},
        )
        return True

    def validate_entity_chain(self, entity_type: str, entity_id: UUID) -> bool:
        """Validate the chain of a single entity."""
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.chain_key == audit_chain_key(entity_type, entity_id))
            .order_by(AuditEvent.seq)
        ).scalars().all()
        self._validate_events(events)
        return True

    def _validate_events(self, events: list[AuditEvent]) -> None:
        """Check one chain, oldest event first."""
        previous: AuditEvent | None = None
        for event in events:
            expected_key = audit_chain_key(event.entity_type, event.entity_id)
            if event.chain_key != expected_key:
                raise self._broken(event, expected_key, event.chain_key)

            expected_seq = 1 if previous is None else previous.seq + 1
            if event.seq != expected_seq:
                raise self._broken(event, str(expected_seq), str(event.seq))

            expected_prev = None if previous is None else previous.hash
            if event.prev_hash != expected_prev:
                raise self._broken(event, expected_prev or "None", event.prev_hash or "None")

            action_value = (
                event.action.value if isinstance(event.action, AuditAction) else event.action
            )
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=action_value,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                raise self._broken(event, expected_hash, event.hash)

            actual_payload_hash = hash_payload(event.payload or {})
            if actual_payload_hash != event.payload_hash:
                raise self._broken(event, actual_payload_hash, event.payload_hash)

            previous = event

    @staticmethod
    def _broken(event: AuditEvent, expected: str, actual: str) -> AuditChainBrokenError:
        logger.critical(
            "audit_chain_broken",
            extra={"chain_key": event.chain_key, "seq": event.seq},
        )
        return AuditChainBrokenError(str(event.id), expected, actual)

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """Get the complete audit trace for an entity."""
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type)
            .where(AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=AuditAction(event.action),
                occurred_at=event.occurred_at,
                actor=event.actor,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)
