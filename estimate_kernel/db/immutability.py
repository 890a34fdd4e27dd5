"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Provenance is only meaningful if the records it points at cannot change.
A usage snapshot says "this line item was computed with formula X version N
from these inputs"; if version N or the snapshot itself could be edited, the
claim would be worthless.  Corrections are made by appending (a new formula
version, a new snapshot), never by rewriting.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events:

    session.flush()
         |
         v
    [before_update event] --> _check_*_update() --> ImmutabilityViolationError
         |                                                    ^
         v                                                    |
    [before_delete event] --> _check_*_delete() --------------+
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | When Immutable          | Why
------------------|-------------------------|----------------------------------
FormulaVersion    | ALWAYS (from creation)  | Snapshots reference it forever
UsageSnapshot     | ALWAYS (from creation)  | Provenance record of a computation
AuditEvent        | ALWAYS (from creation)  | Audit trail is sacred
FormulaDefinition | DELETE only             | Retirement is a soft flag

===============================================================================
USAGE
===============================================================================

Called once at application startup (the orchestrator and the seed script
do this):

    from estimate_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
    # ... do forbidden operation ...
    register_immutability_listeners()

Bulk ``session.execute(update(...))`` statements bypass mapper events; the
kernel never issues them against protected tables.
"""

import threading

from sqlalchemy import event

from estimate_kernel.exceptions import ImmutabilityViolationError
from estimate_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_registration_lock = threading.Lock()


def _block(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_formula_version_update(mapper, connection, target):
    """Prevent any update to a published FormulaVersion."""
    _block(
        "FormulaVersion", target, "UPDATE",
        "Formula versions are immutable; publish a new version instead",
    )


def _check_formula_version_delete(mapper, connection, target):
    """Prevent deletion of a FormulaVersion."""
    _block(
        "FormulaVersion", target, "DELETE",
        "Formula versions cannot be deleted; snapshots may reference them",
    )


def _check_formula_definition_delete(mapper, connection, target):
    """Formula definitions are retired, never deleted."""
    _block(
        "FormulaDefinition", target, "DELETE",
        "Formula definitions cannot be deleted; retire the formula instead",
    )


def _check_usage_snapshot_update(mapper, connection, target):
    """Prevent any update to a UsageSnapshot."""
    _block(
        "UsageSnapshot", target, "UPDATE",
        "Usage snapshots are immutable; recompute the line item instead",
    )


def _check_usage_snapshot_delete(mapper, connection, target):
    """Prevent deletion of a UsageSnapshot."""
    _block(
        "UsageSnapshot", target, "DELETE",
        "Usage snapshots cannot be deleted",
    )


def _check_audit_event_update(mapper, connection, target):
    """Prevent any update to an AuditEvent."""
    _block(
        "AuditEvent", target, "UPDATE",
        "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    """Prevent deletion of an AuditEvent."""
    _block(
        "AuditEvent", target, "DELETE",
        "Audit events cannot be deleted",
    )


def _listener_table():
    from estimate_kernel.models.audit_event import AuditEvent
    from estimate_kernel.models.formula import (
        FormulaDefinitionModel,
        FormulaVersionModel,
    )
    from estimate_kernel.models.usage_snapshot import UsageSnapshotModel

    return [
        (FormulaVersionModel, "before_update", _check_formula_version_update),
        (FormulaVersionModel, "before_delete", _check_formula_version_delete),
        (FormulaDefinitionModel, "before_delete", _check_formula_definition_delete),
        (UsageSnapshotModel, "before_update", _check_usage_snapshot_update),
        (UsageSnapshotModel, "before_delete", _check_usage_snapshot_delete),
        (AuditEvent, "before_update", _check_audit_event_update),
        (AuditEvent, "before_delete", _check_audit_event_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners (idempotent).

    Call this after all models are imported but before any database
    operations begin.
    """
    with _registration_lock:
        for target, event_name, listener_fn in _listener_table():
            if not event.contains(target, event_name, listener_fn):
                event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    with _registration_lock:
        for target, event_name, listener_fn in _listener_table():
            if event.contains(target, event_name, listener_fn):
                event.remove(target, event_name, listener_fn)
