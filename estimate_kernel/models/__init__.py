"""ORM models for the estimate kernel."""

from estimate_kernel.models.audit_event import AuditAction, AuditEvent, audit_chain_key
from estimate_kernel.models.estimate import EstimateModel, EstimateStatus, LineItemModel
from estimate_kernel.models.formula import FormulaDefinitionModel, FormulaVersionModel
from estimate_kernel.models.pricing_policy import PricingPolicyModel
from estimate_kernel.models.sequence_counter import SequenceCounter
from estimate_kernel.models.usage_snapshot import UsageSnapshotModel

__all__ = [
    "AuditAction",
    "AuditEvent",
    "EstimateModel",
    "EstimateStatus",
    "LineItemModel",
    "FormulaDefinitionModel",
    "FormulaVersionModel",
    "PricingPolicyModel",
    "SequenceCounter",
    "UsageSnapshotModel",
    "audit_chain_key",
]
