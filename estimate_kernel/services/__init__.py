"""
Kernel services -- the imperative shell.

Services flush within the caller's transaction and never commit;
EstimateOrchestrator owns the transaction boundary.
"""

from estimate_kernel.services.auditor_service import AuditorService, AuditTrace
from estimate_kernel.services.computation_pipeline import (
    ComputationPipeline,
    select_line_total,
)
from estimate_kernel.services.estimate_orchestrator import (
    EstimateOrchestrator,
    FormulaUsage,
)
from estimate_kernel.services.formula_registry import FormulaRegistry
from estimate_kernel.services.formula_seed_service import FormulaSeedService, SeedResult
from estimate_kernel.services.keyed_locks import KeyedLockRegistry
from estimate_kernel.services.pricing_policy_service import PricingPolicyService
from estimate_kernel.services.sequence_service import SequenceService
from estimate_kernel.services.staleness_service import StalenessService

__all__ = [
    "AuditorService",
    "AuditTrace",
    "ComputationPipeline",
    "EstimateOrchestrator",
    "FormulaRegistry",
    "FormulaSeedService",
    "FormulaUsage",
    "KeyedLockRegistry",
    "PricingPolicyService",
    "SeedResult",
    "SequenceService",
    "StalenessService",
    "select_line_total",
]
