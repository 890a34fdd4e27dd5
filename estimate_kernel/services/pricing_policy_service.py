"""
PricingPolicyService -- record and resolve per-organization pricing policy.

Invariants enforced:
    - Totals are only aggregated under a recorded policy; nothing is
      inferred from module defaults at aggregation time.
    - Every change is audited.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from estimate_kernel.domain.aggregation import PricingPolicy, VatBase
from estimate_kernel.domain.clock import Clock
from estimate_kernel.exceptions import PricingPolicyNotFoundError
from estimate_kernel.logging_config import get_logger
from estimate_kernel.models.pricing_policy import PricingPolicyModel
from estimate_kernel.services.auditor_service import AuditorService
from estimate_kernel.services.base import BaseService

logger = get_logger("services.pricing_policy")


def policy_from_model(model: PricingPolicyModel) -> PricingPolicy:
    return PricingPolicy(
        vat_base=VatBase(model.vat_base),
        rounding_mode=model.rounding_mode,
        decimal_places=model.decimal_places,
    )


class PricingPolicyService(BaseService):
    """Persisted PricingPolicy per organization."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)

    def _find(self, organization_id: str, lock: bool = False) -> PricingPolicyModel | None:
        query = select(PricingPolicyModel).where(
            PricingPolicyModel.organization_id == organization_id
        )
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    def get_policy(self, organization_id: str) -> PricingPolicy:
        """
        Raises:
            PricingPolicyNotFoundError: No policy recorded.
        """
        model = self._find(organization_id)
        if model is None:
            raise PricingPolicyNotFoundError(organization_id)
        return policy_from_model(model)

    def configure(
        self,
        organization_id: str,
        policy: PricingPolicy,
        actor: str,
    ) -> PricingPolicy:
        """Create or replace the organization's policy."""
        model = self._find(organization_id, lock=True)
        if model is None:
            model = PricingPolicyModel(
                organization_id=organization_id,
                vat_base=policy.vat_base.value,
                rounding_mode=policy.rounding_mode,
                decimal_places=policy.decimal_places,
                created_by=actor,
            )
            self.session.add(model)
        else:
            model.vat_base = policy.vat_base.value
            model.rounding_mode = policy.rounding_mode
            model.decimal_places = policy.decimal_places
            model.updated_by = actor
        self.session.flush()

        self._auditor.record_pricing_policy_configured(
            model.id,
            organization_id,
            model.vat_base,
            model.rounding_mode,
            model.decimal_places,
            actor,
        )
        logger.info(
            "pricing_policy_configured",
            extra={
                "organization_id": organization_id,
                "vat_base": model.vat_base,
                "rounding_mode": model.rounding_mode,
                "decimal_places": model.decimal_places,
            },
        )
        return policy_from_model(model)
