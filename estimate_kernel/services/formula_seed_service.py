"""
FormulaSeedService -- publish a catalog of formulas into one organization.

Idempotent: a formula that does not exist is created; one whose current
version already has the same content hash is left alone; one whose body
differs gets a new version.  Retired formulas are skipped.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from estimate_kernel.domain.clock import Clock
from estimate_kernel.domain.formula import FormulaBody
from estimate_kernel.logging_config import get_logger
from estimate_kernel.services.auditor_service import AuditorService
from estimate_kernel.services.base import BaseService
from estimate_kernel.services.formula_registry import FormulaRegistry
from estimate_kernel.utils.hashing import hash_formula_body

logger = get_logger("services.formula_seed")


class SeedDefinition(Protocol):
    """Shape of a catalog entry (estimate_config.FormulaSeed satisfies it)."""

    key: str
    name: str
    body: Mapping[str, Any]
    description: str | None
    category: str | None


@dataclass
class SeedResult:
    created: list[str] = field(default_factory=list)
    published: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped_retired: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.published)


class FormulaSeedService(BaseService):
    def __init__(
        self,
        session: Session,
        organization_id: str,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock)
        self.organization_id = organization_id
        self._registry = FormulaRegistry(session, organization_id, self.clock, auditor)

    def seed(self, seeds: Iterable[SeedDefinition], author: str) -> SeedResult:
        result = SeedResult()
        for seed in seeds:
            definition = self._registry.find_definition(seed.key)
            if definition is None:
                self._registry.create_formula(
                    seed.key,
                    seed.name,
                    seed.body,
                    author,
                    description=seed.description,
                    category=seed.category,
                )
                result.created.append(seed.key)
                continue

            if definition.is_retired:
                result.skipped_retired.append(seed.key)
                continue

            body = FormulaBody.from_dict(seed.body, seed.key)
            current = self._registry.get_current_version(seed.key)
            if current.content_hash == hash_formula_body(body.to_dict()):
                result.unchanged.append(seed.key)
                continue

            self._registry.publish_new_version(seed.key, body, None, None, author)
            result.published.append(seed.key)

        logger.info(
            "formula_seed_completed",
            extra={
                "organization_id": self.organization_id,
                "created_count": len(result.created),
                "published_count": len(result.published),
                "unchanged_count": len(result.unchanged),
                "skipped_retired_count": len(result.skipped_retired),
            },
        )
        return result
