"""
FormulaRegistry -- versioned formula definitions of one organization.

Responsibility:
    Creates formulas, publishes new immutable versions, resolves the
    current version or an exact historical version, and soft-retires
    formulas.

Architecture position:
    Kernel > Services -- imperative shell.  Called by EstimateOrchestrator,
    ComputationPipeline, StalenessService and FormulaSeedService.

Invariants enforced:
    - Version sequences are 1, 2, 3, ... per formula with no gaps and no
      reuse.  The next sequence comes from the definition row's
      ``latest_sequence`` counter read under SELECT ... FOR UPDATE; the
      MAX(sequence)+1 pattern is never used.
    - The current version is always the latest created.
    - Versions are never modified or deleted; retirement is a flag.
    - Bodies are validated before a sequence is allocated, so a rejected
      publish consumes nothing.

Failure modes:
    - FormulaNotFoundError, FormulaVersionNotFoundError
    - FormulaAlreadyExistsError on create with a taken key
    - FormulaRetiredError on publish to a retired formula
    - FormulaValidationError / CyclicReferenceError / IncompleteOutputError
      on an invalid body

Audit relevance:
    FORMULA_CREATED, FORMULA_VERSION_PUBLISHED and FORMULA_RETIRED audit
    events are written in the same transaction as the change.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from estimate_kernel.domain.clock import Clock
from estimate_kernel.domain.formula import FormulaBody, FormulaVersion
from estimate_kernel.domain.validation import validate_formula_body
from estimate_kernel.exceptions import (
    FormulaAlreadyExistsError,
    FormulaNotFoundError,
    FormulaRetiredError,
    FormulaVersionNotFoundError,
)
from estimate_kernel.logging_config import LogContext, get_logger
from estimate_kernel.models.formula import FormulaDefinitionModel, FormulaVersionModel
from estimate_kernel.services.auditor_service import AuditorService
from estimate_kernel.services.base import BaseService
from estimate_kernel.utils.hashing import hash_formula_body

logger = get_logger("services.formula_registry")


def version_from_model(model: FormulaVersionModel) -> FormulaVersion:
    """Boundary converter from a FormulaVersionModel row."""
    return FormulaVersion(
        formula_key=model.formula_key,
        sequence=model.sequence,
        body=FormulaBody.from_dict(model.body, model.formula_key),
        author=model.author,
        created_at=model.created_at,
        content_hash=model.content_hash,
        version_id=model.id,
    )


class FormulaRegistry(BaseService):
    """
    Registry of formula definitions and their version history.

    Contract:
        Scoped to one organization; formula keys are unique within it.

    Non-goals:
        - Does NOT commit; the caller owns the transaction.
        - Does NOT serialize in-process callers; EstimateOrchestrator holds
          the keyed lock around publish.
    """

    def __init__(
        self,
        session: Session,
        organization_id: str,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock)
        self.organization_id = organization_id
        self._auditor = auditor or AuditorService(session, self.clock)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _definition_query(self, formula_key: str):
        return select(FormulaDefinitionModel).where(
            FormulaDefinitionModel.organization_id == self.organization_id,
            FormulaDefinitionModel.key == formula_key,
        )

    def find_definition(self, formula_key: str) -> FormulaDefinitionModel | None:
        return self.session.execute(
            self._definition_query(formula_key)
        ).scalar_one_or_none()

    def get_definition(self, formula_key: str) -> FormulaDefinitionModel:
        definition = self.find_definition(formula_key)
        if definition is None:
            raise FormulaNotFoundError(formula_key)
        return definition

    def _lock_definition(self, formula_key: str) -> FormulaDefinitionModel:
        definition = self.session.execute(
            self._definition_query(formula_key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if definition is None:
            raise FormulaNotFoundError(formula_key)
        return definition

    def _version_model(self, formula_key: str, sequence: int) -> FormulaVersionModel | None:
        return self.session.execute(
            select(FormulaVersionModel).where(
                FormulaVersionModel.organization_id == self.organization_id,
                FormulaVersionModel.formula_key == formula_key,
                FormulaVersionModel.sequence == sequence,
            )
        ).scalar_one_or_none()

    def get_current_version(self, formula_key: str) -> FormulaVersion:
        """
        The latest published version of a formula.

        Retired formulas still resolve; callers that compute check
        ``is_retired`` themselves.

        Raises:
            FormulaNotFoundError: Unknown key, or no version published yet.
        """
        definition = self.get_definition(formula_key)
        if definition.latest_sequence < 1:
            raise FormulaNotFoundError(formula_key)
        model = self._version_model(formula_key, definition.latest_sequence)
        if model is None:
            raise FormulaNotFoundError(formula_key)
        return version_from_model(model)

    def get_version(self, formula_key: str, sequence: int) -> FormulaVersion:
        """
        An exact historical version.

        Raises:
            FormulaVersionNotFoundError: That sequence was never created.
        """
        model = self._version_model(formula_key, sequence)
        if model is None:
            raise FormulaVersionNotFoundError(formula_key, sequence)
        return version_from_model(model)

    def list_versions(self, formula_key: str) -> list[FormulaVersion]:
        """Full version history, oldest first."""
        definition = self.get_definition(formula_key)
        models = self.session.execute(
            select(FormulaVersionModel)
            .where(FormulaVersionModel.definition_id == definition.id)
            .order_by(FormulaVersionModel.sequence)
        ).scalars().all()
        return [version_from_model(model) for model in models]

    def is_retired(self, formula_key: str) -> bool:
        return self.get_definition(formula_key).is_retired

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_formula(
        self,
        formula_key: str,
        name: str,
        body: Mapping[str, Any] | FormulaBody,
        author: str,
        *,
        description: str | None = None,
        category: str | None = None,
        input_names: Sequence[str] | None = None,
        output_names: Sequence[str] | None = None,
    ) -> FormulaVersion:
        """
        Create a formula and publish its version 1.

        Raises:
            FormulaAlreadyExistsError: The key is taken in this organization.
        """
        if self.find_definition(formula_key) is not None:
            raise FormulaAlreadyExistsError(formula_key)

        parsed = self._parse_body(formula_key, body, input_names, output_names)

        definition = FormulaDefinitionModel(
            organization_id=self.organization_id,
            key=formula_key,
            name=name,
            description=description,
            category=category,
            latest_sequence=0,
            is_retired=False,
            created_by=author,
        )
        self.session.add(definition)
        try:
            self.session.flush()
        except IntegrityError:
            raise FormulaAlreadyExistsError(formula_key) from None

        self._auditor.record_formula_created(definition.id, formula_key, name, author)
        logger.info(
            "formula_created",
            extra={"formula_key": formula_key, "organization_id": self.organization_id},
        )
        return self._append_version(definition, parsed, author)

    def publish_new_version(
        self,
        formula_key: str,
        body: Mapping[str, Any] | FormulaBody,
        input_names: Sequence[str] | None,
        output_names: Sequence[str] | None,
        author: str,
    ) -> FormulaVersion:
        """
        Publish a new version; it becomes the current version.

        Raises:
            FormulaNotFoundError: Unknown key.
            FormulaRetiredError: The formula is retired.
            FormulaValidationError: The body is invalid.
        """
        definition = self._lock_definition(formula_key)
        if definition.is_retired:
            raise FormulaRetiredError(formula_key)
        parsed = self._parse_body(formula_key, body, input_names, output_names)
        return self._append_version(definition, parsed, author)

    def retire_formula(self, formula_key: str, actor: str) -> FormulaDefinitionModel:
        """
        Soft-retire a formula.  Versions stay resolvable for provenance.

        Retiring an already retired formula is a no-op.
        """
        definition = self._lock_definition(formula_key)
        if definition.is_retired:
            return definition

        definition.is_retired = True
        definition.retired_at = self.clock.now()
        definition.retired_by = actor
        definition.updated_by = actor
        self.session.flush()

        self._auditor.record_formula_retired(definition.id, formula_key, actor)
        logger.info(
            "formula_retired",
            extra={"formula_key": formula_key, "actor": actor},
        )
        return definition

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse_body(
        self,
        formula_key: str,
        body: Mapping[str, Any] | FormulaBody,
        input_names: Sequence[str] | None,
        output_names: Sequence[str] | None,
    ) -> FormulaBody:
        document = body.to_dict() if isinstance(body, FormulaBody) else body
        parsed = FormulaBody.from_dict(document, formula_key, input_names, output_names)
        validate_formula_body(parsed, formula_key)
        return parsed

    def _append_version(
        self,
        definition: FormulaDefinitionModel,
        body: FormulaBody,
        author: str,
    ) -> FormulaVersion:
        sequence = definition.latest_sequence + 1
        document = body.to_dict()
        content_hash = hash_formula_body(document)

        model = FormulaVersionModel(
            definition_id=definition.id,
            organization_id=definition.organization_id,
            formula_key=definition.key,
            sequence=sequence,
            body=document,
            content_hash=content_hash,
            author=author,
            created_at=self.clock.now(),
        )
        self.session.add(model)
        definition.latest_sequence = sequence
        definition.updated_by = author
        self.session.flush()

        self._auditor.record_version_published(
            definition.id, definition.key, sequence, content_hash, author
        )
        with LogContext.bind(formula_key=definition.key):
            logger.info(
                "formula_version_published",
                extra={
                    "sequence": sequence,
                    "author": author,
                    "content_hash": content_hash,
                },
            )
        return version_from_model(model)
