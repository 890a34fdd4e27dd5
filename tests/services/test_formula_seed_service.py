"""
Tests for FormulaSeedService: idempotent catalog publication.
"""

import pytest

from estimate_config import FormulaSeed, load_formula_seeds
from estimate_kernel.exceptions import IncompleteOutputError
from estimate_kernel.services.formula_seed_service import FormulaSeedService
from tests.conftest import LABOR_COST_V1, LABOR_COST_V2, TEST_ACTOR, TEST_ORG


def _seed(body, key="labor_cost"):
    return FormulaSeed(key=key, name="Labor Cost", body=body, category="labor")


@pytest.fixture
def seed_service(session, deterministic_clock, auditor_service):
    return FormulaSeedService(session, TEST_ORG, deterministic_clock, auditor_service)


class TestFormulaSeedService:

    def test_creates_missing(self, seed_service, registry):
        result = seed_service.seed([_seed(LABOR_COST_V1)], TEST_ACTOR)
        assert result.created == ["labor_cost"]
        assert result.changed
        definition = registry.get_definition("labor_cost")
        assert definition.category == "labor"
        assert registry.get_current_version("labor_cost").sequence == 1

    def test_rerun_is_noop(self, seed_service, registry):
        seed_service.seed([_seed(LABOR_COST_V1)], TEST_ACTOR)
        result = seed_service.seed([_seed(LABOR_COST_V1)], TEST_ACTOR)
        assert result.unchanged == ["labor_cost"]
        assert not result.changed
        assert len(registry.list_versions("labor_cost")) == 1

    def test_changed_body_publishes(self, seed_service, registry):
        seed_service.seed([_seed(LABOR_COST_V1)], TEST_ACTOR)
        result = seed_service.seed([_seed(LABOR_COST_V2)], TEST_ACTOR)
        assert result.published == ["labor_cost"]
        assert registry.get_current_version("labor_cost").sequence == 2

    def test_retired_skipped(self, seed_service, registry):
        seed_service.seed([_seed(LABOR_COST_V1)], TEST_ACTOR)
        registry.retire_formula("labor_cost", TEST_ACTOR)
        result = seed_service.seed([_seed(LABOR_COST_V2)], TEST_ACTOR)
        assert result.skipped_retired == ["labor_cost"]
        assert registry.get_current_version("labor_cost").sequence == 1

    def test_completion_is_logged(self, seed_service, captured_logs):
        seed_service.seed([_seed(LABOR_COST_V1)], TEST_ACTOR)
        seed_service.seed([_seed(LABOR_COST_V2), _seed(LABOR_COST_V1, key="other")], TEST_ACTOR)

        completed = [r for r in captured_logs() if r["message"] == "formula_seed_completed"]
        assert len(completed) == 2
        assert completed[0]["created_count"] == 1
        assert completed[0]["published_count"] == 0
        assert completed[1]["created_count"] == 1
        assert completed[1]["published_count"] == 1
        assert completed[1]["organization_id"] == TEST_ORG

    def test_invalid_seed_raises(self, seed_service):
        broken = {"inputs": [], "assignments": [], "outputs": [{"name": "missing"}]}
        with pytest.raises(IncompleteOutputError):
            seed_service.seed([_seed(broken, key="broken")], TEST_ACTOR)


class TestPackagedCatalog:
    """The shipped seed files publish cleanly."""

    def test_seed_catalog(self, orchestrator):
        seeds = load_formula_seeds()
        result = orchestrator.seed_formulas(seeds, TEST_ACTOR, organization_id=TEST_ORG)
        assert sorted(result.created) == [
            "chb_wall",
            "concrete_slab",
            "labor_cost",
            "painting_works",
        ]

        again = orchestrator.seed_formulas(seeds, TEST_ACTOR, organization_id=TEST_ORG)
        assert not again.changed
        assert len(again.unchanged) == 4
