"""
Tests for line item computation and usage snapshots.

Verifies:
- A snapshot records the exact version evaluated, its inputs and outputs
- Publishing a new version does not change stored values
- Recomputation appends a snapshot and moves the latest pointer
- A failed evaluation writes nothing and keeps the previous latest
- Line total selection
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from estimate_kernel.domain.snapshot import encode_values
from estimate_kernel.exceptions import (
    EstimateNotEditableError,
    FormulaNotFoundError,
    FormulaRetiredError,
    LineItemNotFoundError,
    MissingInputError,
    NoFormulaAssignedError,
    OutputSelectionError,
)
from estimate_kernel.models.audit_event import AuditAction
from estimate_kernel.models.estimate import EstimateStatus
from estimate_kernel.services.computation_pipeline import select_line_total
from estimate_kernel.utils.hashing import hash_snapshot
from tests.conftest import LABOR_COST_V2, TEST_ACTOR, TEST_ORG

LABOR_INPUTS = {"hours": Decimal("40"), "rate": Decimal("100")}

AREA_AND_VOLUME = {
    "inputs": [
        {"name": "length", "min": 0},
        {"name": "width", "min": 0},
        {"name": "depth", "min": 0},
    ],
    "assignments": [
        {"variable": "area", "expression": "length * width"},
        {"variable": "volume", "expression": "area * depth"},
    ],
    "outputs": [{"name": "area", "unit": "m2"}, {"name": "volume", "unit": "m3"}],
}


@pytest.fixture
def labor_line(labor_cost, create_estimate, create_line_item):
    estimate = create_estimate()
    return create_line_item(
        estimate, 1, formula_key="labor_cost", inputs=LABOR_INPUTS, category="labor"
    )


class TestComputeLineItem:
    """Successful computation."""

    def test_labor_cost_snapshot(self, orchestrator, labor_line, deterministic_clock):
        snapshot = orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)

        assert snapshot.line_total == Decimal("4000")
        assert snapshot.formula_key == "labor_cost"
        assert snapshot.formula_sequence == 1
        assert snapshot.seq == 1
        assert snapshot.inputs == LABOR_INPUTS
        assert snapshot.resolved_inputs == LABOR_INPUTS
        assert snapshot.outputs == {"line_total": Decimal("4000")}
        assert snapshot.line_total_variable == "line_total"
        assert snapshot.triggered_by == TEST_ACTOR
        assert snapshot.computed_at == deterministic_clock.now()

    def test_latest_pointer_set(self, orchestrator, labor_line):
        snapshot = orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        assert labor_line.latest_snapshot_id == snapshot.snapshot_id
        assert labor_line.snapshot_count == 1

    def test_snapshot_references_version_row(self, orchestrator, labor_line, labor_cost):
        snapshot = orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        assert snapshot.formula_version_id == labor_cost

    def test_payload_hash(self, orchestrator, labor_line):
        snapshot = orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        assert snapshot.payload_hash == hash_snapshot(
            "labor_cost", 1, {"hours": "40", "rate": "100"}, {"line_total": "4000.000000000"}
        )

    def test_audited(self, orchestrator, labor_line):
        orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        trace = orchestrator.auditor.get_trace("LineItem", labor_line.id)
        assert trace.actions == (AuditAction.LINE_ITEM_COMPUTED,)
        assert trace.entries[0].payload["formula_sequence"] == 1

    def test_defaults_recorded_in_resolved_inputs(
        self, orchestrator, create_estimate, create_line_item
    ):
        orchestrator.create_formula(
            "rush_labor",
            "Rush Labor",
            {
                "inputs": [
                    {"name": "hours", "min": 0},
                    {"name": "rate", "default": "150"},
                ],
                "assignments": [{"variable": "line_total", "expression": "hours * rate"}],
                "outputs": [{"name": "line_total"}],
            },
            TEST_ACTOR,
            organization_id=TEST_ORG,
        )
        line = create_line_item(create_estimate(), 1, formula_key="rush_labor", inputs={"hours": 2})
        snapshot = orchestrator.compute_line_item(line.id, TEST_ACTOR)
        assert snapshot.inputs == {"hours": Decimal("2")}
        assert snapshot.resolved_inputs["rate"] == Decimal("150")
        assert snapshot.line_total == Decimal("300")


class TestVersionProvenance:
    """A published version never changes an existing snapshot."""

    def test_new_version_leaves_value_until_recompute(self, orchestrator, labor_line):
        first = orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        orchestrator.publish_formula_version(
            "labor_cost", LABOR_COST_V2, None, None, TEST_ACTOR, organization_id=TEST_ORG
        )

        report = orchestrator.get_staleness(labor_line.id)
        assert not report.up_to_date
        assert report.current_sequence == 2
        assert report.snapshot_sequence == 1

        second = orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        assert second.line_total == Decimal("4480")
        assert second.formula_sequence == 2
        assert second.seq == 2

        history = orchestrator.get_snapshot_history(labor_line.id)
        assert [s.seq for s in history] == [1, 2]
        assert history[0].snapshot_id == first.snapshot_id
        assert history[0].payload_hash == first.payload_hash
        assert history[0].line_total == Decimal("4000")
        assert orchestrator.get_staleness(labor_line.id).up_to_date

    def test_recompute_same_version_appends(self, orchestrator, labor_line):
        orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        second = orchestrator.compute_line_item(labor_line.id, "someone-else")
        assert second.seq == 2
        assert second.formula_sequence == 1
        assert second.triggered_by == "someone-else"


class TestComputationFailures:
    """Failures raise before anything is written."""

    def test_missing_input_keeps_previous_latest(self, session, orchestrator, labor_line):
        first = orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)

        labor_line.inputs = encode_values({"hours": Decimal("40")})
        session.commit()

        with pytest.raises(MissingInputError) as exc_info:
            orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)
        assert exc_info.value.variables == ["rate"]

        assert [s.seq for s in orchestrator.get_snapshot_history(labor_line.id)] == [1]
        session.refresh(labor_line)
        assert labor_line.latest_snapshot_id == first.snapshot_id
        assert labor_line.snapshot_count == 1

    def test_failure_writes_no_audit_event(self, orchestrator, create_estimate, create_line_item, labor_cost):
        line = create_line_item(create_estimate(), 1, formula_key="labor_cost", inputs={"hours": 1})
        with pytest.raises(MissingInputError):
            orchestrator.compute_line_item(line.id, TEST_ACTOR)
        assert orchestrator.auditor.get_trace("LineItem", line.id).is_empty

    def test_manual_line_item(self, orchestrator, create_estimate, create_line_item):
        line = create_line_item(create_estimate(), 1, manual_amount=Decimal("500"))
        with pytest.raises(NoFormulaAssignedError):
            orchestrator.compute_line_item(line.id, TEST_ACTOR)

    def test_unknown_line_item(self, orchestrator):
        with pytest.raises(LineItemNotFoundError):
            orchestrator.compute_line_item(uuid4(), TEST_ACTOR)

    def test_unknown_formula(self, orchestrator, create_estimate, create_line_item):
        line = create_line_item(create_estimate(), 1, formula_key="missing_formula")
        with pytest.raises(FormulaNotFoundError):
            orchestrator.compute_line_item(line.id, TEST_ACTOR)

    def test_retired_formula(self, orchestrator, labor_line):
        orchestrator.retire_formula("labor_cost", TEST_ACTOR, organization_id=TEST_ORG)
        with pytest.raises(FormulaRetiredError):
            orchestrator.compute_line_item(labor_line.id, TEST_ACTOR)

    def test_final_estimate(self, orchestrator, labor_cost, create_estimate, create_line_item):
        estimate = create_estimate(status=EstimateStatus.FINAL)
        line = create_line_item(estimate, 1, formula_key="labor_cost", inputs=LABOR_INPUTS)
        with pytest.raises(EstimateNotEditableError):
            orchestrator.compute_line_item(line.id, TEST_ACTOR)

    def test_failure_logged(self, orchestrator, create_estimate, create_line_item, labor_cost, captured_logs):
        line = create_line_item(create_estimate(), 1, formula_key="labor_cost", inputs={"hours": 1})
        with pytest.raises(MissingInputError):
            orchestrator.compute_line_item(line.id, TEST_ACTOR)
        failures = [r for r in captured_logs() if r["message"] == "line_item_computation_failed"]
        assert len(failures) == 1
        assert failures[0]["error_code"] == "FORMULA_MISSING_INPUT"
        assert failures[0]["line_item_id"] == str(line.id)


class TestOutputSelection:
    """Choosing the output that becomes the line total."""

    def test_multiple_outputs_need_output_variable(
        self, orchestrator, create_estimate, create_line_item
    ):
        orchestrator.create_formula(
            "slab", "Slab", AREA_AND_VOLUME, TEST_ACTOR, organization_id=TEST_ORG
        )
        line = create_line_item(
            create_estimate(), 1, formula_key="slab", inputs={"length": 4, "width": 5, "depth": "0.1"}
        )
        with pytest.raises(OutputSelectionError):
            orchestrator.compute_line_item(line.id, TEST_ACTOR)

    def test_output_variable_selects(self, orchestrator, create_estimate, create_line_item):
        orchestrator.create_formula(
            "slab", "Slab", AREA_AND_VOLUME, TEST_ACTOR, organization_id=TEST_ORG
        )
        line = create_line_item(
            create_estimate(),
            1,
            formula_key="slab",
            inputs={"length": 4, "width": 5, "depth": "0.1"},
            output_variable="volume",
        )
        snapshot = orchestrator.compute_line_item(line.id, TEST_ACTOR)
        assert snapshot.line_total == Decimal("2")
        assert snapshot.line_total_variable == "volume"
        assert snapshot.outputs["area"] == Decimal("20")
        assert snapshot.computed["area"] == Decimal("20")

    def test_sole_output(self):
        assert select_line_total("k", {"cost": Decimal(5)}) == ("cost", Decimal(5))

    def test_line_total_name_preferred(self):
        name, value = select_line_total(
            "k", {"area": Decimal(1), "line_total": Decimal(9)}
        )
        assert (name, value) == ("line_total", Decimal(9))

    def test_unknown_output_variable(self):
        with pytest.raises(OutputSelectionError, match="not a declared output"):
            select_line_total("k", {"a": Decimal(1)}, "b")

    def test_boolean_output_rejected(self):
        with pytest.raises(OutputSelectionError, match="not numeric"):
            select_line_total("k", {"ok": True})
