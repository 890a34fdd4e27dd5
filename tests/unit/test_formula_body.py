"""
Unit tests for formula body value objects.

Verifies:
- Document parsing collects every structural problem
- Bounds and defaults are Decimal, never float
- to_dict()/from_dict() agree
- Inputs and outputs can be derived from name lists
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from estimate_kernel.domain.formula import (
    FormulaBody,
    FormulaVersion,
    InputSpec,
    InputType,
    is_valid_variable_name,
)
from estimate_kernel.exceptions import FormulaValidationError


class TestFromDict:
    """Parsing the stored document shape."""

    def test_full_document(self):
        body = FormulaBody.from_dict(
            {
                "inputs": [
                    {"name": "coats", "type": "integer", "min": 1, "max": "5", "unit": "coat"},
                    {"name": "rush", "type": "boolean", "default": False},
                ],
                "assignments": [{"variable": "output", "expression": "coats * 2"}],
                "outputs": [{"name": "output", "unit": "L"}],
            }
        )
        coats = body.input("coats")
        assert coats.type is InputType.INTEGER
        assert coats.minimum == Decimal(1)
        assert coats.maximum == Decimal(5)
        assert coats.unit == "coat"
        assert body.input("rush").default is False
        assert body.output_names == ("output",)
        assert body.assigned_variables == ("output",)

    def test_float_bound_read_through_repr(self):
        body = FormulaBody.from_dict(
            {"inputs": [{"name": "x", "min": 0.1}], "outputs": [{"name": "x"}]}
        )
        assert body.input("x").minimum == Decimal("0.1")

    def test_default_value_alias(self):
        body = FormulaBody.from_dict(
            {"inputs": [{"name": "x", "defaultValue": "2.5"}], "outputs": [{"name": "x"}]}
        )
        assert body.input("x").default == Decimal("2.5")
        assert body.input("x").required is False

    def test_names_derived_from_lists(self):
        body = FormulaBody.from_dict(
            {"assignments": [{"variable": "total", "expression": "a + b"}]},
            input_names=["a", "b"],
            output_names=["total"],
        )
        assert body.input_names == ("a", "b")
        assert all(spec.type is InputType.NUMBER for spec in body.inputs)
        assert body.output_names == ("total",)

    def test_name_lists_must_match_document(self):
        with pytest.raises(FormulaValidationError, match="do not match"):
            FormulaBody.from_dict(
                {"inputs": [{"name": "a"}], "outputs": [{"name": "a"}]},
                input_names=["b"],
            )

    def test_problems_collected(self):
        with pytest.raises(FormulaValidationError) as exc_info:
            FormulaBody.from_dict(
                {
                    "inputs": [{"type": "number"}, {"name": "x", "type": "text"}],
                    "assignments": [{"variable": "y"}],
                    "outputs": "y",
                },
                "broken",
            )
        problems = exc_info.value.problems
        assert exc_info.value.formula_key == "broken"
        assert len(problems) == 4
        assert any("name is required" in p for p in problems)
        assert any("unknown type" in p for p in problems)
        assert any("expression is required" in p for p in problems)
        assert any("outputs must be a list" in p for p in problems)

    def test_body_must_be_mapping(self):
        with pytest.raises(FormulaValidationError):
            FormulaBody.from_dict(["not", "a", "mapping"])

    def test_bound_on_boolean_rejected(self):
        with pytest.raises(FormulaValidationError, match="numeric inputs"):
            FormulaBody.from_dict(
                {"inputs": [{"name": "f", "type": "boolean", "min": 0}], "outputs": []}
            )

    def test_non_finite_bound_rejected(self):
        with pytest.raises(FormulaValidationError, match="finite"):
            FormulaBody.from_dict(
                {"inputs": [{"name": "x", "max": "Infinity"}], "outputs": []}
            )

    def test_boolean_default_for_number_rejected(self):
        with pytest.raises(FormulaValidationError, match="default"):
            FormulaBody.from_dict(
                {"inputs": [{"name": "x", "default": True}], "outputs": []}
            )


class TestRoundTrip:
    """to_dict() output parses back to an equal body."""

    def test_round_trip(self):
        original = FormulaBody.from_dict(
            {
                "inputs": [
                    {"name": "area", "min": "0.01", "unit": "m2", "label": "Wall area"},
                    {"name": "waste", "default": "1.05"},
                    {"name": "rush", "type": "boolean", "default": True},
                ],
                "assignments": [{"variable": "blocks", "expression": "ceil(area * 12.5 * waste)"}],
                "outputs": [{"name": "blocks", "unit": "pc"}],
            }
        )
        document = original.to_dict()
        assert FormulaBody.from_dict(document) == original
        assert document["inputs"][0]["min"] == "0.01"
        assert document["inputs"][2]["default"] is True


class TestVariableNames:
    """Identifier rules."""

    @pytest.mark.parametrize("name", ["hours", "_x", "area2", "line_total"])
    def test_valid(self, name):
        assert is_valid_variable_name(name)

    @pytest.mark.parametrize("name", ["2x", "my-var", "", "if", "sqrt", "max", None, 5])
    def test_invalid(self, name):
        assert not is_valid_variable_name(name)


class TestFormulaVersion:
    """FormulaVersion is frozen and sequences start at 1."""

    def _body(self):
        return FormulaBody(inputs=(InputSpec("x"),), assignments=(), outputs=())

    def test_sequence_must_be_positive(self):
        with pytest.raises(ValueError):
            FormulaVersion(
                formula_key="k",
                sequence=0,
                body=self._body(),
                author="a",
                created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            )

    def test_frozen(self):
        version = FormulaVersion(
            formula_key="k",
            sequence=1,
            body=self._body(),
            author="a",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        with pytest.raises(AttributeError):
            version.sequence = 2
        assert version.input_names == ("x",)
