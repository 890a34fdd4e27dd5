"""
Unit tests for estimate aggregation.

Verifies:
- Markup, VAT and grand total for the standard policy
- Each derived amount is rounded exactly once
- Order independence of the subtotal
- VAT base and rounding mode always come from the policy
"""

import decimal
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from estimate_kernel.domain.aggregation import (
    LineValue,
    PricingPolicy,
    VatBase,
    aggregate,
)

STANDARD = PricingPolicy(vat_base=VatBase.SUBTOTAL_PLUS_MARKUP)


def _line(amount, category=None, pending=False):
    return LineValue(
        line_item_id=uuid4(),
        amount=Decimal(amount),
        category=category,
        formula_driven=pending,
        pending=pending,
    )


class TestStandardTotals:
    """Markup on subtotal, VAT on subtotal plus markup."""

    def test_worked_example(self):
        totals = aggregate([_line("15000")], Decimal("10"), Decimal("12"), STANDARD)
        assert totals.subtotal == Decimal("15000")
        assert totals.markup_amount == Decimal("1500.00")
        assert totals.vat_amount == Decimal("1980.00")
        assert totals.grand_total == Decimal("18480.00")
        assert totals.vat_base is VatBase.SUBTOTAL_PLUS_MARKUP
        assert totals.line_count == 1

    def test_empty_estimate(self):
        totals = aggregate([], Decimal("10"), Decimal("12"), STANDARD)
        assert totals.subtotal == Decimal(0)
        assert totals.grand_total == Decimal(0)
        assert totals.line_count == 0

    def test_zero_rates(self):
        totals = aggregate([_line("100.005")], Decimal(0), Decimal(0), STANDARD)
        assert totals.markup_amount == Decimal("0.00")
        assert totals.grand_total == Decimal("100.005")

    def test_grand_total_identity(self):
        totals = aggregate(
            [_line("1234.567"), _line("89.1")], Decimal("7.5"), Decimal("12"), STANDARD
        )
        assert totals.grand_total == (
            totals.subtotal + totals.markup_amount + totals.vat_amount
        )


class TestVatBase:
    """VAT base selection comes from the policy."""

    def test_vat_on_subtotal_only(self):
        policy = PricingPolicy(vat_base=VatBase.SUBTOTAL)
        totals = aggregate([_line("15000")], Decimal("10"), Decimal("12"), policy)
        assert totals.vat_amount == Decimal("1800.00")
        assert totals.grand_total == Decimal("18300.00")

    def test_vat_base_accepts_string(self):
        policy = PricingPolicy(vat_base="subtotal")
        assert policy.vat_base is VatBase.SUBTOTAL


class TestRounding:
    """Each derived amount is rounded once with the policy's settings."""

    def test_half_up(self):
        # 0.125 * 10% = 0.0125 -> 0.01
        totals = aggregate([_line("0.125")], Decimal("10"), Decimal(0), STANDARD)
        assert totals.markup_amount == Decimal("0.01")

    def test_half_up_sub_cent_subtotal(self):
        # 1000.005 * 10% = 100.0005 -> 100.00
        totals = aggregate([_line("1000.005")], Decimal("10"), Decimal(0), STANDARD)
        assert totals.markup_amount == Decimal("100.00")
        assert str(totals.markup_amount) == "100.00"

    def test_half_even_versus_half_up(self):
        lines = [_line("0.25")]
        half_up = aggregate(lines, Decimal("10"), Decimal(0), STANDARD)
        half_even = aggregate(
            lines,
            Decimal("10"),
            Decimal(0),
            PricingPolicy(rounding_mode=decimal.ROUND_HALF_EVEN),
        )
        # 0.025
        assert half_up.markup_amount == Decimal("0.03")
        assert half_even.markup_amount == Decimal("0.02")

    def test_decimal_places(self):
        policy = PricingPolicy(decimal_places=0)
        totals = aggregate([_line("1000")], Decimal("12.5"), Decimal(0), policy)
        assert totals.markup_amount == Decimal("125")

    def test_vat_uses_rounded_markup(self):
        """VAT is computed from the rounded markup, not re-rounded later."""
        totals = aggregate([_line("0.125")], Decimal("10"), Decimal("100"), STANDARD)
        assert totals.markup_amount == Decimal("0.01")
        assert totals.vat_amount == Decimal("0.14")

    @given(
        amounts=st.lists(
            st.decimals(min_value=0, max_value=1_000_000, places=9), min_size=1, max_size=20
        ),
        markup=st.decimals(min_value=0, max_value=100, places=2),
        vat=st.decimals(min_value=0, max_value=30, places=2),
    )
    @settings(max_examples=100, deadline=None)
    def test_single_rounding(self, amounts, markup, vat):
        lines = [_line(a) for a in amounts]
        totals = aggregate(lines, markup, vat, STANDARD)

        subtotal = sum(amounts, Decimal(0))
        with decimal.localcontext(decimal.Context(prec=38)):
            expected_markup = (subtotal * markup / 100).quantize(
                Decimal("0.01"), rounding=decimal.ROUND_HALF_UP
            )
            expected_vat = ((subtotal + expected_markup) * vat / 100).quantize(
                Decimal("0.01"), rounding=decimal.ROUND_HALF_UP
            )
        assert totals.markup_amount == expected_markup
        assert totals.vat_amount == expected_vat
        assert totals.grand_total == subtotal + expected_markup + expected_vat

    @given(
        amounts=st.lists(
            st.decimals(min_value=-10_000, max_value=10_000, places=4), min_size=2, max_size=10
        ),
    )
    @settings(max_examples=50, deadline=None)
    def test_order_independent(self, amounts):
        lines = [_line(a) for a in amounts]
        forward = aggregate(lines, Decimal("10"), Decimal("12"), STANDARD)
        backward = aggregate(list(reversed(lines)), Decimal("10"), Decimal("12"), STANDARD)
        assert forward.subtotal == backward.subtotal
        assert forward.grand_total == backward.grand_total


class TestLineBreakdown:
    """Category subtotals and pending lines."""

    def test_category_subtotals(self):
        totals = aggregate(
            [
                _line("100", "labor"),
                _line("50", "materials"),
                _line("25", "labor"),
                _line("5"),
            ],
            Decimal(0),
            Decimal(0),
            STANDARD,
        )
        assert dict(totals.category_subtotals) == {
            "labor": Decimal("125"),
            "materials": Decimal("50"),
            "uncategorized": Decimal("5"),
        }

    def test_pending_lines_listed(self):
        pending = _line("0", pending=True)
        totals = aggregate([_line("10"), pending], Decimal(0), Decimal(0), STANDARD)
        assert totals.pending_line_item_ids == (pending.line_item_id,)
        assert totals.subtotal == Decimal("10")


class TestPricingPolicy:
    """Policy construction is validated."""

    def test_unknown_rounding_mode(self):
        with pytest.raises(ValueError, match="rounding mode"):
            PricingPolicy(rounding_mode="ROUND_SIDEWAYS")

    def test_negative_decimal_places(self):
        with pytest.raises(ValueError):
            PricingPolicy(decimal_places=-1)

    def test_unknown_vat_base(self):
        with pytest.raises(ValueError):
            PricingPolicy(vat_base="total")

    def test_defaults(self):
        policy = PricingPolicy()
        assert policy.rounding_mode == decimal.ROUND_HALF_UP
        assert policy.decimal_places == 2
