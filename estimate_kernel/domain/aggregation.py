"""
Aggregation -- Pure estimate totals from line values and a pricing policy.

Responsibility:
    Sums line values into a subtotal and derives markup, VAT and grand
    total under an organization's recorded PricingPolicy.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - The subtotal is the exact Decimal sum of line values; it does not
      depend on line order.
    - Markup and VAT are each rounded exactly once, at the end, with the
      policy's rounding mode and decimal places.  Nothing is rounded twice.
    - grand_total = subtotal + markup_amount + vat_amount, exactly.
    - Rounding mode and VAT base always come from the policy argument,
      never from a module default.
"""

from __future__ import annotations

import decimal
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from enum import Enum
from types import MappingProxyType
from typing import Mapping
from uuid import UUID

from estimate_kernel.db.types import MONEY_DECIMAL_PLACES, round_money

HUNDRED = Decimal(100)

ROUNDING_MODES: frozenset[str] = frozenset(
    {
        decimal.ROUND_HALF_UP,
        decimal.ROUND_HALF_EVEN,
        decimal.ROUND_HALF_DOWN,
        decimal.ROUND_UP,
        decimal.ROUND_DOWN,
        decimal.ROUND_CEILING,
        decimal.ROUND_FLOOR,
    }
)

_AGGREGATION_CONTEXT = decimal.Context(prec=38, rounding=decimal.ROUND_HALF_UP)


class VatBase(str, Enum):
    """What the VAT percentage is applied to."""

    SUBTOTAL = "subtotal"
    SUBTOTAL_PLUS_MARKUP = "subtotal_plus_markup"


@dataclass(frozen=True)
class PricingPolicy:
    """
    Per-organization rounding and VAT configuration.

    Raises:
        ValueError: Unknown rounding mode or negative decimal places.
    """

    vat_base: VatBase = VatBase.SUBTOTAL_PLUS_MARKUP
    rounding_mode: str = decimal.ROUND_HALF_UP
    decimal_places: int = MONEY_DECIMAL_PLACES

    def __post_init__(self) -> None:
        object.__setattr__(self, "vat_base", VatBase(self.vat_base))
        if self.rounding_mode not in ROUNDING_MODES:
            raise ValueError(f"Unknown rounding mode: {self.rounding_mode}")
        if self.decimal_places < 0:
            raise ValueError(
                f"decimal_places must be non-negative, got {self.decimal_places}"
            )

    def round(self, value: Decimal) -> Decimal:
        return round_money(value, self.decimal_places, self.rounding_mode)


@dataclass(frozen=True)
class LineValue:
    """
    The value one line item contributes to its estimate.

    ``pending`` marks a formula-driven line that has never been computed;
    it contributes zero.
    """

    line_item_id: UUID
    amount: Decimal
    category: str | None = None
    formula_driven: bool = False
    pending: bool = False


@dataclass(frozen=True)
class EstimateTotals:
    """Derived totals of one estimate."""

    subtotal: Decimal
    markup_rate: Decimal
    markup_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    grand_total: Decimal
    vat_base: VatBase
    line_count: int
    category_subtotals: Mapping[str, Decimal] = field(
        default_factory=lambda: MappingProxyType({})
    )
    pending_line_item_ids: tuple[UUID, ...] = ()


def aggregate(
    lines: Iterable[LineValue],
    markup_rate: Decimal,
    vat_rate: Decimal,
    policy: PricingPolicy,
) -> EstimateTotals:
    """
    Compute estimate totals.

    Args:
        lines: Line values in any order.
        markup_rate: Markup percentage (10 means 10%).
        vat_rate: VAT percentage (12 means 12%).
        policy: The organization's recorded PricingPolicy.

    Returns:
        EstimateTotals.
    """
    lines = list(lines)
    with localcontext(_AGGREGATION_CONTEXT):
        subtotal = sum((line.amount for line in lines), Decimal(0))

        categories: dict[str, Decimal] = {}
        for line in lines:
            key = line.category or "uncategorized"
            categories[key] = categories.get(key, Decimal(0)) + line.amount

        markup_amount = policy.round(subtotal * markup_rate / HUNDRED)
        if policy.vat_base is VatBase.SUBTOTAL_PLUS_MARKUP:
            vat_base_amount = subtotal + markup_amount
        else:
            vat_base_amount = subtotal
        vat_amount = policy.round(vat_base_amount * vat_rate / HUNDRED)

        grand_total = subtotal + markup_amount + vat_amount

    return EstimateTotals(
        subtotal=subtotal,
        markup_rate=markup_rate,
        markup_amount=markup_amount,
        vat_rate=vat_rate,
        vat_amount=vat_amount,
        grand_total=grand_total,
        vat_base=policy.vat_base,
        line_count=len(lines),
        category_subtotals=MappingProxyType(dict(sorted(categories.items()))),
        pending_line_item_ids=tuple(line.line_item_id for line in lines if line.pending),
    )
