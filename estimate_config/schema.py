"""
Estimate kernel configuration schema.

Defines the human-authored configuration artifacts: kernel settings and
the formula seed catalog.  YAML files are parsed into these types by the
loader; nothing else reads the YAML.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Kernel settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricingDefaults:
    """Policy recorded for an organization that has none yet (seeding only)."""

    vat_base: str = "subtotal_plus_markup"
    rounding_mode: str = "ROUND_HALF_UP"
    decimal_places: int = 2


@dataclass(frozen=True)
class KernelSettings:
    """Runtime settings of the estimate kernel."""

    database_url: str
    echo_sql: bool = False
    evaluation_precision: int = 38
    result_scale: int = 9
    default_pricing_policy: PricingDefaults = field(default_factory=PricingDefaults)
    seed_files: tuple[str, ...] = ()
    checksum: str = ""


# ---------------------------------------------------------------------------
# Formula seeds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FormulaSeed:
    """
    One catalog formula.

    ``body`` is the formula body document (inputs, assignments, outputs)
    exactly as FormulaBody.from_dict accepts it.
    """

    key: str
    name: str
    body: dict[str, Any]
    description: str | None = None
    category: str | None = None
    source_file: str = ""
