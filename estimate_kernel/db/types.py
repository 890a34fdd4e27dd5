"""
Module: estimate_kernel.db.types
Responsibility: Exact decimal column type, storage and rate scales, and the
    rounding primitive for money.  Centralizes precision and rounding so that
    every model, the evaluator and the aggregator use identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in the kernel.  All amounts and formula values use
      Decimal with explicit precision, including on SQLite (ExactDecimal).
    - round_money() is the ONLY sanctioned rounding function for money.
    - STORAGE_SCALE matches ExactDecimal(38, 9): every evaluated formula value is
      quantized to this scale so it round-trips through storage unchanged.
    - Rates are stored at RATE_SCALE and rejected, never rounded, when
      they carry more decimal places (require_scale).
"""

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator


class ExactDecimal(TypeDecorator):
    """
    Decimal column that never passes through float.

    Contract:
        Uses NUMERIC(precision, scale) on PostgreSQL.  On SQLite, which has
        no exact numeric storage, the value is stored as its canonical
        string and parsed back to Decimal on load.

    Guarantees:
        - A Decimal written at STORAGE_SCALE reads back equal and with the
          same exponent on every supported dialect.
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int = 38, scale: int = 9):
        super().__init__(precision=precision, scale=scale, asdecimal=True)
        self._precision = precision
        self._scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(self._precision + 2))
        return dialect.type_descriptor(
            Numeric(precision=self._precision, scale=self._scale, asdecimal=True)
        )

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = value.quantize(Decimal(1).scaleb(-self._scale), rounding=ROUND_HALF_UP)
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value)).quantize(Decimal(1).scaleb(-self._scale))


MONEY_DECIMAL_PLACES = 2
STORAGE_SCALE = 9
# Percentage rates (markup, VAT): 12.5 means 12.5%
RATE_SCALE = 4
DEFAULT_ROUNDING = ROUND_HALF_UP


def require_scale(name: str, value: Decimal | None, scale: int) -> Decimal | None:
    """
    Reject a Decimal with more than ``scale`` decimal places.

    Used where silent quantization on write would change the stored value.

    Raises:
        ValueError: The value has more decimal places than the column keeps.
    """
    if value is None:
        return None
    value = Decimal(value)
    if not value.is_finite():
        raise ValueError(f"{name} must be a finite number, got {value}")
    if value.as_tuple().exponent < -scale:
        raise ValueError(f"{name} allows at most {scale} decimal places, got {value}")
    return value


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the ONLY sanctioned rounding function for money values.  The
    aggregator applies it exactly once per derived amount.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: A ``decimal`` rounding mode (default: ROUND_HALF_UP).

    Returns:
        Rounded Decimal value.
    """
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


def to_storage_scale(value: Decimal) -> Decimal:
    """Quantize a formula value to the 9-place storage scale (ROUND_HALF_UP)."""
    return value.quantize(Decimal(1).scaleb(-STORAGE_SCALE), rounding=ROUND_HALF_UP)
