"""
Module: estimate_kernel.models.sequence_counter
Responsibility: Named counter rows for monotonic sequence allocation.
Architecture position: Kernel > Models.  May import from db/ only.

Each row is locked with SELECT ... FOR UPDATE by SequenceService; the
aggregate MAX(seq)+1 pattern is never used.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from estimate_kernel.db.base import Base


class SequenceCounter(Base):
    """A named sequence and its current value."""

    __tablename__ = "sequence_counters"

    # Sequence name (e.g., "audit_event:LineItem:<uuid>")
    name: Mapped[str] = mapped_column(
        String(120),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
