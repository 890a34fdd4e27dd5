"""
Staleness -- Pure comparison of a snapshot against the current formula version.

A snapshot is up to date iff it was computed with the formula's current
version.  A stale value stays in use until a user explicitly recomputes.
"""

from dataclasses import dataclass

from estimate_kernel.domain.snapshot import UsageSnapshot


@dataclass(frozen=True)
class StalenessReport:
    """
    Staleness fact for one snapshot.

    Attributes:
        up_to_date: True iff the snapshot used the current version.
        current_sequence: The registry's current version sequence.
        snapshot_sequence: The version sequence the snapshot used.
    """

    up_to_date: bool
    current_sequence: int
    snapshot_sequence: int
    formula_key: str = ""

    @property
    def newer_version_available(self) -> bool:
        return self.current_sequence > self.snapshot_sequence


def check_staleness(snapshot: UsageSnapshot, current_sequence: int) -> StalenessReport:
    """Compare a snapshot's version reference with the current sequence."""
    return StalenessReport(
        up_to_date=snapshot.formula_sequence == current_sequence,
        current_sequence=current_sequence,
        snapshot_sequence=snapshot.formula_sequence,
        formula_key=snapshot.formula_key,
    )
