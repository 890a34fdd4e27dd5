"""
Estimate Kernel - formula versioning and computation provenance.

A construction cost-estimating core with:
- Append-only, sequence-numbered formula versions
- Deterministic decimal expression evaluation
- Immutable usage snapshots for every computation
- Staleness detection against the published formula version
- Estimate totals with a single, explicit rounding step
"""

__version__ = "0.1.0"
