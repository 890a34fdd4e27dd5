"""Read-only query selectors."""

from estimate_kernel.selectors.base import BaseSelector
from estimate_kernel.selectors.estimate_selector import (
    EstimateSelector,
    EstimateView,
    LineItemView,
)
from estimate_kernel.selectors.snapshot_selector import SnapshotSelector

__all__ = [
    "BaseSelector",
    "EstimateSelector",
    "EstimateView",
    "LineItemView",
    "SnapshotSelector",
]
