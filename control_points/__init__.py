"""
Control Point Store

Holds pixel ↔ lon/lat correspondences per overlay and validates them against
the recorded source page size. Solving is a separate, explicit step.
"""
from .store import ControlPointStore, StoredPoint, coerce_points

__all__ = ["ControlPointStore", "StoredPoint", "coerce_points"]
